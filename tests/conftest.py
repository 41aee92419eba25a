from __future__ import annotations

import pytest
from fakes import ACCOUNT, FakeTransport

from wasession.client import AccountSession
from wasession.config import SessionConfig
from wasession.store import InMemoryAuthDatabase


@pytest.fixture
def config(tmp_path) -> SessionConfig:
    return SessionConfig(
        work_dir=tmp_path / "auth",
        connect_timeout_s=1.0,
        connect_min_interval_s=0.0,
        keep_alive_interval_s=(60.0, 60.0),
        health_check_interval_s=(60.0, 60.0),
        reconnect_delay_s=0.01,
        conflict_base_delay_s=0.01,
        conflict_max_delay_s=0.05,
        conflict_jitter_s=0.0,
        reconnect_stagger_s=0.0,
        recovery_waits_s=(0.0, 0.0, 0.0),
        refresh_settle_s=0.0,
        delivery_timeout_s=0.5,
        delivery_poll_interval_s=0.01,
        send_retry_delay_s=0.01,
        human_pacing=False,
    )


@pytest.fixture
def db() -> InMemoryAuthDatabase:
    return InMemoryAuthDatabase()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session(transport, db, config) -> AccountSession:
    return AccountSession(ACCOUNT, transport=transport, db=db, config=config)
