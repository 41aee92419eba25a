from __future__ import annotations

import asyncio
import datetime as dt
import random

import pytest
from fakes import ACCOUNT, seed_registered

from wasession.client import AccountSession
from wasession.delivery import MessageStatus
from wasession.exceptions import (
    DeliveryError,
    EmptyMessageError,
    InactiveAccountError,
    NetworkError,
    NotConnectedError,
    RecipientBlockedError,
    ThrottledError,
    TransportError,
)
from wasession.sender import HumanPacer, SendOptions, classify_block
from wasession.util.events import SessionEvent

TO = "15557654321"
TO_JID = f"{TO}@s.whatsapp.net"


def test_classify_block() -> None:
    forbidden = TransportError("x", status_code=403)
    assert isinstance(classify_block(forbidden, TO), RecipientBlockedError)
    assert isinstance(classify_block(RuntimeError("429 Too Many Requests"), TO), ThrottledError)
    assert classify_block(NetworkError("socket hiccup"), TO) is None
    blocked = classify_block(TransportError("unauthorized"), TO)
    assert blocked is not None
    assert blocked.reason == "AUTH_FAILED"
    assert blocked.to == TO


@pytest.mark.asyncio
async def test_send_requires_connection(session, transport) -> None:
    with pytest.raises(NotConnectedError):
        await session.send(TO, "hello")
    assert transport.handles == []

    with pytest.raises(EmptyMessageError):
        await session.send(TO, "  ")

    session.state.is_active = False
    with pytest.raises(InactiveAccountError):
        await session.send(TO, "hello")


@pytest.mark.asyncio
async def test_send_success_updates_counters(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    outgoing: list = []
    session.on(SessionEvent.OUTGOING_MESSAGE, outgoing.append)

    result = await session.send(TO, "hello")

    assert result.message_id == "MSG1"
    assert result.jid == TO_JID
    assert result.attempts == 1
    assert result.delivery is None
    assert transport.handle.sent == [(TO_JID, {"text": "hello"})]
    assert outgoing == [result]
    assert session.state.outgoing_message_count == 1
    assert session.state.daily_message_count == 1
    assert session.state.last_sent_message == dt.date.today().isoformat()

    await session.send(TO, {"type": "image", "data": b"img", "caption": "c"})
    assert transport.handle.sent[-1] == (TO_JID, {"image": b"img", "caption": "c"})
    assert session.state.daily_message_count == 2
    await session.cleanup()


@pytest.mark.asyncio
async def test_transient_failure_is_retried(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    transport.handle.send_errors = [NetworkError("socket hiccup")]

    result = await session.send(TO, "hello")

    assert result.attempts == 2
    assert len(transport.handle.sent) == 1
    await session.cleanup()


@pytest.mark.asyncio
async def test_retries_are_bounded(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    handle = transport.handle
    handle.send_errors = [NetworkError(f"fail {i}") for i in range(4)]
    failures: list[tuple] = []

    with pytest.raises(NetworkError, match="fail 2"):
        await session.send(
            TO, "hello", SendOptions(max_retries=3, on_failure=lambda e, n: failures.append((e, n)))
        )

    assert len(handle.send_errors) == 1
    assert handle.sent == []
    assert [n for _, n in failures] == [3]
    assert session.state.outgoing_message_count == 0
    await session.cleanup()


@pytest.mark.asyncio
async def test_blocked_recipient_is_not_retried(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    handle = transport.handle
    handle.send_errors = [TransportError("forbidden", status_code=403) for _ in range(3)]
    blocked: list[tuple] = []
    session.on(SessionEvent.MESSAGE_BLOCKED, lambda *args: blocked.append(args))

    with pytest.raises(RecipientBlockedError) as exc_info:
        await session.send(TO, "hello")

    assert exc_info.value.reason == "USER_BLOCKED"
    assert len(handle.send_errors) == 2
    assert blocked == [(ACCOUNT, TO, "USER_BLOCKED")]
    assert session.state.blocked_count == 1
    await session.cleanup()


@pytest.mark.asyncio
async def test_wait_for_delivery(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    handle = transport.handle

    async def acknowledge() -> None:
        while not handle.sent:
            await asyncio.sleep(0.005)
        await handle.emit_status("MSG1", 4)

    ack = asyncio.create_task(acknowledge())
    opts = SendOptions(wait_for_delivery=True, wait_timeout_s=1.0)
    result = await session.send(TO, "hello", opts)
    await ack

    assert result.status is MessageStatus.READ
    assert result.delivery is not None
    assert result.delivery.delivered_at is not None
    await session.cleanup()


@pytest.mark.asyncio
async def test_unconfirmed_delivery_returns_pending(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()

    result = await session.send(
        TO, "hello", SendOptions(wait_for_delivery=True, wait_timeout_s=0.05)
    )

    assert result.status is MessageStatus.PENDING
    assert len(transport.handle.sent) == 1
    await session.cleanup()


@pytest.mark.asyncio
async def test_delivery_error_raises_without_resending(session, transport, db) -> None:
    await seed_registered(db)
    await session.connect()
    handle = transport.handle

    async def fail() -> None:
        while not handle.sent:
            await asyncio.sleep(0.005)
        await handle.emit_status("MSG1", 0, error_code=500)

    task = asyncio.create_task(fail())
    with pytest.raises(DeliveryError):
        await session.send(
            TO,
            "hello",
            SendOptions(wait_for_delivery=True, wait_timeout_s=1.0, throw_on_delivery_error=True),
        )
    await task

    assert len(handle.sent) == 1
    await session.cleanup()


@pytest.mark.asyncio
async def test_human_pacing_wraps_send(transport, db, config) -> None:
    await seed_registered(db)
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    pacer = HumanPacer(rng=random.Random(1), sleep=fake_sleep)
    session = AccountSession(ACCOUNT, transport=transport, db=db, config=config, pacer=pacer)
    await session.connect()

    await session.send(TO, "hello there friend", SendOptions(human_pacing=True))

    handle = transport.handle
    assert [p for p in handle.presence if p[0] != "available"] == [
        ("subscribe", TO_JID),
        ("composing", TO_JID),
        ("paused", TO_JID),
    ]
    typing, idle = slept
    assert 0.8 + 3 * 0.22 <= typing <= 0.8 + 3 * 0.22 + 1.2
    assert 0.8 <= idle <= 3.5
    await session.cleanup()
