from __future__ import annotations

import asyncio

import pytest
from fakes import ACCOUNT, seed_registered

from wasession.exceptions import AlreadyConnectedError, NotConnectedError
from wasession.pairing import PairingChallenge
from wasession.service import SessionService
from wasession.util.events import SessionEvent

OTHER = "15550000002"
TO = "15557654321"


def _service(transport, db, config) -> SessionService:
    return SessionService(transport=transport, db=db, config=config, restore_stagger_s=0.0)


@pytest.mark.asyncio
async def test_load_restores_active_accounts(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    await seed_registered(db, OTHER)
    await db.update_auth(OTHER, {"is_active": False})
    service = _service(transport, db, config)

    outcomes = await service.load()

    assert outcomes == {ACCOUNT: None, OTHER: None}
    assert service.list_numbers() == [ACCOUNT]
    assert sorted(service.list_numbers(only_connected=False)) == [ACCOUNT, OTHER]
    assert service.list_numbers(healthy=True) == [ACCOUNT]
    assert transport.open_calls == 1
    await service.shutdown()
    assert len(service) == 0


@pytest.mark.asyncio
async def test_round_robin_sender_selection(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    await seed_registered(db, OTHER)
    service = _service(transport, db, config)
    await service.load()
    first, second = service.sessions[ACCOUNT], service.sessions[OTHER]

    await service.send_message(None, TO, "one")
    assert (first.state.outgoing_message_count, second.state.outgoing_message_count) == (1, 0)
    await service.send_message(None, TO, "two")
    assert (first.state.outgoing_message_count, second.state.outgoing_message_count) == (1, 1)
    await service.send_message(None, TO, "three")
    assert (first.state.outgoing_message_count, second.state.outgoing_message_count) == (2, 1)

    await service.send_message(OTHER, TO, "pinned")
    assert second.state.outgoing_message_count == 2
    with pytest.raises(NotConnectedError):
        await service.send_message("15559999999", TO, "nobody")
    await service.shutdown()


@pytest.mark.asyncio
async def test_send_without_connected_accounts(transport, db, config) -> None:
    service = _service(transport, db, config)
    with pytest.raises(NotConnectedError):
        await service.send_message(None, TO, "hello")


@pytest.mark.asyncio
async def test_subscriptions_reach_existing_and_new_sessions(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    service = _service(transport, db, config)
    ready: list[str] = []
    registered: list[str] = []
    service.on_ready(lambda s: ready.append(s.account_id))
    service.subscribe(SessionEvent.REGISTERED, lambda s: registered.append(s.account_id))

    await service.load()
    transport.script = ["qr"]
    challenge = await service.add_account(OTHER)
    assert isinstance(challenge, PairingChallenge)

    await transport.handle.complete_pairing()
    for _ in range(100):
        if len(ready) == 2:
            break
        await asyncio.sleep(0.01)

    assert ready == [ACCOUNT, OTHER]
    assert registered == [OTHER]
    assert service.list_numbers() == [ACCOUNT, OTHER]
    await service.shutdown()


@pytest.mark.asyncio
async def test_add_account_returns_pairing_challenge(transport, db, config) -> None:
    service = _service(transport, db, config)
    transport.script = ["qr"]

    challenge = await service.add_account(ACCOUNT)

    assert isinstance(challenge, PairingChallenge)
    assert ACCOUNT in service
    await service.shutdown()


@pytest.mark.asyncio
async def test_add_account_refuses_connected_account(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    service = _service(transport, db, config)
    await service.load()

    with pytest.raises(AlreadyConnectedError):
        await service.add_account(ACCOUNT)
    await service.shutdown()


@pytest.mark.asyncio
async def test_removed_session_is_forgotten(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    service = _service(transport, db, config)
    removed: list[str] = []
    service.on_remove(removed.append)
    await service.load()

    await service.sessions[ACCOUNT].remove(clear_data=True)

    assert removed == [ACCOUNT]
    assert ACCOUNT not in service
    assert service.get(ACCOUNT) is None


@pytest.mark.asyncio
async def test_explicit_sender_does_not_disturb_rotation(transport, db, config) -> None:
    await seed_registered(db, ACCOUNT)
    await seed_registered(db, OTHER)
    service = _service(transport, db, config)
    await service.load()
    first, second = service.sessions[ACCOUNT], service.sessions[OTHER]

    for _ in range(5):
        await service.send_message(OTHER, TO, "pinned")
    await service.send_message(None, TO, "one")
    await service.send_message(None, TO, "two")

    assert first.state.outgoing_message_count == 1
    assert second.state.outgoing_message_count == 6
    assert service._rotation <= {ACCOUNT, OTHER}
    await service.shutdown()
