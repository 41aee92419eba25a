from __future__ import annotations

import pytest
from fakes import ACCOUNT, registered_creds

from wasession.auth.bridge import CredentialBridge
from wasession.auth.serde import split_key_filename, to_persisted, to_working
from wasession.auth.store import WorkingDirectory, key_filename
from wasession.auth.utils import init_auth_creds
from wasession.exceptions import CredentialError
from wasession.store import InMemoryAuthDatabase


def test_to_working_accepts_legacy_buffer_shapes() -> None:
    assert to_working({"_type": "Buffer", "data": "AAE="}) == b"\x00\x01"
    assert to_working({"type": "Buffer", "data": [1, 2, 3]}) == b"\x01\x02\x03"
    assert to_working({"_bsontype": "Binary", "buffer": b"xy"}) == b"xy"
    assert to_working({"nested": [{"type": "Buffer", "data": "/w=="}]}) == {"nested": [b"\xff"]}


def test_fresh_creds_survive_persisted_form() -> None:
    creds = init_auth_creds()
    persisted = to_persisted(creds)

    assert persisted["noise_key"]["public"]["_type"] == "Buffer"
    assert to_working(persisted) == creds


def test_key_filename_split() -> None:
    name = key_filename("session", "1555.0")
    assert name == "session-1555.0.json"
    assert split_key_filename(name) == ("session", "1555.0")
    assert key_filename("sender-key", "g@g.us/1:2") == "sender-key-g@g.us__1-2.json"


@pytest.mark.asyncio
async def test_working_directory_repairs_and_reports(tmp_path) -> None:
    wd = WorkingDirectory(tmp_path / "acct")
    await wd.reset()
    assert wd.exists()

    await wd.write_creds({"registered": True})
    wd.creds_path.write_text(wd.creds_path.read_text("utf-8") + "\x00junk", "utf-8")
    assert await wd.read_creds() == {"registered": True}

    (wd.folder / "broken-1.json").write_text("{{{", "utf-8")
    with pytest.raises(CredentialError):
        await wd.read_json("broken-1.json")
    with pytest.raises(CredentialError):
        await wd.read_json("missing-1.json")

    assert await wd.list_files() == ["broken-1.json", "creds.json"]
    await wd.purge()
    assert not wd.exists()
    assert await wd.list_files() == []


@pytest.mark.asyncio
async def test_restore_then_persist_only_pushes_changes(tmp_path) -> None:
    db = InMemoryAuthDatabase()
    creds = registered_creds()
    await db.update_auth(ACCOUNT, {"creds": to_persisted(creds)})
    await db.update_key(ACCOUNT, "session", "1555.0", to_persisted({"record": b"\x01\x02"}))

    bridge = CredentialBridge(ACCOUNT, db, WorkingDirectory(tmp_path / ACCOUNT))
    working = await bridge.restore()

    assert working.creds == creds
    assert bridge.registered
    assert not bridge.is_new_session
    got = await working.keys.get("session", ["1555.0"])
    assert got["1555.0"] == {"record": b"\x01\x02"}

    writes = db.writes
    assert await bridge.persist() is False
    assert db.writes == writes

    working.creds["next_pre_key_id"] = 31
    await working.keys.set({"pre-key": {"31": {"public": b"\x05"}}})
    assert await bridge.persist(connected=True) is True

    record = await db.get_auth(ACCOUNT)
    assert record is not None
    assert to_working(record["creds"])["next_pre_key_id"] == 31
    assert record["status_code"] == 200
    keys = {(k.key_type, k.key_id): k.data for k in await db.get_keys(ACCOUNT)}
    assert to_working(keys[("pre", "key-31")]) == {"public": b"\x05"}


@pytest.mark.asyncio
async def test_new_session_is_pushed_once_registered(tmp_path) -> None:
    db = InMemoryAuthDatabase()
    registered: list[bool] = []
    bridge = CredentialBridge(
        ACCOUNT,
        db,
        WorkingDirectory(tmp_path / ACCOUNT),
        on_registered=lambda: registered.append(True),
    )
    working = await bridge.restore()
    assert bridge.is_new_session
    assert not bridge.registered

    assert await bridge.persist() is False
    assert await db.get_auth(ACCOUNT) is None

    working.creds["registered"] = True
    working.creds["me"] = {"id": f"{ACCOUNT}:3@s.whatsapp.net"}
    assert await bridge.persist() is True
    assert registered == [True]

    record = await db.get_auth(ACCOUNT)
    assert record is not None
    assert to_working(record["creds"])["me"]["id"] == f"{ACCOUNT}:3@s.whatsapp.net"

    # later updates keep flowing without re-announcing the registration
    working.creds["account_sync_counter"] = 1
    assert await bridge.persist() is True
    assert registered == [True]


@pytest.mark.asyncio
async def test_unusable_persisted_creds_start_fresh(tmp_path) -> None:
    db = InMemoryAuthDatabase()
    await db.update_auth(ACCOUNT, {"creds": "not-a-credential-blob"})

    bridge = CredentialBridge(ACCOUNT, db, WorkingDirectory(tmp_path / ACCOUNT))
    working = await bridge.restore()

    assert working.creds["registered"] is False
    assert isinstance(working.creds["noise_key"]["public"], bytes)


@pytest.mark.asyncio
async def test_force_reset_and_reset_credentials(tmp_path) -> None:
    db = InMemoryAuthDatabase()
    await db.update_auth(ACCOUNT, {"creds": to_persisted(registered_creds())})
    wd = WorkingDirectory(tmp_path / ACCOUNT)
    bridge = CredentialBridge(ACCOUNT, db, wd)

    working = await bridge.restore(force_reset=True)
    assert working.creds["me"] is None
    assert bridge.is_new_session

    await bridge.reset_credentials()
    assert await db.get_auth(ACCOUNT) is None
    assert not wd.exists()
    assert bridge.working is None
