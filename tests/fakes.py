from __future__ import annotations

import asyncio
from typing import Any

from wasession.auth.serde import to_persisted
from wasession.auth.state import WorkingAuthState
from wasession.auth.utils import init_auth_creds
from wasession.store import InMemoryAuthDatabase
from wasession.transport import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    DECRYPT_ERROR,
    MESSAGE_RECEIVED,
    MESSAGE_STATUS,
    ConnectionUpdate,
    MessageStatusUpdate,
    OpenOptions,
    SentMessage,
)
from wasession.util.events import AsyncEventEmitter

ACCOUNT = "15550000001"
OWN_JID = f"{ACCOUNT}:1@s.whatsapp.net"


def registered_creds() -> dict[str, Any]:
    creds = init_auth_creds()
    creds["registered"] = True
    creds["me"] = {"id": OWN_JID, "name": "Test"}
    return creds


async def seed_registered(db: InMemoryAuthDatabase, account_id: str = ACCOUNT) -> None:
    await db.update_auth(
        account_id, {"creds": to_persisted(registered_creds()), "is_active": True}
    )


class FakeHandle:
    def __init__(self, auth: WorkingAuthState, events: AsyncEventEmitter) -> None:
        self.auth = auth
        self.events = events
        me = auth.creds.get("me") or {}
        self.user_id: str | None = me.get("id")
        self.user_name: str | None = me.get("name")

        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.send_errors: list[BaseException] = []
        self.presence: list[tuple[str, str | None]] = []
        self.presence_error: Exception | None = None
        self.privacy_updates = 0
        self.profile_names: list[str] = []
        self.reads: list[list[dict[str, Any]]] = []
        self.logged_out = False
        self.closed = False
        self._next_id = 0

    async def send(self, jid: str, content: dict[str, Any]) -> SentMessage:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self._next_id += 1
        self.sent.append((jid, content))
        return SentMessage(message_id=f"MSG{self._next_id}", remote_jid=jid)

    async def logout(self) -> None:
        self.logged_out = True

    async def presence_update(self, kind: str, jid: str | None = None) -> None:
        if self.presence_error is not None:
            raise self.presence_error
        self.presence.append((kind, jid))

    async def presence_subscribe(self, jid: str) -> None:
        self.presence.append(("subscribe", jid))

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        self.reads.append(keys)

    async def update_privacy(self) -> None:
        self.privacy_updates += 1

    async def update_profile_name(self, name: str) -> None:
        self.profile_names.append(name)
        self.user_name = name

    async def profile_picture_url(self, jid: str) -> str | None:
        return "https://pps.example.invalid/pp.jpg"

    async def close(self) -> None:
        self.closed = True

    # Test drivers: emit as the protocol collaborator would.

    async def emit_close(self, status_code: int | None, reason: str) -> None:
        await self.events.emit(
            CONNECTION_UPDATE,
            ConnectionUpdate(connection="close", status_code=status_code, reason=reason),
        )

    async def emit_open(self) -> None:
        await self.events.emit(CONNECTION_UPDATE, ConnectionUpdate(connection="open"))

    async def emit_status(
        self,
        message_id: str,
        status: int | str,
        *,
        remote_jid: str = "15557654321@s.whatsapp.net",
        error_code: int | None = None,
    ) -> None:
        await self.events.emit(
            MESSAGE_STATUS,
            MessageStatusUpdate(
                message_id=message_id, status=status, remote_jid=remote_jid, error_code=error_code
            ),
        )

    async def emit_message(self, raw: Any) -> None:
        await self.events.emit(MESSAGE_RECEIVED, raw)

    async def emit_decrypt_error(self, error: Exception | str) -> None:
        await self.events.emit(DECRYPT_ERROR, error)

    async def complete_pairing(self) -> None:
        """Mark the creds registered, announce them, then ask for a restart (515)."""

        self.auth.creds["registered"] = True
        self.auth.creds["me"] = {"id": OWN_JID, "name": "Test"}
        self.user_id = OWN_JID
        await self.events.emit(CREDS_UPDATE)
        await self.emit_close(515, "Stream Errored (restart required)")


class FakeTransport:
    """
    Scriptable protocol collaborator.

    Each `open()` consumes one entry of `script` (else `default`):
    "open", "qr", "hang", ("close", code, reason), or an exception to raise.
    """

    def __init__(self) -> None:
        self.script: list[Any] = []
        self.default: Any = "open"
        self.open_delay_s = 0.0
        self.open_calls = 0
        self.options: list[OpenOptions] = []
        self.handles: list[FakeHandle] = []

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]

    async def open(
        self, auth: WorkingAuthState, options: OpenOptions, events: AsyncEventEmitter
    ) -> FakeHandle:
        self.open_calls += 1
        self.options.append(options)
        behavior = self.script.pop(0) if self.script else self.default
        if self.open_delay_s:
            await asyncio.sleep(self.open_delay_s)
        if isinstance(behavior, BaseException):
            raise behavior

        handle = FakeHandle(auth, events)
        self.handles.append(handle)
        if behavior == "open":
            await events.emit(CONNECTION_UPDATE, ConnectionUpdate(connection="connecting"))
            await handle.emit_open()
        elif behavior == "qr":
            await events.emit(CONNECTION_UPDATE, ConnectionUpdate(qr="2@fake-pairing-ref"))
        elif isinstance(behavior, tuple) and behavior[0] == "close":
            _, code, reason = behavior
            await handle.emit_close(code, reason)
        return handle
