from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from .auth.state import WorkingAuthState
from .config import ProxyConfig
from .util.events import AsyncEventEmitter

# Events a transport emits into the emitter handed to `Transport.open`.
CREDS_UPDATE = "creds.update"  # no payload; creds were mutated in place
CONNECTION_UPDATE = "connection.update"  # ConnectionUpdate
MESSAGE_RECEIVED = "messages.upsert"  # raw inbound message (mapping or proto-like)
MESSAGE_STATUS = "messages.update"  # MessageStatusUpdate
DECRYPT_ERROR = "messages.decrypt_error"  # Exception or message text

ConnectionPhase = Literal["connecting", "open", "close"]
PresenceKind = Literal["available", "unavailable", "composing", "recording", "paused"]


@dataclass(slots=True)
class ConnectionUpdate:
    connection: ConnectionPhase | None = None
    qr: str | None = None
    is_new_login: bool | None = None
    status_code: int | None = None
    reason: str | None = None
    error: Exception | None = None


@dataclass(slots=True)
class MessageStatusUpdate:
    message_id: str
    status: int | str
    remote_jid: str | None = None
    error_code: int | None = None
    error_message: str | None = None


@dataclass(slots=True)
class SentMessage:
    message_id: str | None
    remote_jid: str
    raw: Any | None = None


@dataclass(slots=True)
class OpenOptions:
    connect_timeout_s: float = 30.0
    proxy: ProxyConfig | None = None
    ignore_broadcast: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class TransportHandle(Protocol):
    """
    A live connection. Only the connection state machine holds one.

    `user_id` is the device identity once authenticated (None while pairing).
    """

    @property
    def user_id(self) -> str | None: ...

    @property
    def user_name(self) -> str | None: ...

    async def send(self, jid: str, content: dict[str, Any]) -> SentMessage: ...

    async def logout(self) -> None: ...

    async def presence_update(self, kind: PresenceKind, jid: str | None = None) -> None: ...

    async def presence_subscribe(self, jid: str) -> None: ...

    async def read_messages(self, keys: list[dict[str, Any]]) -> None: ...

    async def update_privacy(self) -> None: ...

    async def update_profile_name(self, name: str) -> None: ...

    async def profile_picture_url(self, jid: str) -> str | None: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    """
    The protocol collaborator (socket, cipher, pairing).

    Every event of the new connection goes into `events`. The caller subscribes
    before calling `open`, so the transport may emit at any point, including
    while `open` is still running.
    """

    async def open(
        self, auth: WorkingAuthState, options: OpenOptions, events: AsyncEventEmitter
    ) -> TransportHandle: ...
