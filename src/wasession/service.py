from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .auth.account import account_from_dict
from .auth.state import AuthDatabase
from .client import AccountSession
from .config import SessionConfig
from .constants import SERVICE_RESTORE_STAGGER_S, STATUS_OK
from .exceptions import AlreadyConnectedError, NotConnectedError
from .pairing import PairingChallenge
from .sender import DeliveryResult, SendOptions
from .transport import Transport
from .util.events import Listener, SessionEvent

logger = logging.getLogger(__name__)


class SessionService:
    """
    Registry of account sessions sharing one transport and one database.

    Subscriptions made here apply to every session, including ones created
    later. `shutdown()` releases every session's timers and connection.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        db: AuthDatabase,
        config: SessionConfig | None = None,
        restore_stagger_s: float = SERVICE_RESTORE_STAGGER_S,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.db = db
        self.config = config or SessionConfig()
        self.restore_stagger_s = restore_stagger_s
        self._sleep = sleep

        self.sessions: dict[str, AccountSession] = {}
        self._subscriptions: list[tuple[SessionEvent, Listener]] = []
        self._rotation: set[str] = set()

    def __contains__(self, account_id: object) -> bool:
        return account_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def get(self, account_id: str) -> AccountSession | None:
        return self.sessions.get(account_id)

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, event: SessionEvent | str, listener: Listener) -> None:
        ev = SessionEvent(event)
        self._subscriptions.append((ev, listener))
        for session in self.sessions.values():
            session.events.subscribe(ev, listener)

    def on_message(self, listener: Listener) -> None:
        self.subscribe(SessionEvent.INCOMING_MESSAGE, listener)

    def on_update(self, listener: Listener) -> None:
        self.subscribe(SessionEvent.UPDATE, listener)

    def on_ready(self, listener: Listener) -> None:
        self.subscribe(SessionEvent.READY, listener)

    def on_registered(self, listener: Listener) -> None:
        self.subscribe(SessionEvent.REGISTERED, listener)

    def on_remove(self, listener: Listener) -> None:
        self.subscribe(SessionEvent.REMOVE, listener)

    # -- sessions ----------------------------------------------------------

    def _create(self, account_id: str, record: Mapping[str, Any] | None = None) -> AccountSession:
        state = account_from_dict({**record, "phone_number": account_id}) if record else None
        session = AccountSession(
            account_id,
            transport=self.transport,
            db=self.db,
            config=self.config,
            state=state,
            sleep=self._sleep,
        )
        session.events.on_remove(self._forget)
        for ev, listener in self._subscriptions:
            session.events.subscribe(ev, listener)
        self.sessions[account_id] = session
        return session

    def _forget(self, account_id: str) -> None:
        self._rotation.discard(account_id)
        if self.sessions.pop(account_id, None) is not None:
            logger.info("[%s] removed from active sessions", account_id)

    async def load(self) -> dict[str, BaseException | None]:
        """
        Restore every persisted account, starting them `restore_stagger_s` apart.

        Returns per-account outcomes; one account failing does not stop the rest.
        """

        records = await self.db.list_auth()
        ids = [str(r.get("phone_number")) for r in records if r.get("phone_number")]
        logger.info("restoring sessions: %s", ", ".join(ids) or "(none)")

        async def restore(index: int, record: Mapping[str, Any]) -> None:
            if index:
                await self._sleep(index * self.restore_stagger_s)
            account_id = str(record["phone_number"])
            session = self.sessions.get(account_id) or self._create(account_id, record)
            if not session.connected:
                await session.connect()

        results = await asyncio.gather(
            *(restore(i, r) for i, r in enumerate(r for r in records if r.get("phone_number"))),
            return_exceptions=True,
        )
        outcomes: dict[str, BaseException | None] = {}
        for account_id, result in zip(ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("[%s] restore failed: %s", account_id, result)
                outcomes[account_id] = result
            else:
                outcomes[account_id] = None
        return outcomes

    async def add_account(self, account_id: str) -> PairingChallenge | None:
        existing = self.sessions.get(account_id)
        if existing is not None:
            if existing.connected:
                raise AlreadyConnectedError(f"[{account_id}] is already registered and connected")
            if existing.state.status_code == STATUS_OK and existing.registered:
                raise AlreadyConnectedError(f"[{account_id}] is already authenticated")
            await existing.cleanup()

        session = self._create(account_id)
        challenge = await session.register()
        logger.info("[%s] added to active sessions", account_id)
        return challenge

    def list_numbers(
        self,
        *,
        only_connected: bool = True,
        healthy: bool = False,
        shuffle: bool = False,
    ) -> list[str]:
        numbers = [
            account_id
            for account_id, s in self.sessions.items()
            if (not only_connected or s.connected)
            and (not healthy or s.state.status_code == STATUS_OK)
        ]
        if shuffle:
            random.shuffle(numbers)
        return numbers

    def _pick_sender(self, to_number: str) -> AccountSession:
        available = [n for n in self.list_numbers() if n not in self._rotation]
        if not available:
            self._rotation.clear()
            available = self.list_numbers()
        if not available:
            raise NotConnectedError(f"No connected account available to send to {to_number}")
        self._rotation.add(available[0])
        return self.sessions[available[0]]

    async def send_message(
        self,
        from_number: str | None,
        to_number: str,
        payload: str | Mapping[str, Any],
        options: SendOptions | None = None,
    ) -> DeliveryResult:
        """Send from `from_number`, or from the next connected account in rotation."""

        if from_number:
            session = self.sessions.get(from_number)
            if session is None or not session.connected:
                raise NotConnectedError(f"[{from_number}] is not connected")
        else:
            session = self._pick_sender(to_number)

        return await session.send(to_number, payload, options)

    async def shutdown(self) -> None:
        logger.info("shutting down %d session(s)", len(self.sessions))
        sessions = list(self.sessions.values())
        results = await asyncio.gather(*(s.cleanup() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("[%s] cleanup failed: %s", session.account_id, result)
        self.sessions.clear()
        self._rotation.clear()
