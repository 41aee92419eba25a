from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any, Protocol

from .auth.state import WorkingAuthState
from .config import SessionConfig
from .exceptions import (
    InactiveAccountError,
    LoggedOutError,
    NetworkError,
    NotConnectedError,
    error_from_status,
    status_code_of,
)
from .reconnect import DisconnectKind, ReconnectPolicy, classify_disconnect, format_reason
from .transport import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    DECRYPT_ERROR,
    MESSAGE_RECEIVED,
    MESSAGE_STATUS,
    ConnectionUpdate,
    MessageStatusUpdate,
    OpenOptions,
    Transport,
    TransportHandle,
)
from .util.asyncio import cancel_suppress, ensure_task, is_live, random_interval, shielded
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    LOGGED_OUT = "logged_out"


class ConnectionHost(Protocol):
    """Account-level capabilities the state machine calls into."""

    account_id: str

    @property
    def is_active(self) -> bool: ...

    @property
    def registered(self) -> bool: ...

    @property
    def recovering(self) -> bool: ...

    async def prepare_auth(self) -> WorkingAuthState: ...

    def open_options(self) -> OpenOptions: ...

    async def on_creds_update(self, *, connected: bool) -> None: ...

    async def on_qr(self, qr: str) -> None: ...

    async def on_open(self, handle: TransportHandle) -> None: ...

    async def on_closed(self, status_code: int | None, reason: str) -> None: ...

    async def on_message(self, raw: Any) -> None: ...

    async def on_status(self, update: MessageStatusUpdate) -> None: ...

    async def on_decryption(self, reason: str) -> bool: ...

    async def on_decrypt_error(self, error: Exception | str) -> None: ...

    async def on_logged_out(self, reason: str) -> None: ...

    async def on_disconnect(self, reason: str) -> None: ...

    async def on_probe_ok(self) -> None: ...

    async def on_probe_failed(self, error: Exception) -> None: ...


def _is_handshake_update(update: ConnectionUpdate) -> bool:
    return bool(update.qr) or update.connection in ("open", "close")


class ConnectionStateMachine:
    """
    Owns the single transport handle of one account.

    Disconnected -> Connecting -> Open -> (Closing | LoggedOut) -> Disconnected.

    `connect()` is single-flight: concurrent callers await the attempt already
    in progress. The connection lock is held only for the handshake. Every
    background task (liveness timers, close handling, reconnection backoff) is
    tracked so `shutdown()` leaves nothing behind.
    """

    def __init__(
        self,
        account_id: str,
        transport: Transport,
        host: ConnectionHost,
        *,
        config: SessionConfig | None = None,
        policy: ReconnectPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self.transport = transport
        self.host = host
        self.config = config or SessionConfig()
        self.policy = policy or ReconnectPolicy(self.config)
        self._clock = clock
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.handle: TransportHandle | None = None
        self.manual_disconnect = False
        self.last_attempt_at: float | None = None
        self.open_count = 0

        self._lock = asyncio.Lock()
        self._connect_task: asyncio.Task[ConnectionUpdate] | None = None
        self._events: AsyncEventEmitter | None = None
        self._handshaking = False
        self._close_task: asyncio.Task[None] | None = None

        self._keep_alive_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- state -------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and self.handle is not None

    @property
    def connecting(self) -> bool:
        return is_live(self._connect_task)

    @property
    def pending_timers(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def require_handle(self) -> TransportHandle:
        if not self.is_open or self.handle is None:
            raise NotConnectedError()
        return self.handle

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug("[%s] %s -> %s", self.account_id, self.state.value, state.value)
            self.state = state

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = ensure_task(coro, name=f"wasession.{self.account_id}.{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- connect -----------------------------------------------------------

    async def connect(self) -> ConnectionUpdate:
        """
        Open the connection, or join the attempt already in flight.

        Returns the update that ended the handshake: `connection="open"`, or an
        update carrying a pairing `qr` when the account is not registered yet.
        """

        if self.is_open:
            return ConnectionUpdate(connection="open")
        task = self._connect_task
        if task is None or task.done():
            task = self._connect_task = ensure_task(
                self._connect(), name=f"wasession.{self.account_id}.connect"
            )
        return await asyncio.shield(task)

    async def _connect(self) -> ConnectionUpdate:
        async with self._lock:
            if self.is_open:
                return ConnectionUpdate(connection="open")
            if not self.host.is_active:
                raise InactiveAccountError()

            if self.last_attempt_at is not None:
                wait = self.last_attempt_at + self.config.connect_min_interval_s - self._clock()
                if wait > 0:
                    logger.debug("[%s] connect rate-limited, waiting %.1fs", self.account_id, wait)
                    await self._sleep(wait)
            self.last_attempt_at = self._clock()

            await self._release_handle()
            self._set_state(ConnectionState.CONNECTING)
            logger.info("[%s] connecting", self.account_id)

            try:
                auth = await self.host.prepare_auth()
            except BaseException:
                self._set_state(ConnectionState.DISCONNECTED)
                raise

            events = AsyncEventEmitter()
            events.on(CREDS_UPDATE, self._handle_creds_update)
            events.on(CONNECTION_UPDATE, shielded(self._handle_connection_update))
            events.on(MESSAGE_RECEIVED, shielded(self.host.on_message))
            events.on(MESSAGE_STATUS, shielded(self.host.on_status))
            events.on(DECRYPT_ERROR, shielded(self.host.on_decrypt_error))
            waiter = events.wait_for_future(CONNECTION_UPDATE, predicate=_is_handshake_update)
            self._events = events
            self._handshaking = True

            try:
                update = await asyncio.wait_for(
                    self._open(auth, events, waiter), timeout=self.config.connect_timeout_s
                )
            except TimeoutError:
                await self._release_handle()
                self._set_state(ConnectionState.DISCONNECTED)
                raise NetworkError("Connection timed out", status_code=408) from None
            except BaseException:
                await self._release_handle()
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            finally:
                self._handshaking = False
                events.remove_waiter_future(CONNECTION_UPDATE, waiter)

        if update.connection == "close":
            await self._release_handle()
            self._set_state(ConnectionState.DISCONNECTED)
            await self.host.on_closed(update.status_code, update.reason or "")
            reason = format_reason(update.status_code, update.reason)
            kind = classify_disconnect(update.status_code, update.reason)
            logger.warning(
                "[%s] closed during handshake (%s) [%s]", self.account_id, reason, kind.value
            )
            if kind is DisconnectKind.LOGGED_OUT:
                await self._enter_logged_out(reason)
                raise LoggedOutError(update.reason or "logged out")
            # Unregistered callers handle their own failure; a live close task
            # already owns the follow-up.
            if self.host.registered and not is_live(self._close_task):
                self._close_task = self.spawn(
                    self._after_close(kind, reason, update.reason), "close"
                )
            raise error_from_status(update.status_code, update.reason or "")

        if update.connection == "open":
            await self._on_open()
        else:
            logger.info("[%s] waiting for device pairing", self.account_id)
        return update

    async def _open(
        self,
        auth: WorkingAuthState,
        events: AsyncEventEmitter,
        waiter: asyncio.Future[ConnectionUpdate],
    ) -> ConnectionUpdate:
        self.handle = await self.transport.open(auth, self.host.open_options(), events)
        return await waiter

    async def _release_handle(self) -> None:
        """Detach from the current connection and close it; its late events are ignored."""

        events, self._events = self._events, None
        if events is not None:
            events.remove_all_listeners()
        handle, self.handle = self.handle, None
        if handle is not None:
            try:
                await handle.close()
            except Exception as e:
                logger.debug("[%s] error closing transport handle: %s", self.account_id, e)

    # -- transport events --------------------------------------------------

    async def _handle_creds_update(self, *_: Any) -> None:
        try:
            await self.host.on_creds_update(connected=self.is_open)
        except Exception:
            logger.exception("[%s] failed to persist credentials", self.account_id)

    async def _handle_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            await self.host.on_qr(update.qr)
        if self._handshaking:
            return
        if update.connection == "open" and self.state is ConnectionState.CONNECTING:
            await self._on_open()
        elif update.connection == "close" and self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.OPEN,
        ):
            self._set_state(ConnectionState.CLOSING)
            self._close_task = self.spawn(self._handle_close(update), "close")

    async def _on_open(self) -> None:
        handle = self.handle
        if handle is None:
            return
        self._set_state(ConnectionState.OPEN)
        self.open_count += 1
        logger.info("[%s] connection open", self.account_id)
        self._start_timers()
        await self.host.on_open(handle)

    async def _handle_close(self, update: ConnectionUpdate) -> None:
        await self._stop_timers()
        await self._release_handle()
        self._set_state(ConnectionState.DISCONNECTED)

        reason = format_reason(update.status_code, update.reason)
        kind = classify_disconnect(update.status_code, update.reason)
        logger.warning("[%s] disconnected (%s) [%s]", self.account_id, reason, kind.value)
        await self.host.on_closed(update.status_code, update.reason or "Unknown")

        if kind is DisconnectKind.LOGGED_OUT:
            await self._enter_logged_out(reason)
            return
        await self._after_close(kind, reason, update.reason)

    async def _after_close(self, kind: DisconnectKind, reason: str, raw_reason: str | None) -> None:
        """Route a classified close to recovery, the reconnection policy, or the host."""

        if self.host.recovering:
            logger.info("[%s] recovery in progress, leaving reconnection to it", self.account_id)
            return
        if kind is DisconnectKind.DECRYPTION and not self.manual_disconnect:
            if await self.host.on_decryption(raw_reason or reason):
                return
            if self.manual_disconnect or not self.host.is_active:
                return
        if not self.host.registered and kind is not DisconnectKind.RESTART_REQUIRED:
            logger.info("[%s] closed before pairing completed", self.account_id)
            await self.host.on_disconnect(reason)
            return
        await self._reconnect_episode(kind, reason)

    async def _enter_logged_out(self, reason: str) -> None:
        await self._stop_timers()
        self._set_state(ConnectionState.LOGGED_OUT)
        logger.warning("[%s] logged out, no further reconnection", self.account_id)
        await self.host.on_logged_out(reason)

    async def _reconnect_episode(self, kind: DisconnectKind, reason: str) -> None:
        attempt = 1
        while True:
            verdict = self.policy.decide(
                kind,
                attempt,
                is_active=self.host.is_active,
                manual=self.manual_disconnect,
            )
            if not verdict.retry:
                logger.warning(
                    "[%s] not reconnecting (%s): %s", self.account_id, verdict.reason, reason
                )
                await self.host.on_disconnect(reason)
                return

            logger.info(
                "[%s] reconnect attempt %d/%d in %.1fs",
                self.account_id,
                attempt,
                self.policy.config.max_reconnect_attempts,
                verdict.delay_s,
            )
            if verdict.delay_s > 0:
                await self._sleep(verdict.delay_s)
            if self.manual_disconnect or not self.host.is_active:
                attempt += 1
                continue

            try:
                await self.connect()
                return
            except LoggedOutError:
                return
            except Exception as e:
                code = status_code_of(e)
                kind = classify_disconnect(code, str(e))
                reason = format_reason(code, str(e))
                logger.warning("[%s] reconnect attempt %d failed: %s", self.account_id, attempt, e)
            attempt += 1

    # -- liveness timers ---------------------------------------------------

    def _start_timers(self) -> None:
        if not is_live(self._keep_alive_task):
            self._keep_alive_task = self.spawn(self._keep_alive_loop(), "keep_alive")
        if not is_live(self._health_task):
            self._health_task = self.spawn(self._health_check_loop(), "health_check")

    async def _stop_timers(self) -> None:
        await cancel_suppress(self._keep_alive_task)
        await cancel_suppress(self._health_task)
        self._keep_alive_task = None
        self._health_task = None

    async def _probe(self, handle: TransportHandle) -> None:
        user_id = handle.user_id
        if not user_id:
            raise NotConnectedError("transport has no authenticated identity")
        await asyncio.wait_for(
            handle.presence_update("available", user_id), timeout=self.config.connect_timeout_s
        )

    async def _keep_alive_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(random_interval(self.config.keep_alive_interval_s))
            handle = self.handle
            if handle is None or not self.is_open:
                return
            try:
                await self._probe(handle)
            except Exception as e:
                logger.warning("[%s] keep-alive failed: %s", self.account_id, e)
                continue
            logger.debug("[%s] keep-alive ok", self.account_id)
            await self.host.on_probe_ok()

    async def _health_check_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(random_interval(self.config.health_check_interval_s))
            handle = self.handle
            if handle is None or not self.is_open:
                return
            try:
                await self._probe(handle)
            except Exception as e:
                logger.error("[%s] health check failed: %s", self.account_id, e)
                await self.host.on_probe_failed(e)
                continue
            await self.host.on_probe_ok()

    # -- operations --------------------------------------------------------

    async def refresh(self) -> bool:
        """Lightweight liveness probe; True if the identity is still valid."""

        handle = self.handle
        if handle is None or not self.is_open:
            return False
        try:
            await self._probe(handle)
        except Exception as e:
            logger.warning("[%s] refresh failed: %s", self.account_id, e)
            return False
        if self.config.refresh_settle_s > 0:
            await self._sleep(self.config.refresh_settle_s)
        return self.handle is handle and self.is_open

    async def drop(self) -> None:
        """Close the current connection without triggering reconnection."""

        await self._stop_timers()
        await self._release_handle()
        if self.state is not ConnectionState.LOGGED_OUT:
            self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> ConnectionUpdate:
        await self.drop()
        return await self.connect()

    async def disconnect(self, *, logout: bool = False) -> None:
        """
        Manual disconnect. Suppresses automatic reconnection until `allow_reconnect()`.
        """

        self.manual_disconnect = True
        await self._cancel_tasks()
        handle = self.handle
        if logout and handle is not None:
            try:
                await handle.logout()
            except Exception as e:
                logger.warning("[%s] logout failed: %s", self.account_id, e)
        await self.drop()
        if logout:
            self._set_state(ConnectionState.LOGGED_OUT)

    def allow_reconnect(self) -> None:
        self.manual_disconnect = False
        if self.state is ConnectionState.LOGGED_OUT:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _cancel_tasks(self) -> None:
        await cancel_suppress(self._connect_task)
        self._connect_task = None
        for task in list(self._tasks):
            await cancel_suppress(task)

    async def shutdown(self) -> None:
        """Cancel every timer and task and release the handle."""

        await self._cancel_tasks()
        await self.drop()
