from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .auth.account import AccountState, account_fields, diff_account
from .auth.bridge import CredentialBridge
from .auth.state import AuthDatabase, WorkingAuthState, is_registered
from .auth.store import WorkingDirectory
from .config import ProxyConfig, SessionConfig
from .connection import ConnectionStateMachine
from .constants import STATUS_OK
from .delivery import DeliveryRecord, DeliveryTracker, MessageStatus, status_from_transport
from .exceptions import AlreadyConnectedError, DecryptionError, NetworkError
from .messages import (
    field,
    incoming_key,
    is_broadcast,
    jid_to_number,
    normalize_incoming,
)
from .pairing import PairingChallenge
from .reconnect import ReconnectPolicy
from .recovery import MISSING_PAYLOAD_MESSAGE, RecoveryCoordinator
from .sender import DeliveryResult, HumanPacer, OutboundSender, SendOptions
from .transport import MessageStatusUpdate, OpenOptions, Transport, TransportHandle
from .util.events import Listener, SessionEvent, SessionEvents

logger = logging.getLogger(__name__)

# Delivery error codes that mean the message was refused, not lost.
_BLOCK_REASONS = {403: "USER_BLOCKED", 401: "AUTH_FAILED", 429: "RATE_LIMITED"}


def _today() -> str:
    return dt.date.today().isoformat()


class AccountSession:
    """
    One messaging account: credentials, connection, recovery and sends.

    This is the user-facing surface. The lower-level pieces (bridge, state
    machine, recovery coordinator, tracker, sender) are reachable as attributes
    but callers should not need them.
    """

    def __init__(
        self,
        account_id: str,
        *,
        transport: Transport,
        db: AuthDatabase,
        config: SessionConfig | None = None,
        state: AccountState | None = None,
        policy: ReconnectPolicy | None = None,
        pacer: HumanPacer | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self.db = db
        self.config = config or SessionConfig()
        self.state = state or AccountState(phone_number=account_id)
        self.events = SessionEvents(account_id)
        self.pairing: PairingChallenge | None = None

        self._loaded = state is not None
        self._force_reset = False

        self.bridge = CredentialBridge(
            account_id,
            db,
            WorkingDirectory(self.config.account_dir(account_id)),
            on_registered=self._on_registered,
            on_record=self._merge_record,
        )
        self.connection = ConnectionStateMachine(
            account_id, transport, self, config=self.config, policy=policy, sleep=sleep
        )
        self.recovery = RecoveryCoordinator(self, waits_s=self.config.recovery_waits_s, sleep=sleep)
        self.tracker = DeliveryTracker(
            account_id,
            timeout_s=self.config.delivery_timeout_s,
            poll_interval_s=self.config.delivery_poll_interval_s,
            max_size=self.config.delivery_cache_size,
            ttl_s=self.config.delivery_ttl_s,
            on_change=self._on_delivery_change,
        )
        self.sender = OutboundSender(
            account_id,
            self.connection,
            self.tracker,
            config=self.config,
            is_active=lambda: self.is_active,
            pacer=pacer or HumanPacer(sleep=sleep),
            on_blocked=self._on_blocked,
            sleep=sleep,
        )

    def __repr__(self) -> str:
        return f"AccountSession({self.account_id!r}, state={self.connection.state.value})"

    # -- properties --------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    @property
    def registered(self) -> bool:
        return self.bridge.registered

    @property
    def connected(self) -> bool:
        return self.connection.is_open

    @property
    def recovering(self) -> bool:
        return self.recovery.recovering

    @property
    def pending_timers(self) -> int:
        return self.connection.pending_timers + self.tracker.pending_timeouts

    def on(self, event: SessionEvent | str, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(SessionEvent(event), listener)

    # -- account state -----------------------------------------------------

    async def load(self) -> AccountState:
        record = await self.db.get_auth(self.account_id)
        if record:
            self._merge_record(record)
        self._loaded = True
        return self.state

    def _merge_record(self, record: Mapping[str, Any]) -> None:
        known = account_fields()
        for k, v in record.items():
            if k in known:
                setattr(self.state, k, v)

    async def update(self, **changes: Any) -> dict[str, Any]:
        """
        Persist the fields that actually changed and fire `on_update`.

        Returns the applied changes; an empty dict means nothing differed and
        nothing was written.
        """

        diff = diff_account(self.state, changes)
        if not diff:
            return {}
        for k, v in diff.items():
            setattr(self.state, k, v)
        record = await self.db.update_auth(self.account_id, diff)
        if record:
            self._merge_record(record)
        await self.events.fire(SessionEvent.UPDATE, self.account_id, diff)
        return diff

    # -- lifecycle ---------------------------------------------------------

    async def register(self) -> PairingChallenge | None:
        """
        Start a fresh device pairing.

        Returns the challenge to show the user; None when the transport opened
        without needing one.
        """

        if self.connection.is_open:
            raise AlreadyConnectedError(f"[{self.account_id}] is already registered and connected")
        logger.info("[%s] starting registration", self.account_id)
        if not self._loaded:
            await self.load()
        if not self.is_active:
            await self.update(is_active=True)

        self.connection.allow_reconnect()
        self._force_reset = True
        update = await self.connection.connect()
        if update.qr:
            self.pairing = PairingChallenge(update.qr)
            return self.pairing
        return None

    async def connect(self) -> None:
        """Restore the persisted session and open it."""

        if not self._loaded:
            await self.load()
        if not self.is_active:
            logger.info("[%s] account inactive, not connecting", self.account_id)
            return

        self.connection.allow_reconnect()
        logger.info("[%s] restoring session", self.account_id)
        try:
            update = await self.connection.connect()
        except Exception:
            if not await self._has_identity():
                await self._handle_incomplete_session()
                return
            raise

        if update.connection != "open":
            # Restore ended in a pairing prompt: nothing usable was persisted.
            await self._handle_incomplete_session()

    async def _has_identity(self) -> bool:
        record = await self.db.get_auth(self.account_id)
        return is_registered((record or {}).get("creds"))

    async def _handle_incomplete_session(self) -> None:
        logger.info("[%s] session incomplete, removing", self.account_id)
        await self.connection.shutdown()
        self.pairing = None
        await self.events.fire(SessionEvent.REMOVE, self.account_id)

    async def disconnect(self, reason: str = "Manual disconnect", *, logout: bool = False) -> None:
        logger.info("[%s] manual disconnect: %s", self.account_id, reason)
        await self.connection.disconnect(logout=logout)
        await self.events.fire(SessionEvent.DISCONNECT, reason)

    async def enable(self) -> None:
        await self.update(is_active=True)
        self.connection.allow_reconnect()
        await self.connect()

    async def disable(self) -> None:
        await self.update(is_active=False)
        await self.disconnect("Account disabled")

    async def remove(self, *, clear_data: bool = False) -> None:
        logger.info("[%s] removing session", self.account_id)
        await self.connection.disconnect(logout=True)
        self.tracker.clear()
        if clear_data:
            await self.bridge.reset_credentials()
            logger.info("[%s] session data cleared", self.account_id)
        await self.events.fire(SessionEvent.REMOVE, self.account_id)

    async def cleanup(self) -> None:
        """Stop every timer and drop the connection; no logout, no callbacks."""

        try:
            await self.connection.shutdown()
        finally:
            self.tracker.clear()

    async def recover_from_decryption_error(
        self, message: str | DecryptionError = "Failed to decrypt message - manual recovery"
    ) -> bool:
        logger.info("[%s] manual decryption recovery triggered", self.account_id)
        return await self.recovery.recover(message)

    # -- messaging ---------------------------------------------------------

    async def send(
        self,
        to_number: str,
        payload: str | Mapping[str, Any],
        options: SendOptions | None = None,
    ) -> DeliveryResult:
        result = await self.sender.send(to_number, payload, options)

        today = _today()
        daily = 1 if self.state.last_sent_message != today else self.state.daily_message_count + 1
        await self.update(
            last_sent_message=today,
            daily_message_count=daily,
            outgoing_message_count=self.state.outgoing_message_count + 1,
        )
        await self.events.fire(SessionEvent.OUTGOING_MESSAGE, result)
        return result

    async def read(self, keys: Mapping[str, Any] | list[Mapping[str, Any]]) -> None:
        """Send read receipts for one message key or a batch of them."""

        handle = self.connection.require_handle()
        batch = [dict(keys)] if isinstance(keys, Mapping) else [dict(k) for k in keys]
        if not batch:
            return
        await handle.read_messages(batch)

    def get_delivery_status(self, message_id: str) -> DeliveryRecord | None:
        return self.tracker.get(message_id)

    async def wait_for_status(
        self,
        message_id: str,
        target: MessageStatus = MessageStatus.DELIVERED,
        *,
        timeout_s: float | None = None,
        throw_on_error: bool = False,
    ) -> DeliveryRecord | None:
        return await self.tracker.wait_for(
            message_id, target, timeout_s=timeout_s, throw_on_error=throw_on_error
        )

    async def _on_blocked(self, to_number: str, reason: str) -> None:
        await self.update(blocked_count=self.state.blocked_count + 1)
        await self.events.fire(SessionEvent.MESSAGE_BLOCKED, self.account_id, to_number, reason)

    def _on_delivery_change(self, record: DeliveryRecord) -> None:
        self.connection.spawn(
            self.events.fire(SessionEvent.MESSAGE_UPDATE, record.message_id, record),
            "message_update",
        )

    # -- connection host ---------------------------------------------------

    async def prepare_auth(self) -> WorkingAuthState:
        force, self._force_reset = self._force_reset, False
        return await self.bridge.restore(force_reset=force)

    def open_options(self) -> OpenOptions:
        return OpenOptions(
            connect_timeout_s=self.config.connect_timeout_s,
            proxy=ProxyConfig.resolve(self.state.proxy or self.config.proxy),
        )

    async def on_creds_update(self, *, connected: bool) -> None:
        await self.bridge.persist(connected=connected)

    async def on_qr(self, qr: str) -> None:
        logger.info("[%s] new pairing code", self.account_id)
        self.pairing = PairingChallenge(qr)

    async def _on_registered(self) -> None:
        self.pairing = None
        await self.events.fire(SessionEvent.REGISTERED, self)

    async def on_open(self, handle: TransportHandle) -> None:
        await self.bridge.persist(connected=True)
        await self.update(status_code=STATUS_OK, error_message=None)
        if not self.registered:
            logger.warning("[%s] connection open but session not registered", self.account_id)
            return
        await self._sync_profile(handle)
        logger.info("[%s] ready", self.account_id)
        await self.events.fire(SessionEvent.READY, self)

    async def _sync_profile(self, handle: TransportHandle) -> None:
        if not self.state.has_privacy_updated:
            try:
                await handle.update_privacy()
            except Exception as e:
                logger.warning("[%s] failed to set privacy settings: %s", self.account_id, e)
            else:
                await self.update(has_privacy_updated=True)

        user_id = handle.user_id
        if user_id:
            try:
                url = await handle.profile_picture_url(user_id)
            except Exception as e:
                logger.debug("[%s] no profile picture: %s", self.account_id, e)
            else:
                await self.update(profile_picture_url=url)

        name = self.state.name
        if name and handle.user_name != name:
            try:
                await handle.update_profile_name(name)
                logger.info("[%s] profile name set to %s", self.account_id, name)
            except Exception as e:
                logger.warning("[%s] failed to set profile name: %s", self.account_id, e)

    async def on_closed(self, status_code: int | None, reason: str) -> None:
        await self.update(
            status_code=status_code,
            error_message=reason,
            last_error_at=dt.datetime.now(dt.UTC),
        )

    async def on_message(self, raw: Any) -> None:
        for msg in raw if isinstance(raw, list) else [raw]:
            remote_jid, message_id, from_me = incoming_key(msg)
            if from_me or not remote_jid or is_broadcast(remote_jid):
                continue
            if not field(msg, "message"):
                logger.warning(
                    "[%s] message %s from %s has no payload",
                    self.account_id,
                    message_id,
                    remote_jid,
                )
                self._start_recovery(MISSING_PAYLOAD_MESSAGE)
                continue

            await self.update(incoming_message_count=self.state.incoming_message_count + 1)
            handle = self.connection.handle
            incoming = normalize_incoming(msg, handle.user_id if handle is not None else None)
            await self.events.fire(SessionEvent.INCOMING_MESSAGE, incoming)

    async def on_status(self, update: MessageStatusUpdate | list[MessageStatusUpdate]) -> None:
        for u in update if isinstance(update, list) else [update]:
            status = status_from_transport(u.status)
            self.tracker.update_status(
                u.message_id, status, error_code=u.error_code, error_message=u.error_message
            )
            if status is not MessageStatus.ERROR:
                continue
            to_number = jid_to_number(u.remote_jid)
            reason = _BLOCK_REASONS.get(u.error_code or 0)
            if reason is None:
                logger.error(
                    "[%s] message %s to %s failed with code %s",
                    self.account_id,
                    u.message_id,
                    to_number,
                    u.error_code,
                )
                continue
            logger.error("[%s] message to %s blocked: %s", self.account_id, to_number, reason)
            await self._on_blocked(to_number, reason)

    async def on_decrypt_error(self, error: Exception | str) -> None:
        self._start_recovery(error if isinstance(error, DecryptionError) else str(error))

    def _start_recovery(self, reason: str | DecryptionError) -> None:
        if self.recovery.recovering:
            logger.warning("[%s] recovery already in progress, skipping", self.account_id)
            return
        self.connection.spawn(self.recovery.recover(reason), "recovery")

    async def on_decryption(self, reason: str) -> bool:
        return await self.recovery.recover(reason)

    async def on_logged_out(self, reason: str) -> None:
        await self.update(is_active=False)
        await self.bridge.purge()
        await self.events.fire(SessionEvent.DISCONNECT, reason)

    async def on_disconnect(self, reason: str) -> None:
        await self.events.fire(SessionEvent.DISCONNECT, reason)

    async def on_probe_ok(self) -> None:
        await self.update(status_code=STATUS_OK, error_message=None)

    async def on_probe_failed(self, error: Exception) -> None:
        await self.events.fire(SessionEvent.ERROR, error)

    # -- recovery host -----------------------------------------------------

    async def refresh(self) -> bool:
        return await self.connection.refresh()

    async def drop_connection(self) -> None:
        await self.connection.drop()

    async def reconnect(self) -> None:
        update = await self.connection.reconnect()
        if update.connection != "open":
            raise NetworkError("session did not reopen")

    async def purge_working_dir(self) -> None:
        await self.bridge.purge()

    async def reset_credentials(self) -> None:
        await self.bridge.reset_credentials()
        self.state.creds = None

    async def mark_failed(self, status_code: int, message: str) -> None:
        await self.update(
            status_code=status_code,
            error_message=message,
            last_error_at=dt.datetime.now(dt.UTC),
        )
