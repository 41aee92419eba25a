from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import SessionConfig
from .delivery import DeliveryRecord, DeliveryTracker, MessageStatus
from .exceptions import (
    AccountBlockedError,
    DeliveryError,
    EmptyMessageError,
    InactiveAccountError,
    MessageBlockedError,
    RecipientBlockedError,
    ThrottledError,
    status_code_of,
)
from .messages import OutgoingMessage, normalize_outgoing, number_to_jid
from .transport import SentMessage, TransportHandle

logger = logging.getLogger(__name__)

# Failures that another attempt cannot fix.
_NO_RETRY = (MessageBlockedError, InactiveAccountError, EmptyMessageError)


@dataclass(slots=True)
class SendOptions:
    max_retries: int | None = None
    retry_delay_s: float | None = None
    human_pacing: bool | None = None

    track_delivery: bool = False
    delivery_timeout_s: float | None = None
    wait_for_delivery: bool = False
    wait_for_read: bool = False
    wait_timeout_s: float | None = None
    throw_on_delivery_error: bool = False

    on_success: Callable[[SentMessage], Any] | None = None
    on_failure: Callable[[BaseException, int], Any] | None = None


@dataclass(slots=True)
class DeliveryResult:
    message_id: str | None
    to_number: str
    jid: str
    text: str
    attempts: int
    sent: SentMessage
    content: dict[str, Any]
    delivery: DeliveryRecord | None = None

    @property
    def status(self) -> MessageStatus | None:
        return self.delivery.status if self.delivery is not None else None


class HandleOwner(Protocol):
    def require_handle(self) -> TransportHandle: ...


BlockedHook = Callable[[str, str], Awaitable[Any]]


def classify_block(exc: BaseException, to_number: str) -> MessageBlockedError | None:
    if isinstance(exc, MessageBlockedError):
        return exc
    code = status_code_of(exc)
    text = str(exc).lower()
    if code == 403 or "forbidden" in text:
        return RecipientBlockedError("Message blocked: User has blocked this number", to=to_number)
    if code == 401 or "unauthorized" in text:
        return AccountBlockedError("Message blocked: Authentication failed", to=to_number)
    if code == 429 or "too many requests" in text:
        return ThrottledError("Message blocked: Rate limited", to=to_number)
    return None


async def _call(fn: Callable[..., Any] | None, *args: Any) -> None:
    if fn is None:
        return
    try:
        res = fn(*args)
        if asyncio.iscoroutine(res):
            await res
    except Exception:
        logger.exception("send callback failed")


class HumanPacer:
    """Typing indicator plus human-looking delays around a raw send."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._rng = rng or random.Random()
        self._sleep = sleep

    def typing_delay(self, text: str) -> float:
        words = max(1, len(text.split()))
        return 0.8 + words * 0.22 + self._rng.uniform(0, 1.2)

    def idle_delay(self) -> float:
        return self._rng.uniform(0.8, 3.5)

    async def before_send(self, handle: TransportHandle, jid: str, text: str) -> None:
        await handle.presence_subscribe(jid)
        await handle.presence_update("composing", jid)
        await self._sleep(self.typing_delay(text))
        await handle.presence_update("paused", jid)

    async def after_send(self) -> None:
        await self._sleep(self.idle_delay())


class OutboundSender:
    """
    Send pipeline for one account: validation, retries with capped exponential
    backoff, block detection and optional delivery tracking.
    """

    def __init__(
        self,
        account_id: str,
        connection: HandleOwner,
        tracker: DeliveryTracker,
        *,
        config: SessionConfig | None = None,
        is_active: Callable[[], bool] = lambda: True,
        pacer: HumanPacer | None = None,
        on_blocked: BlockedHook | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self.connection = connection
        self.tracker = tracker
        self.config = config or SessionConfig()
        self._is_active = is_active
        self.pacer = pacer
        self._on_blocked = on_blocked
        self._sleep = sleep

    def _log_retry(self, state: RetryCallState) -> None:
        wait = state.next_action.sleep if state.next_action else 0
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "[%s] send attempt %d failed (%s), retrying in %.1fs",
            self.account_id,
            state.attempt_number,
            exc,
            wait,
        )

    async def send(
        self,
        to_number: str,
        payload: str | Mapping[str, Any],
        options: SendOptions | None = None,
    ) -> DeliveryResult:
        opts = options or SendOptions()
        outgoing = normalize_outgoing(payload)
        if not self._is_active():
            raise InactiveAccountError()
        self.connection.require_handle()

        jid = number_to_jid(to_number)
        max_retries = max(1, opts.max_retries or self.config.send_max_retries)
        delay = (
            opts.retry_delay_s if opts.retry_delay_s is not None else self.config.send_retry_delay_s
        )
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=delay, max=self.config.send_max_backoff_s),
            retry=retry_if_not_exception_type(_NO_RETRY),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    sent = await self._attempt(
                        jid, to_number, outgoing, opts, attempts, max_retries
                    )
            logger.info("[%s] message sent to %s", self.account_id, jid)
            delivery = await self._await_delivery(sent, opts)
        except Exception as e:
            if not isinstance(e, MessageBlockedError):
                logger.error(
                    "[%s] sending to %s failed after %d attempt(s): %s",
                    self.account_id,
                    jid,
                    attempts,
                    e,
                )
            await _call(opts.on_failure, e, attempts)
            raise

        await _call(opts.on_success, sent)
        return DeliveryResult(
            message_id=sent.message_id,
            to_number=to_number,
            jid=jid,
            text=outgoing.text,
            attempts=attempts,
            sent=sent,
            content=outgoing.content,
            delivery=delivery,
        )

    async def _attempt(
        self,
        jid: str,
        to_number: str,
        outgoing: OutgoingMessage,
        opts: SendOptions,
        attempt: int,
        max_retries: int,
    ) -> SentMessage:
        handle = self.connection.require_handle()
        logger.info(
            "[%s] sending message to %s (attempt %d/%d)", self.account_id, jid, attempt, max_retries
        )
        pacing = self.config.human_pacing if opts.human_pacing is None else opts.human_pacing
        pacer = self.pacer if pacing else None
        try:
            if pacer is not None:
                await pacer.before_send(handle, jid, outgoing.text)
            sent = await handle.send(jid, outgoing.content)
        except Exception as e:
            blocked = classify_block(e, to_number)
            if blocked is None:
                raise
            logger.error(
                "[%s] message to %s blocked: %s", self.account_id, to_number, blocked.reason
            )
            if self._on_blocked is not None:
                await self._on_blocked(to_number, blocked.reason)
            if blocked is e:
                raise
            raise blocked from e

        wants_tracking = opts.track_delivery or opts.wait_for_delivery or opts.wait_for_read
        if sent.message_id and wants_tracking:
            self.tracker.track(
                sent.message_id, to_number=to_number, timeout_s=opts.delivery_timeout_s
            )
        if pacer is not None:
            await pacer.after_send()
        return sent

    async def _await_delivery(self, sent: SentMessage, opts: SendOptions) -> DeliveryRecord | None:
        message_id = sent.message_id
        if not message_id:
            return None
        if not (opts.wait_for_delivery or opts.wait_for_read):
            return self.tracker.get(message_id)

        target = MessageStatus.READ if opts.wait_for_read else MessageStatus.DELIVERED
        logger.info("[%s] waiting for %s of %s", self.account_id, target.value, message_id)
        try:
            return await self.tracker.wait_for(
                message_id, target, timeout_s=opts.wait_timeout_s, throw_on_error=True
            )
        except DeliveryError as e:
            record = self.tracker.get(message_id)
            logger.warning("[%s] delivery confirmation for %s: %s", self.account_id, message_id, e)
            if (
                opts.throw_on_delivery_error
                and record is not None
                and record.status is MessageStatus.ERROR
            ):
                raise DeliveryError(
                    f"Message delivery failed: {record.error_message or 'Unknown error'}",
                    message_id=message_id,
                ) from e
            return record
