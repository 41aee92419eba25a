from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from . import constants as c
from .exceptions import DeliveryError, DeliveryTimeoutError
from .util.cache import TTLCache

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    PLAYED = "PLAYED"
    ERROR = "ERROR"
    DELETED = "DELETED"


_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.PLAYED: 4,
}
TERMINAL_STATUSES = frozenset({MessageStatus.ERROR, MessageStatus.DELETED})
# Statuses after which no delivery timeout is needed any more.
_SETTLED = frozenset(
    {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.PLAYED, *TERMINAL_STATUSES}
)

# WebMessageInfo.Status numbering used by the transport.
_NUMERIC_STATUS = {
    0: MessageStatus.ERROR,
    1: MessageStatus.PENDING,
    2: MessageStatus.SENT,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.READ,
    5: MessageStatus.PLAYED,
}
_STATUS_ALIASES = {
    "SERVER_ACK": MessageStatus.SENT,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "REVOKED": MessageStatus.DELETED,
}


def status_from_transport(value: int | str | MessageStatus) -> MessageStatus:
    if isinstance(value, MessageStatus):
        return value
    if isinstance(value, int):
        return _NUMERIC_STATUS.get(value, MessageStatus.ERROR)
    text = str(value).strip().upper()
    if text.isdigit():
        return _NUMERIC_STATUS.get(int(text), MessageStatus.ERROR)
    if text in _STATUS_ALIASES:
        return _STATUS_ALIASES[text]
    try:
        return MessageStatus(text)
    except ValueError:
        return MessageStatus.ERROR


def satisfies(status: MessageStatus, target: MessageStatus) -> bool:
    """True when `status` is `target` or a later forward status (READ implies DELIVERED)."""

    if status is target:
        return True
    if status in TERMINAL_STATUSES or target in TERMINAL_STATUSES:
        return False
    return _RANK[status] >= _RANK[target]


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    if current in TERMINAL_STATUSES or current is new:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return _RANK[new] > _RANK[current]


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(slots=True)
class DeliveryRecord:
    message_id: str
    status: MessageStatus
    sent_at: dt.datetime
    to_number: str | None = None
    delivered_at: dt.datetime | None = None
    read_at: dt.datetime | None = None
    played_at: dt.datetime | None = None
    error_code: int | None = None
    error_message: str | None = None


class DeliveryTracker:
    """
    Bounded, TTL-evicted table of outbound message states.

    Each tracked message gets a timeout that forces it to ERROR (code 408) when
    nothing arrives first. Cache eviction also cancels a still-pending timeout,
    so an evicted record never leaves a timer behind.
    """

    def __init__(
        self,
        account_id: str,
        *,
        timeout_s: float = c.DELIVERY_TIMEOUT_S,
        poll_interval_s: float = c.DELIVERY_POLL_INTERVAL_S,
        max_size: int = c.DELIVERY_CACHE_SIZE,
        ttl_s: float = c.DELIVERY_TTL_S,
        clock: Callable[[], float] = time.monotonic,
        on_change: Callable[[DeliveryRecord], None] | None = None,
    ) -> None:
        self.account_id = account_id
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self._on_change = on_change
        self._timeouts: dict[str, asyncio.TimerHandle] = {}
        self._records: TTLCache[str, DeliveryRecord] = TTLCache(
            max_size, ttl_s, clock=clock, on_evict=self._on_evict
        )

    def __len__(self) -> int:
        return len(self._records)

    @property
    def pending_timeouts(self) -> int:
        return len(self._timeouts)

    def _on_evict(self, message_id: str, _record: DeliveryRecord) -> None:
        self._clear_timeout(message_id)

    def _clear_timeout(self, message_id: str) -> None:
        handle = self._timeouts.pop(message_id, None)
        if handle is not None:
            handle.cancel()

    def track(
        self, message_id: str, *, to_number: str | None = None, timeout_s: float | None = None
    ) -> DeliveryRecord:
        """Start tracking an outbound message; must run inside the event loop."""

        record = DeliveryRecord(
            message_id=message_id,
            status=MessageStatus.PENDING,
            sent_at=_now(),
            to_number=to_number,
        )
        self._clear_timeout(message_id)
        self._records.set(message_id, record)

        loop = asyncio.get_running_loop()
        self._timeouts[message_id] = loop.call_later(
            timeout_s if timeout_s is not None else self.timeout_s,
            self._handle_timeout,
            message_id,
        )
        logger.debug(
            "[%s] tracking delivery of %s, total tracked: %d",
            self.account_id,
            message_id,
            len(self._records),
        )
        return record

    def _handle_timeout(self, message_id: str) -> None:
        self._timeouts.pop(message_id, None)
        self.update_status(
            message_id,
            MessageStatus.ERROR,
            error_code=c.DELIVERY_TIMEOUT_CODE,
            error_message="Delivery timeout",
        )

    def get(self, message_id: str) -> DeliveryRecord | None:
        return self._records.get(message_id)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus | int | str,
        *,
        at: dt.datetime | None = None,
        error_code: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Apply a status change. Returns False (and changes nothing) for unknown
        ids, repeated statuses and backward moves.
        """

        new = status_from_transport(status)
        record = self._records.get(message_id)
        if record is None:
            logger.debug(
                "[%s] no delivery tracking for %s (status %s)",
                self.account_id,
                message_id,
                new.value,
            )
            return False
        if not can_transition(record.status, new):
            if record.status is not new:
                logger.debug(
                    "[%s] ignoring %s -> %s for %s",
                    self.account_id,
                    record.status.value,
                    new.value,
                    message_id,
                )
            return False

        logger.debug(
            "[%s] delivery status %s: %s -> %s",
            self.account_id,
            message_id,
            record.status.value,
            new.value,
        )
        ts = at or _now()
        record.status = new
        if new is MessageStatus.DELIVERED:
            record.delivered_at = ts
        elif new is MessageStatus.READ:
            record.read_at = ts
            record.delivered_at = record.delivered_at or ts
        elif new is MessageStatus.PLAYED:
            record.played_at = ts
            record.read_at = record.read_at or ts
            record.delivered_at = record.delivered_at or ts
        elif new is MessageStatus.ERROR:
            record.error_code = error_code
            record.error_message = error_message or "Unknown error"

        if new in _SETTLED:
            self._clear_timeout(message_id)

        if self._on_change is not None:
            self._on_change(record)
        return True

    async def wait_for(
        self,
        message_id: str,
        target: MessageStatus = MessageStatus.DELIVERED,
        *,
        timeout_s: float | None = None,
        throw_on_error: bool = False,
    ) -> DeliveryRecord | None:
        """
        Poll until the record reaches `target` (or a status implying it).

        On ERROR/DELETED or on timeout: raise when `throw_on_error` is set,
        otherwise return the record as it stands (None if it is unknown).
        """

        loop = asyncio.get_running_loop()
        limit = timeout_s if timeout_s is not None else self.timeout_s
        deadline = loop.time() + limit

        while True:
            record = self.get(message_id)
            if record is not None:
                if satisfies(record.status, target):
                    return record
                if record.status in TERMINAL_STATUSES:
                    msg = f"Message delivery failed: {record.error_message or record.status.value}"
                    if throw_on_error:
                        raise DeliveryError(msg, message_id=message_id)
                    logger.warning("[%s] %s for %s", self.account_id, msg, message_id)
                    return record

            remaining = deadline - loop.time()
            if remaining <= 0:
                msg = f"Timeout waiting for {target.value} status after {limit}s"
                if throw_on_error:
                    raise DeliveryTimeoutError(msg, message_id=message_id)
                logger.warning("[%s] %s for %s", self.account_id, msg, message_id)
                return record
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    def clear(self) -> None:
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        self._records.clear()
