from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .constants import RECOVERY_WAITS_S, STATUS_BAD_SESSION, STATUS_UNAUTHORIZED
from .exceptions import DecryptionError

logger = logging.getLogger(__name__)


class Symptom(str, Enum):
    AUTH_TAG = "auth_tag"  # Bad MAC
    DECODE_FAILURE = "decode_failure"
    UNSUPPORTED_STATE = "unsupported_state"
    MISSING_PAYLOAD = "missing_payload"


MISSING_PAYLOAD_MESSAGE = "Null/undefined message detected"

# Symptoms whose persistence means the stored session itself is corrupt.
RESET_SYMPTOMS = frozenset({Symptom.UNSUPPORTED_STATE, Symptom.DECODE_FAILURE})


def classify_symptom(message: str | None) -> Symptom | None:
    """Map a transport error message onto a corrupted-session symptom, if it is one."""

    if not message:
        return None
    text = message.lower()
    if "unsupported state" in text or "unable to authenticate data" in text:
        return Symptom.UNSUPPORTED_STATE
    if "failed to decrypt message" in text or "decrypt message" in text:
        return Symptom.DECODE_FAILURE
    if "null/undefined message" in text:
        return Symptom.MISSING_PAYLOAD
    if "bad mac" in text or "mac" in text.split() or "decrypt" in text:
        return Symptom.AUTH_TAG
    return None


def _symptom_of(error: DecryptionError) -> Symptom | str:
    if error.symptom:
        try:
            return Symptom(error.symptom)
        except ValueError:
            logger.debug("unknown decryption symptom %r, classifying message", error.symptom)
    return str(error)


class RecoveryHost(Protocol):
    """What the coordinator needs from the account session."""

    account_id: str

    async def refresh(self) -> bool: ...

    async def drop_connection(self) -> None: ...

    async def reconnect(self) -> None: ...

    async def purge_working_dir(self) -> None: ...

    async def reset_credentials(self) -> None: ...

    async def mark_failed(self, status_code: int, message: str) -> None: ...

    async def disable(self) -> None: ...


@dataclass(slots=True)
class RecoveryAttempt:
    """One decryption-error episode: which strategy is being tried, and what failed."""

    symptom: Symptom
    strategy_index: int = 0
    started_at: float = field(default_factory=time.monotonic)
    errors: list[str] = field(default_factory=list)

    @property
    def last_error(self) -> str:
        return self.errors[-1] if self.errors else "Unknown error"


@dataclass(frozen=True, slots=True)
class Strategy:
    name: str
    wait_s: float
    run: Callable[[], Awaitable[bool]]


class RecoveryCoordinator:
    """
    Runs the strategy ladder for corrupted-session symptoms.

    Strategies are tried in order until one succeeds: lightweight refresh,
    session reconnection, fresh-socket reconnection. Only one episode runs at a
    time per account; overlapping triggers return False immediately.
    """

    def __init__(
        self,
        host: RecoveryHost,
        *,
        waits_s: tuple[float, ...] = RECOVERY_WAITS_S,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.host = host
        self._waits_s = waits_s
        self._sleep = sleep
        self._recovering = False
        self.last_attempt: RecoveryAttempt | None = None

    @property
    def recovering(self) -> bool:
        return self._recovering

    def _wait(self, index: int) -> float:
        return self._waits_s[index] if index < len(self._waits_s) else 0.0

    def strategies(self) -> list[Strategy]:
        return [
            Strategy("refresh", self._wait(0), self._refresh),
            Strategy("reconnect", self._wait(1), self._reconnect),
            Strategy("fresh-socket", self._wait(2), self._reconnect),
        ]

    async def _refresh(self) -> bool:
        return await self.host.refresh()

    async def _reconnect(self) -> bool:
        await self.host.reconnect()
        return True

    async def recover(self, symptom: Symptom | str | DecryptionError) -> bool:
        if isinstance(symptom, DecryptionError):
            symptom = _symptom_of(symptom)
        if not isinstance(symptom, Symptom):
            classified = classify_symptom(symptom)
            if classified is None:
                logger.debug(
                    "[%s] not a decryption symptom, skipping recovery: %s",
                    self.host.account_id,
                    symptom,
                )
                return False
            symptom = classified

        if self._recovering:
            logger.warning("[%s] recovery already in progress, skipping", self.host.account_id)
            return False

        self._recovering = True
        try:
            return await self._run(RecoveryAttempt(symptom=symptom))
        finally:
            self._recovering = False

    async def _run(self, attempt: RecoveryAttempt) -> bool:
        account_id = self.host.account_id
        self.last_attempt = attempt
        logger.warning("[%s] %s detected, attempting recovery", account_id, attempt.symptom.value)

        if attempt.symptom is Symptom.UNSUPPORTED_STATE:
            await self.host.purge_working_dir()
            logger.info("[%s] working directory cleared for unsupported state", account_id)

        strategies = self.strategies()
        while attempt.strategy_index < len(strategies):
            strategy = strategies[attempt.strategy_index]
            if attempt.strategy_index > 0:
                await self.host.drop_connection()
            if strategy.wait_s > 0:
                await self._sleep(strategy.wait_s)
            try:
                ok = await strategy.run()
            except Exception as e:
                ok = False
                attempt.errors.append(str(e) or type(e).__name__)
                logger.warning("[%s] recovery strategy %s failed: %s", account_id, strategy.name, e)
            else:
                if not ok:
                    attempt.errors.append(f"{strategy.name} unsuccessful")
            if ok:
                logger.info("[%s] recovery succeeded via %s", account_id, strategy.name)
                return True
            attempt.strategy_index += 1

        await self._give_up(attempt)
        return False

    async def _give_up(self, attempt: RecoveryAttempt) -> None:
        account_id = self.host.account_id
        if attempt.symptom in RESET_SYMPTOMS:
            label = "decrypt" if attempt.symptom is Symptom.DECODE_FAILURE else "unsupported state"
            logger.warning("[%s] %s error persists, resetting credentials", account_id, label)
            await self.host.reset_credentials()
            await self.host.mark_failed(
                STATUS_UNAUTHORIZED, f"Session corrupted ({label}), please re-authenticate"
            )
        else:
            logger.error("[%s] recovery failed: %s", account_id, attempt.last_error)
            await self.host.mark_failed(
                STATUS_BAD_SESSION, f"Recovery failed: {attempt.last_error}"
            )
        await self.host.disable()
