from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

from . import constants as c
from .config import SessionConfig
from .recovery import classify_symptom


class DisconnectKind(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTH_FAILED = "auth_failed"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    SESSION_CONFLICT = "session_conflict"
    DECRYPTION = "decryption"
    RESTART_REQUIRED = "restart_required"
    NETWORK = "network"


TERMINAL_KINDS = frozenset(
    {DisconnectKind.LOGGED_OUT, DisconnectKind.AUTH_FAILED, DisconnectKind.FORBIDDEN}
)
BACKOFF_KINDS = frozenset({DisconnectKind.SESSION_CONFLICT, DisconnectKind.RATE_LIMITED})


def format_reason(status_code: int | None, reason: str | None) -> str:
    text = reason or "Unknown"
    return f"{status_code}: {text}" if status_code else text


def classify_disconnect(status_code: int | None, reason: str | None) -> DisconnectKind:
    text = (reason or "").lower()

    if "logged out" in text or "device_removed" in text or "revoked" in text:
        return DisconnectKind.LOGGED_OUT
    if status_code == c.STATUS_UNAUTHORIZED or "401" in text or "unauthorized" in text:
        return DisconnectKind.AUTH_FAILED
    if status_code == c.STATUS_FORBIDDEN or "403" in text or "forbidden" in text:
        return DisconnectKind.FORBIDDEN
    if classify_symptom(reason) is not None:
        return DisconnectKind.DECRYPTION
    if status_code == c.STATUS_CONNECTION_REPLACED or "conflict" in text or "replaced" in text:
        return DisconnectKind.SESSION_CONFLICT
    if status_code == c.STATUS_RATE_LIMITED or "too many requests" in text:
        return DisconnectKind.RATE_LIMITED
    if status_code == c.STATUS_RESTART_REQUIRED or "restart required" in text:
        return DisconnectKind.RESTART_REQUIRED
    return DisconnectKind.NETWORK


@dataclass(frozen=True, slots=True)
class Verdict:
    retry: bool
    delay_s: float = 0.0
    reason: str = ""


class ReconnectPolicy:
    """
    Decides whether, and after how long, to retry one disconnect episode.

    `attempt` counts reconnection attempts in the current episode starting at 1.
    """

    def __init__(self, config: SessionConfig | None = None, *, rng: random.Random | None = None):
        self.config = config or SessionConfig()
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        cfg = self.config
        base = min(cfg.conflict_base_delay_s * (2 ** max(0, attempt - 1)), cfg.conflict_max_delay_s)
        jitter = self._rng.uniform(0, cfg.conflict_jitter_s) if cfg.conflict_jitter_s > 0 else 0.0
        stagger = (
            self._rng.uniform(0, cfg.reconnect_stagger_s) if cfg.reconnect_stagger_s > 0 else 0.0
        )
        return base + jitter + stagger

    def decide(
        self,
        kind: DisconnectKind,
        attempt: int,
        *,
        is_active: bool = True,
        manual: bool = False,
    ) -> Verdict:
        if manual:
            return Verdict(False, reason="manual disconnect")
        if not is_active:
            return Verdict(False, reason="account inactive")
        if kind in TERMINAL_KINDS:
            return Verdict(False, reason=kind.value)
        if attempt > self.config.max_reconnect_attempts:
            return Verdict(False, reason="max reconnection attempts reached")
        if kind in BACKOFF_KINDS:
            return Verdict(True, self.backoff_delay(attempt))
        if kind is DisconnectKind.RESTART_REQUIRED:
            return Verdict(True, 0.0)
        return Verdict(True, self.config.reconnect_delay_s)
