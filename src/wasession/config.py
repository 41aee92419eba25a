from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal
from urllib.parse import unquote, urlsplit

from . import constants as c

ProxyScheme = Literal["http", "https", "socks5"]


@dataclass(frozen=True, slots=True)
class ProxyConfig:
    host: str
    port: int
    scheme: ProxyScheme = "http"
    username: str | None = None
    password: str | None = None

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = self.username
            if self.password:
                auth += f":{self.password}"
            auth += "@"
        return f"{self.scheme}://{auth}{self.host}:{self.port}"

    @classmethod
    def from_url(cls, url: str) -> ProxyConfig:
        parts = urlsplit(url)
        scheme = (parts.scheme or "http").lower()
        if scheme not in ("http", "https", "socks5"):
            raise ValueError(f"unsupported proxy scheme: {scheme!r}")
        if not parts.hostname:
            raise ValueError(f"proxy url has no host: {url!r}")
        port = parts.port or (1080 if scheme == "socks5" else 8080)
        return cls(
            host=parts.hostname,
            port=port,
            scheme=scheme,  # type: ignore[arg-type]
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> ProxyConfig:
        # Persisted records may carry the upper-case `type` field (HTTP | SOCKS5).
        scheme = str(d.get("scheme") or d.get("type") or "http").lower()
        return cls(
            host=str(d["host"]),
            port=int(d["port"]),
            scheme=scheme,  # type: ignore[arg-type]
            username=d.get("username"),
            password=d.get("password"),
        )

    @classmethod
    def resolve(
        cls,
        account_proxy: ProxyConfig | Mapping[str, Any] | None,
        environ: Mapping[str, str] | None = None,
    ) -> ProxyConfig | None:
        """
        Pick the proxy for one account.

        The account's own settings win; otherwise `WA_PROXY_URL` provides a shared
        outbound proxy for every account.
        """

        if isinstance(account_proxy, ProxyConfig):
            return account_proxy
        if account_proxy:
            return cls.from_dict(account_proxy)
        env = os.environ if environ is None else environ
        url = env.get(c.PROXY_ENV_VAR)
        if url:
            return cls.from_url(url)
        return None


@dataclass(slots=True)
class SessionConfig:
    work_dir: str | Path = c.DEFAULT_WORK_DIR

    connect_timeout_s: float = c.CONNECT_TIMEOUT_S
    connect_min_interval_s: float = c.CONNECT_MIN_INTERVAL_S
    keep_alive_interval_s: tuple[float, float] = c.KEEP_ALIVE_INTERVAL_S
    health_check_interval_s: tuple[float, float] = c.HEALTH_CHECK_INTERVAL_S

    max_reconnect_attempts: int = c.MAX_RECONNECT_ATTEMPTS
    reconnect_delay_s: float = c.RECONNECT_DELAY_S
    conflict_base_delay_s: float = c.CONFLICT_BASE_DELAY_S
    conflict_max_delay_s: float = c.CONFLICT_MAX_DELAY_S
    conflict_jitter_s: float = c.CONFLICT_JITTER_S
    reconnect_stagger_s: float = c.RECONNECT_STAGGER_S

    recovery_waits_s: tuple[float, ...] = c.RECOVERY_WAITS_S
    refresh_settle_s: float = c.REFRESH_SETTLE_S

    delivery_timeout_s: float = c.DELIVERY_TIMEOUT_S
    delivery_poll_interval_s: float = c.DELIVERY_POLL_INTERVAL_S
    delivery_cache_size: int = c.DELIVERY_CACHE_SIZE
    delivery_ttl_s: float = c.DELIVERY_TTL_S

    send_max_retries: int = c.SEND_MAX_RETRIES
    send_retry_delay_s: float = c.SEND_RETRY_DELAY_S
    send_max_backoff_s: float = c.SEND_MAX_BACKOFF_S
    human_pacing: bool = True

    proxy: ProxyConfig | None = None

    def account_dir(self, account_id: str) -> Path:
        return Path(self.work_dir).expanduser() / account_id
