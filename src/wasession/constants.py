from __future__ import annotations

DEFAULT_WORK_DIR = ".wa-auth-temp"
CREDS_FILE = "creds.json"

S_WHATSAPP_NET = "@s.whatsapp.net"
BROADCAST_SUFFIX = "@broadcast"

# Environment variable naming a shared outbound proxy, e.g. `socks5://user:pw@host:1080`.
PROXY_ENV_VAR = "WA_PROXY_URL"

# Disconnect / status codes as reported by the transport (Baileys DisconnectReason).
STATUS_OK = 200
STATUS_TIMED_OUT = 408
STATUS_CONNECTION_CLOSED = 428
STATUS_CONNECTION_REPLACED = 440
STATUS_BAD_SESSION = 500
STATUS_RESTART_REQUIRED = 515
STATUS_UNAUTHORIZED = 401
STATUS_FORBIDDEN = 403
STATUS_RATE_LIMITED = 429

# Connection pacing.
CONNECT_TIMEOUT_S = 15.0
CONNECT_MIN_INTERVAL_S = 5.0
KEEP_ALIVE_INTERVAL_S = (180.0, 300.0)
HEALTH_CHECK_INTERVAL_S = (480.0, 720.0)

# Reconnection policy.
MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY_S = 15.0
CONFLICT_BASE_DELAY_S = 30.0
CONFLICT_MAX_DELAY_S = 300.0
CONFLICT_JITTER_S = 10.0
RECONNECT_STAGGER_S = 5.0

# Decryption recovery: wait before each strategy (refresh, reconnect, fresh socket).
RECOVERY_WAITS_S = (0.0, 2.0, 3.0)
REFRESH_SETTLE_S = 1.0

# Delivery tracking.
DELIVERY_TIMEOUT_S = 30.0
DELIVERY_POLL_INTERVAL_S = 1.0
DELIVERY_CACHE_SIZE = 10_000
DELIVERY_TTL_S = 3600.0
DELIVERY_TIMEOUT_CODE = 408

# Outbound sends.
SEND_MAX_RETRIES = 3
SEND_RETRY_DELAY_S = 1.0
SEND_MAX_BACKOFF_S = 5.0

# Multi-account restore stagger.
SERVICE_RESTORE_STAGGER_S = 2.0
