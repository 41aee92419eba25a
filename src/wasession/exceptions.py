from __future__ import annotations


class WASessionError(Exception):
    """Base error for the wasession library."""


class TransportError(WASessionError):
    """Transport-level failure reported by the protocol collaborator."""

    status_code: int | None = None

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NetworkError(TransportError):
    """Generic, recoverable transport failure."""


class SessionConflictError(TransportError):
    """Another session for the same account was opened concurrently."""

    status_code = 440


class AuthError(WASessionError):
    """Authentication failure (401-equivalent)."""

    status_code = 401


class ForbiddenError(WASessionError):
    """Access denied (403-equivalent)."""

    status_code = 403


class RateLimitedError(WASessionError):
    """Too many requests (429-equivalent)."""

    status_code = 429


class LoggedOutError(AuthError):
    """The linked device was explicitly revoked."""


class DecryptionError(WASessionError):
    """
    Corrupted-session symptom reported by the transport.

    `symptom` is one of the `recovery.Symptom` values.
    """

    def __init__(self, message: str, *, symptom: str | None = None) -> None:
        super().__init__(message)
        self.symptom = symptom


class CredentialError(WASessionError):
    """Working-directory or credential blob failure that could not be repaired."""


class NotConnectedError(WASessionError):
    """Operation requires an open transport handle."""

    def __init__(self, message: str = "Instance is not connected") -> None:
        super().__init__(message)


class InactiveAccountError(WASessionError):
    """Operation refused because the account is disabled."""

    def __init__(self, message: str = "Instance is not active") -> None:
        super().__init__(message)


class AlreadyConnectedError(WASessionError):
    """Registration or restore requested while a connection is already open."""


class EmptyMessageError(WASessionError, ValueError):
    """Outbound payload carries no content."""

    def __init__(self, message: str = "Empty message") -> None:
        super().__init__(message)


class DeliveryError(WASessionError):
    """A tracked message ended in the ERROR state."""

    def __init__(self, message: str, *, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class DeliveryTimeoutError(DeliveryError):
    """A tracked message did not reach the awaited status in time."""


class MessageBlockedError(WASessionError):
    """
    The send was refused in a way that retrying cannot fix.

    `reason` is one of `USER_BLOCKED`, `AUTH_FAILED` or `RATE_LIMITED`.
    """

    reason: str = "BLOCKED"

    def __init__(self, message: str, *, to: str | None = None) -> None:
        super().__init__(message)
        self.to = to


class RecipientBlockedError(MessageBlockedError):
    reason = "USER_BLOCKED"


class AccountBlockedError(MessageBlockedError):
    reason = "AUTH_FAILED"


class ThrottledError(MessageBlockedError):
    reason = "RATE_LIMITED"


def status_code_of(exc: BaseException | None) -> int | None:
    """Best-effort status code lookup on an exception raised by a collaborator."""

    if exc is None:
        return None
    code = getattr(exc, "status_code", None)
    if code is None:
        output = getattr(exc, "output", None)
        code = getattr(output, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def error_from_status(code: int | None, message: str = "") -> WASessionError:
    """Map a transport status code onto the error taxonomy."""

    if code == 401:
        lowered = message.lower()
        if "logged out" in lowered or "device_removed" in lowered or "revoked" in lowered:
            return LoggedOutError(message or "logged out")
        return AuthError(message or "unauthorized")
    if code == 403:
        return ForbiddenError(message or "forbidden")
    if code == 429:
        return RateLimitedError(message or "rate limited")
    if code == 440:
        return SessionConflictError(message or "session conflict", status_code=code)
    return NetworkError(message or "connection closed", status_code=code)
