from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


class SignalKeyStore(Protocol):
    """Key store surface the transport reads and writes while a session is open."""

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]: ...

    async def set(self, data: Mapping[str, Mapping[str, Any | None]]) -> None: ...

    async def clear(self) -> None: ...


@dataclass(slots=True)
class KeyRecord:
    key_type: str
    key_id: str
    data: Any


@dataclass(slots=True)
class AuthState:
    """Credential blob plus named key records, in the persisted (database) form."""

    creds: dict[str, Any] | None
    keys: list[KeyRecord] = field(default_factory=list)


@dataclass(slots=True)
class WorkingAuthState:
    """
    What the transport opens: in-memory creds and a key store backed by the
    per-account working directory.

    The transport mutates `creds` in place and then emits `creds.update`.
    """

    creds: dict[str, Any]
    keys: SignalKeyStore


def is_registered(creds: Mapping[str, Any] | None) -> bool:
    """A credential blob belongs to a paired device once it has `registered` or `me`."""

    if not creds:
        return False
    return bool(creds.get("registered")) or bool(creds.get("me"))


class AuthDatabase(Protocol):
    """
    Database collaborator.

    Account records are plain mappings (the `AccountState` fields, snake_case);
    `creds` and key `data` hold the persisted form produced by `auth.serde`.
    """

    async def get_auth(self, account_id: str) -> dict[str, Any] | None: ...

    async def update_auth(self, account_id: str, partial: Mapping[str, Any]) -> dict[str, Any]: ...

    async def delete_auth(self, account_id: str) -> None: ...

    async def get_keys(self, account_id: str) -> list[KeyRecord]: ...

    async def update_key(self, account_id: str, key_type: str, key_id: str, data: Any) -> None: ...

    async def list_auth(self) -> list[dict[str, Any]]: ...
