from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from .auth.state import AuthState, KeyRecord


class InMemoryAuthDatabase:
    """
    Minimal in-memory database collaborator for tests and demo apps.

    Records are deep-copied in and out so callers never share mutable state
    with the "database". Not meant to be a real persistence layer.
    """

    def __init__(self) -> None:
        self._auth: dict[str, dict[str, Any]] = {}
        self._keys: dict[str, dict[tuple[str, str], Any]] = {}
        self.writes = 0

    async def get_auth(self, account_id: str) -> dict[str, Any] | None:
        record = self._auth.get(account_id)
        return copy.deepcopy(record) if record is not None else None

    async def update_auth(self, account_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        record = self._auth.setdefault(account_id, {"phone_number": account_id})
        # Merge; None is a real value here (e.g. clearing error_message).
        for k, v in partial.items():
            record[k] = copy.deepcopy(v)
        self.writes += 1
        return copy.deepcopy(record)

    async def delete_auth(self, account_id: str) -> None:
        self._auth.pop(account_id, None)
        self._keys.pop(account_id, None)

    async def get_keys(self, account_id: str) -> list[KeyRecord]:
        return [
            KeyRecord(key_type=t, key_id=i, data=copy.deepcopy(d))
            for (t, i), d in self._keys.get(account_id, {}).items()
        ]

    async def update_key(self, account_id: str, key_type: str, key_id: str, data: Any) -> None:
        keys = self._keys.setdefault(account_id, {})
        if data is None:
            keys.pop((key_type, key_id), None)
        else:
            keys[(key_type, key_id)] = copy.deepcopy(data)
        self.writes += 1

    async def list_auth(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._auth.values()]

    def snapshot(self, account_id: str) -> AuthState:
        record = self._auth.get(account_id) or {}
        return AuthState(
            creds=copy.deepcopy(record.get("creds")),
            keys=[
                KeyRecord(key_type=t, key_id=i, data=copy.deepcopy(d))
                for (t, i), d in self._keys.get(account_id, {}).items()
            ],
        )
