from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, fields
from typing import Any


@dataclass(slots=True)
class AccountState:
    """
    The database record for one account, minus its key records.

    `creds` holds the persisted form of the credential blob (see `auth.serde`).
    """

    phone_number: str
    creds: dict[str, Any] | None = None
    is_active: bool = True
    status_code: int | None = None
    error_message: str | None = None
    last_error_at: dt.datetime | None = None

    blocked_count: int = 0
    outgoing_message_count: int = 0  # lifetime total
    incoming_message_count: int = 0  # lifetime total
    daily_message_count: int = 0
    last_sent_message: str | None = None  # YYYY-MM-DD

    has_privacy_updated: bool = False
    profile_picture_url: str | None = None
    name: str | None = None
    proxy: dict[str, Any] | None = None


_FIELDS = frozenset(f.name for f in fields(AccountState))


def account_from_dict(d: dict[str, Any]) -> AccountState:
    known = {k: v for k, v in d.items() if k in _FIELDS}
    return AccountState(**known)


def account_fields() -> frozenset[str]:
    return _FIELDS


def diff_account(state: AccountState, changes: dict[str, Any]) -> dict[str, Any]:
    """Subset of `changes` whose values differ from `state`; unknown keys are rejected."""

    unknown = set(changes) - _FIELDS
    if unknown:
        raise KeyError(f"unknown account fields: {sorted(unknown)}")
    return {k: v for k, v in changes.items() if getattr(state, k) != v}
