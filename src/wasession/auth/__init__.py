from __future__ import annotations

from .account import AccountState, account_from_dict
from .bridge import CredentialBridge
from .state import AuthDatabase, AuthState, KeyRecord, SignalKeyStore, WorkingAuthState
from .store import MultiFileKeyStore, WorkingDirectory
from .utils import init_auth_creds

__all__ = [
    "AccountState",
    "AuthDatabase",
    "AuthState",
    "CredentialBridge",
    "KeyRecord",
    "MultiFileKeyStore",
    "SignalKeyStore",
    "WorkingAuthState",
    "WorkingDirectory",
    "account_from_dict",
    "init_auth_creds",
]
