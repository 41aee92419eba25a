from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..constants import CREDS_FILE, STATUS_OK
from ..exceptions import CredentialError
from ..util import json as bufferjson
from .serde import split_key_filename, to_persisted, to_working
from .state import AuthDatabase, WorkingAuthState, is_registered
from .store import WorkingDirectory, key_filename
from .utils import init_auth_creds

logger = logging.getLogger(__name__)

RecordHook = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class CredentialBridge:
    """
    Moves one account's credentials between the database and the working directory.

    Restore direction: database record -> binary fields decoded -> fresh working
    directory -> `WorkingAuthState` for the transport.

    Persist direction (every `creds.update`): the transport's in-memory snapshot
    is written to the working directory first, then every changed file is pushed
    to the database. A session that started without persisted credentials is
    only pushed once its creds show a completed registration.
    """

    def __init__(
        self,
        account_id: str,
        db: AuthDatabase,
        work_dir: WorkingDirectory,
        *,
        creds_factory: Callable[[], dict[str, Any]] = init_auth_creds,
        on_registered: Callable[[], Awaitable[Any] | Any] | None = None,
        on_record: RecordHook | None = None,
    ) -> None:
        self.account_id = account_id
        self.db = db
        self.work_dir = work_dir
        self._creds_factory = creds_factory
        self._on_registered = on_registered
        self._on_record = on_record

        self.working: WorkingAuthState | None = None
        self._new_session = True
        self._saved_to_db = False
        # Last pushed serialization per working-dir file, to skip unchanged writes.
        self._pushed: dict[str, str] = {}
        self._persist_lock = asyncio.Lock()

    @property
    def is_new_session(self) -> bool:
        return self._new_session

    @property
    def registered(self) -> bool:
        return self.working is not None and is_registered(self.working.creds)

    async def restore(self, *, force_reset: bool = False) -> WorkingAuthState:
        """
        Rebuild the working directory and return the state the transport opens.

        `force_reset` ignores persisted credentials and starts a new pairing.
        """

        await self.work_dir.reset()
        record = await self.db.get_auth(self.account_id)
        persisted_creds = (record or {}).get("creds")

        self._new_session = force_reset or not persisted_creds
        self._saved_to_db = False
        self._pushed.clear()

        if persisted_creds and not force_reset:
            logger.info("[%s] restoring files from database", self.account_id)
            try:
                restored = await self._write_persisted(persisted_creds)
                logger.info("[%s] restored %d files", self.account_id, restored)
            except (CredentialError, TypeError, ValueError) as e:
                logger.warning(
                    "[%s] stored credentials unusable (%s), starting fresh session",
                    self.account_id,
                    e,
                )
                await self._write_fresh()
        else:
            logger.info("[%s] initializing new session", self.account_id)
            await self._write_fresh()

        try:
            creds = await self.work_dir.read_creds()
        except CredentialError as e:
            logger.warning("[%s] %s, starting fresh session", self.account_id, e)
            creds = await self._write_fresh()

        self.working = WorkingAuthState(creds=creds, keys=self.work_dir.keys)
        return self.working

    async def _write_persisted(self, persisted_creds: Any) -> int:
        creds = to_working(persisted_creds)
        if not isinstance(creds, dict):
            raise CredentialError("persisted creds are not an object")
        await self.work_dir.write_creds(creds)
        self._pushed[CREDS_FILE] = bufferjson.dumps(to_persisted(creds))

        key_records = await self.db.get_keys(self.account_id)
        for rec in key_records:
            data = to_working(rec.data)
            if data is None:
                continue
            name = key_filename(rec.key_type, rec.key_id)
            await self.work_dir.write_json(name, data)
            self._pushed[name] = bufferjson.dumps(to_persisted(data))
        return len(key_records) + 1

    async def _write_fresh(self) -> dict[str, Any]:
        await self.work_dir.reset()
        self._pushed.clear()
        creds = self._creds_factory()
        await self.work_dir.write_creds(creds)
        return creds

    async def persist(self, *, connected: bool = False) -> bool:
        """
        Handle one `creds.update`. Returns True when the database was written.

        Database failures are logged; the working directory always keeps the
        transport's latest snapshot.
        """

        working = self.working
        if working is None:
            return False

        async with self._persist_lock:
            await self.work_dir.write_creds(working.creds)

            if self._new_session and not self._saved_to_db:
                try:
                    creds = await self.work_dir.read_creds()
                except CredentialError as e:
                    logger.warning("[%s] %s, skipping registration check", self.account_id, e)
                    return False
                if not is_registered(creds):
                    logger.debug("[%s] registration not complete yet", self.account_id)
                    return False
                logger.info("[%s] registration complete, saving to database", self.account_id)
                self._saved_to_db = True
                if self._on_registered is not None:
                    res = self._on_registered()
                    if asyncio.iscoroutine(res):
                        await res

            return await self._push(connected=connected)

    async def _push(self, *, connected: bool) -> bool:
        wrote = False
        for name in await self.work_dir.list_files():
            try:
                data = await self.work_dir.read_json(name)
                persisted = to_persisted(data)
                serialized = bufferjson.dumps(persisted)
                if self._pushed.get(name) == serialized:
                    continue

                if name == CREDS_FILE:
                    partial: dict[str, Any] = {"creds": persisted}
                    if connected:
                        partial.update(status_code=STATUS_OK, error_message=None)
                    record = await self.db.update_auth(self.account_id, partial)
                    if self._on_record is not None and record:
                        res = self._on_record(record)
                        if asyncio.iscoroutine(res):
                            await res
                else:
                    key_type, key_id = split_key_filename(name)
                    await self.db.update_key(self.account_id, key_type, key_id, persisted)

                self._pushed[name] = serialized
                wrote = True
            except Exception:
                logger.exception("[%s] failed saving %s", self.account_id, name)
        return wrote

    async def purge(self) -> None:
        await self.work_dir.purge()

    async def reset_credentials(self) -> None:
        """Forget everything: persisted auth, key records and the working directory."""

        await self.db.delete_auth(self.account_id)
        await self.work_dir.purge()
        self._pushed.clear()
        self._saved_to_db = False
        self._new_session = True
        self.working = None
