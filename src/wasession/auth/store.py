from __future__ import annotations

import asyncio
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..constants import CREDS_FILE
from ..exceptions import CredentialError
from ..util import json as bufferjson

_FILE_LOCKS: dict[Path, asyncio.Lock] = {}


def fix_filename(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


def key_filename(key_type: str, key_id: str) -> str:
    return fix_filename(f"{key_type}-{key_id}.json")


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _FILE_LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _FILE_LOCKS[path] = lock
    return lock


async def _read_text(path: Path) -> str:
    return await asyncio.to_thread(path.read_text, "utf-8")


async def _write_text(path: Path, data: str) -> None:
    await asyncio.to_thread(path.write_text, data, "utf-8")


async def _unlink(path: Path) -> None:
    await asyncio.to_thread(path.unlink, missing_ok=True)


def _rmtree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


class MultiFileKeyStore:
    """Key records stored as `{type}-{id}.json` files in the working directory."""

    def __init__(self, folder: Path) -> None:
        self._folder = folder

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key_id in ids:
            fn = self._folder / key_filename(key_type, key_id)
            try:
                lock = _lock_for(fn)
                async with lock:
                    raw = await _read_text(fn)
                out[key_id] = bufferjson.loads_repair(raw)
            except FileNotFoundError:
                out[key_id] = None
            except ValueError:
                # An unreadable key is equivalent to a missing one for the transport.
                out[key_id] = None
        return out

    async def set(self, data: Mapping[str, Mapping[str, Any | None]]) -> None:
        tasks: list[asyncio.Task[None]] = []
        for category, items in data.items():
            for key_id, value in items.items():
                fn = self._folder / key_filename(category, key_id)
                if value is None:
                    tasks.append(asyncio.create_task(self._remove(fn)))
                else:
                    tasks.append(asyncio.create_task(self._write(fn, value)))
        if tasks:
            await asyncio.gather(*tasks)

    async def clear(self) -> None:
        for p in self._folder.glob("*.json"):
            if p.name == CREDS_FILE:
                continue
            await self._remove(p)

    async def _write(self, path: Path, obj: Any) -> None:
        lock = _lock_for(path)
        async with lock:
            await _write_text(path, bufferjson.dumps(obj))

    async def _remove(self, path: Path) -> None:
        lock = _lock_for(path)
        async with lock:
            await _unlink(path)


class WorkingDirectory:
    """
    Per-account scratch folder the transport reads credentials from.

    - `creds.json` stores the credential blob.
    - key material is stored as `{type}-{id}.json` files.

    The folder is disposable: it is rebuilt from the database on every restore.
    """

    def __init__(self, folder: str | Path) -> None:
        self.folder = Path(folder).expanduser()
        self.keys = MultiFileKeyStore(self.folder)

    @property
    def creds_path(self) -> Path:
        return self.folder / CREDS_FILE

    async def reset(self) -> None:
        """Delete the folder and recreate it empty."""

        await self.purge()
        await asyncio.to_thread(self.folder.mkdir, parents=True, exist_ok=True)

    async def purge(self) -> None:
        await asyncio.to_thread(_rmtree, self.folder)

    def exists(self) -> bool:
        return self.folder.is_dir()

    async def list_files(self) -> list[str]:
        if not self.exists():
            return []
        paths = await asyncio.to_thread(lambda: sorted(self.folder.glob("*.json")))
        return [p.name for p in paths]

    async def write_json(self, name: str, obj: Any) -> None:
        path = self.folder / name
        lock = _lock_for(path)
        async with lock:
            await _write_text(path, bufferjson.dumps(obj, indent=2))

    async def read_json(self, name: str) -> Any:
        """
        Read one file, repairing truncated or junk-suffixed content.

        Raises `CredentialError` when the file is missing or beyond repair.
        """

        path = self.folder / name
        lock = _lock_for(path)
        try:
            async with lock:
                raw = await _read_text(path)
        except FileNotFoundError as e:
            raise CredentialError(f"{name} is missing") from e
        try:
            return bufferjson.loads_repair(raw)
        except ValueError as e:
            raise CredentialError(f"invalid JSON in {name}: {e}") from e

    async def write_creds(self, creds: dict[str, Any]) -> None:
        await self.write_json(CREDS_FILE, creds)

    async def read_creds(self) -> dict[str, Any]:
        d = await self.read_json(CREDS_FILE)
        if not isinstance(d, dict):
            raise CredentialError(f"{CREDS_FILE} did not contain an object")
        return d
