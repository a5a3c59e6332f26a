"""Per-account message body blobs on the local file system.

Blobs are JSON documents stored at ``<mail_dir>/<sha256(account)>/<sha256(key)>.json``.
All file-system calls are wrapped with ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


def digest(value: str) -> str:
    """Stable hex name for an account or message key."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class BodyStore:
    """Save, load and prune body blobs for one account."""

    def __init__(self, mail_dir: Path, account: str) -> None:
        self._account = account
        self._dir = mail_dir / digest(account)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        return self._dir / f"{digest(key)}.json"

    async def save(self, key: str, blob: dict[str, Any]) -> Path:
        path = self.path_for(key)
        await asyncio.to_thread(self._write_sync, path, blob)
        logger.debug("body_stored", account=self._account, key=key, path=str(path))
        return path

    def _write_sync(self, path: Path, blob: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(blob), encoding="utf-8")
        os.replace(tmp, path)

    async def load(self, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read_sync, self.path_for(key))

    def _read_sync(self, path: Path) -> dict[str, Any] | None:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    async def delete(self, keys: Iterable[str]) -> int:
        paths = [self.path_for(key) for key in keys]
        return await asyncio.to_thread(self._unlink_sync, paths)

    async def prune(self, keep_keys: Iterable[str]) -> int:
        """Delete every blob whose message key is not in *keep_keys*."""
        keep = {f"{digest(key)}.json" for key in keep_keys}
        removed = await asyncio.to_thread(self._prune_sync, keep)
        if removed:
            logger.info("bodies_pruned", account=self._account, removed=removed)
        return removed

    def _prune_sync(self, keep: set[str]) -> int:
        if not self._dir.is_dir():
            return 0
        stale = [p for p in self._dir.glob("*.json") if p.name not in keep]
        return self._unlink_sync(stale)

    @staticmethod
    def _unlink_sync(paths: Iterable[Path]) -> int:
        removed = 0
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        return removed
