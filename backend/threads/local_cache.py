"""
Local thread cache: one JSON array of thread objects on disk.

The file is read fully and rewritten fully on every mutation. Writers in the
same process serialize through an asyncio lock; other processes are kept out
by an advisory file lock next to the cache file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List

from filelock import FileLock, Timeout

from .legacy import normalize
from .models import Thread

logger = logging.getLogger(__name__)

ThreadMutator = Callable[[List[Thread]], List[Thread]]


class LocalThreadCache:
    def __init__(self, path: Path, lock_timeout_seconds: float = 5.0) -> None:
        self.path = Path(path)
        self.lock_file_path = self.path.with_suffix(self.path.suffix + ".lock")
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)
        self._gate = asyncio.Lock()

    def _file_lock(self) -> FileLock:
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)

    def _read_unlocked(self) -> List[Thread]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("thread cache %s unreadable, treating as empty", self.path, exc_info=exc)
            return []
        if not isinstance(raw, list):
            logger.warning("thread cache %s is not a list, treating as empty", self.path)
            return []
        return normalize(raw)

    def _write_unlocked(self, threads: List[Thread]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            [thread.to_dict(include_embedding=True) for thread in threads],
            ensure_ascii=False,
            indent=2,
        )
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _load_sync(self) -> List[Thread]:
        try:
            with self._file_lock():
                return self._read_unlocked()
        except Timeout:
            logger.warning("timed out waiting for thread cache lock %s", self.lock_file_path)
            return []
        except OSError as exc:
            logger.warning("thread cache %s unavailable", self.path, exc_info=exc)
            return []

    def _update_sync(self, mutator: ThreadMutator) -> List[Thread]:
        try:
            with self._file_lock():
                updated = mutator(self._read_unlocked())
                self._write_unlocked(updated)
                return updated
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for thread cache lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc

    async def load(self) -> List[Thread]:
        """All cached threads; [] when the file is missing or corrupt."""
        return await asyncio.to_thread(self._load_sync)

    async def update(self, mutator: ThreadMutator) -> List[Thread]:
        """Read-modify-write the whole cache. Raises on write failure."""
        async with self._gate:
            return await asyncio.to_thread(self._update_sync, mutator)

    async def upsert_many(self, threads: List[Thread]) -> List[Thread]:
        """Insert or replace by id. A cached resolved/archived record stays terminal."""
        incoming = {thread.id: thread for thread in threads}

        def _apply(current: List[Thread]) -> List[Thread]:
            seen = set()
            result: List[Thread] = []
            for item in current:
                if item.id in incoming:
                    result.append(_ratchet(item, incoming[item.id]))
                    seen.add(item.id)
                else:
                    result.append(item)
            result.extend(t for t_id, t in incoming.items() if t_id not in seen)
            return result

        return await self.update(_apply)


def _ratchet(existing: Thread, incoming: Thread) -> Thread:
    if not existing.is_terminal:
        return incoming
    if incoming.status == existing.status:
        return incoming
    # Persisted status never moves backward; only bookkeeping is refreshed.
    changes: Dict[str, Any] = {}
    if incoming.touch_count > existing.touch_count:
        changes["touch_count"] = incoming.touch_count
    if incoming.touched_at > existing.touched_at:
        changes["last_touched_at"] = incoming.touched_at
    return existing.with_changes(**changes) if changes else existing
