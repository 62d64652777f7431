"""
Runtime state helpers for the thread engine.

This module provides:
1) Write-lane coordination (session lane + global lane).
2) Remote sync tracking: background writes to the remote store, with their
   outcomes kept in a bounded in-process window.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_session_id(session_id: Optional[str]) -> str:
    value = (session_id or "").strip()
    return value if value else "default"


class WriteLaneCoordinator:
    """
    Two-layer write coordination:
    - Session lane: serial writes within the same session.
    - Global lane: bounded write concurrency across all sessions.

    Thread mutations are read-modify-write over the whole open set, so the
    global lane defaults to one writer.
    """

    def __init__(self, global_concurrency: Optional[int] = None) -> None:
        self._global_concurrency = global_concurrency or _env_int(
            "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 1, minimum=1
        )
        self._wait_warn_ms = _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._session_waiting: Dict[str, int] = {}
        self._global_waiting = 0
        self._global_active = 0
        self._guard = asyncio.Lock()

    async def _get_session_lock(self, session_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._session_locks[session_id] = lock
            return lock

    async def run_write(
        self,
        *,
        session_id: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        lane = _normalize_session_id(session_id)
        session_lock = await self._get_session_lock(lane)

        wait_start = time.monotonic()
        async with self._guard:
            self._session_waiting[lane] = self._session_waiting.get(lane, 0) + 1

        async with session_lock:
            async with self._guard:
                self._session_waiting[lane] = max(
                    0, self._session_waiting.get(lane, 1) - 1
                )
                self._global_waiting += 1

            await self._global_sem.acquire()
            waited_ms = int((time.monotonic() - wait_start) * 1000)
            async with self._guard:
                self._global_waiting = max(0, self._global_waiting - 1)
                self._global_active += 1

            if waited_ms >= self._wait_warn_ms:
                logger.warning(
                    "write lane %s waited %dms for %s", lane, waited_ms, operation
                )
            try:
                return await task()
            finally:
                async with self._guard:
                    self._global_active = max(0, self._global_active - 1)
                self._global_sem.release()

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy_sessions = {
                session: waiting
                for session, waiting in self._session_waiting.items()
                if waiting > 0
            }
            return {
                "global_concurrency": self._global_concurrency,
                "global_active": self._global_active,
                "global_waiting": self._global_waiting,
                "session_waiting_count": sum(busy_sessions.values()),
                "session_waiting_sessions": len(busy_sessions),
                "wait_warn_ms": self._wait_warn_ms,
            }


@dataclass
class RemoteSyncEvent:
    timestamp: str
    operation: str
    thread_ids: List[str] = field(default_factory=list)
    ok: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "operation": self.operation,
            "thread_ids": list(self.thread_ids),
            "ok": self.ok,
            "error": self.error,
        }


class RemoteSyncTracker:
    """
    Runs remote writes off the request path and remembers how they went.

    A scheduled write is a coroutine returning True on success. Failures are
    recorded, never raised to the caller that scheduled them.
    """

    def __init__(self, max_events: Optional[int] = None) -> None:
        self._max_events = max_events or _env_int(
            "RUNTIME_REMOTE_SYNC_EVENT_LIMIT", 200, minimum=10
        )
        self._events: Deque[RemoteSyncEvent] = deque(maxlen=self._max_events)
        self._pending: Set[asyncio.Task] = set()
        self._guard = asyncio.Lock()

    async def _record(self, event: RemoteSyncEvent) -> None:
        async with self._guard:
            self._events.append(event)

    async def _run(
        self,
        operation: str,
        thread_ids: List[str],
        write: Callable[[], Awaitable[bool]],
    ) -> bool:
        ok = False
        error: Optional[str] = None
        try:
            ok = bool(await write())
            if not ok:
                error = "remote_write_failed"
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except Exception as exc:
            logger.warning("remote %s failed for %s", operation, thread_ids, exc_info=exc)
            error = f"{type(exc).__name__}: {exc}"
        finally:
            await self._record(
                RemoteSyncEvent(
                    timestamp=_utc_iso_now(),
                    operation=operation,
                    thread_ids=thread_ids,
                    ok=ok,
                    error=error,
                )
            )
        if not ok:
            logger.warning("remote %s did not complete for %s", operation, thread_ids)
        return ok

    def schedule(
        self,
        *,
        operation: str,
        thread_ids: Sequence[str],
        write: Callable[[], Awaitable[bool]],
    ) -> "asyncio.Task[bool]":
        task = asyncio.create_task(self._run(operation, list(thread_ids), write))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight remote writes."""
        pending = list(self._pending)
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)

    async def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with self._guard:
            snapshot = list(self._events)
        return [event.to_dict() for event in snapshot[-max(1, limit):]][::-1]

    async def summary(self) -> Dict[str, Any]:
        async with self._guard:
            snapshot = list(self._events)
        failed = [item for item in snapshot if not item.ok]
        return {
            "window_size": self._max_events,
            "pending": len(self._pending),
            "total_events": len(snapshot),
            "failed_events": len(failed),
            "operation_breakdown": dict(Counter(item.operation for item in snapshot)),
            "last_event_at": snapshot[-1].timestamp if snapshot else None,
            "last_failure": failed[-1].to_dict() if failed else None,
        }


class RuntimeState:
    def __init__(self) -> None:
        self.write_lanes = WriteLaneCoordinator()
        self.remote_sync = RemoteSyncTracker()

    async def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        await self.remote_sync.drain(timeout=timeout)


runtime_state = RuntimeState()
