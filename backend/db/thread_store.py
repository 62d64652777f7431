"""
Remote thread store (SQLAlchemy, async).

This is the authoritative copy of thread state when reachable. Every public
call is bounded by a short timeout; database, driver and timeout failures are
logged and reported as None/False so callers can fall back to the session
aggregation path or the local cache.

Tables:
- threads: one row per (project, thread_id)
- sessions: closed agent sessions with their embedded thread lists
"""

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from threads.config import ThreadSettings
from threads.legacy import SessionSnapshot
from threads.models import (
    STATUS_OPEN,
    TERMINAL_STATUSES,
    Thread,
    format_timestamp,
)
from threads.vitality import thread_vitality

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")

_STALE_ID_PREFIX = re.compile(r"^t-[a-f0-9]+:\s*", re.IGNORECASE)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class ThreadRow(Base):
    """A thread as persisted remotely.

    `status` holds the persisted status only (open/resolved/archived).
    `vitality_score` is a denormalized snapshot used for ordering listings;
    lifecycle labels are recomputed on read.
    """

    __tablename__ = "threads"
    __table_args__ = (UniqueConstraint("project", "thread_id", name="uq_threads_project_thread"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(String(32), nullable=False, index=True)
    project = Column(String(128), nullable=False, default="default", index=True)
    text = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_OPEN, index=True)
    thread_class = Column(String(32), nullable=False, default="backlog")
    vitality_score = Column(Float, nullable=False, default=1.0)
    touch_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)
    last_touched_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_note = Column(Text, nullable=True)
    source_session = Column(String(128), nullable=True)
    resolved_by_session = Column(String(128), nullable=True)
    linear_issue = Column(String(64), nullable=True)
    embedding = Column(Text, nullable=True)  # JSON array
    # Free-form bag; holds dormant_since.
    metadata_json = Column("metadata", Text, nullable=False, default="{}")


class SessionRow(Base):
    """A closed (or abandoned) agent session with its embedded thread list."""

    __tablename__ = "sessions"

    id = Column(String(128), primary_key=True)
    project = Column(String(128), nullable=False, default="default", index=True)
    session_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    created_at = Column(DateTime, default=_utc_now_naive, index=True)
    open_threads = Column(Text, nullable=True)  # JSON array, mixed legacy shapes
    close_compliance = Column(Text, nullable=True)  # JSON object; NULL = never closed


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def row_to_thread(row: ThreadRow) -> Thread:
    metadata = _load_json(row.metadata_json, {})
    if not isinstance(metadata, dict):
        metadata = {}
    return Thread.from_dict(
        {
            "id": row.thread_id,
            "text": _STALE_ID_PREFIX.sub("", row.text or ""),
            "status": row.status,
            "created_at": row.created_at,
            "last_touched_at": row.last_touched_at,
            "touch_count": row.touch_count,
            "thread_class": row.thread_class,
            "resolved_at": row.resolved_at,
            "resolution_note": row.resolution_note,
            "resolved_by_session": row.resolved_by_session,
            "source_session": row.source_session,
            "linear_issue": row.linear_issue,
            "dormant_since": metadata.get("dormant_since"),
            "embedding": row.embedding,
        }
    )


def _apply_thread_to_row(row: ThreadRow, thread: Thread) -> None:
    if row.status in TERMINAL_STATUSES and thread.status not in TERMINAL_STATUSES:
        # Persisted status never moves backward; only bookkeeping is refreshed.
        row.touch_count = max(int(row.touch_count or 0), thread.touch_count)
        return
    if row.status in TERMINAL_STATUSES and thread.status != row.status:
        return

    metadata = _load_json(row.metadata_json, {})
    if not isinstance(metadata, dict):
        metadata = {}
    if thread.dormant_since is not None:
        metadata["dormant_since"] = format_timestamp(thread.dormant_since)
    else:
        metadata.pop("dormant_since", None)

    row.text = thread.text
    row.status = thread.status
    row.thread_class = thread.thread_class
    row.vitality_score = thread_vitality(thread).score
    row.touch_count = thread.touch_count
    row.created_at = _to_naive(thread.created_at)
    row.last_touched_at = _to_naive(thread.last_touched_at)
    row.resolved_at = _to_naive(thread.resolved_at)
    row.resolution_note = thread.resolution_note
    row.source_session = thread.source_session
    row.resolved_by_session = thread.resolved_by_session
    row.linear_issue = thread.linear_issue
    if thread.embedding is not None:
        row.embedding = json.dumps(list(thread.embedding), separators=(",", ":"))
    row.metadata_json = json.dumps(metadata, separators=(",", ":"))


class ThreadStoreClient:
    """
    Async client for the remote thread store.

    Core operations:
    - list_threads: threads of a project, optionally filtered by status
    - upsert_threads: insert or update by (project, thread_id)
    - list_recent_sessions: newest sessions with embedded thread lists
    - record_session: store a session record
    """

    def __init__(self, database_url: str, timeout_sec: float = 5.0):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "postgresql+asyncpg://user@host/db" or
                          "sqlite+aiosqlite:///threads.db"
            timeout_sec: upper bound for any single store call
        """
        self.database_url = database_url
        self.timeout_sec = max(0.1, float(timeout_sec))
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _bounded(
        self, operation: str, task: Callable[[], Awaitable[T]], fallback: T
    ) -> T:
        try:
            return await asyncio.wait_for(task(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("thread store %s timed out after %.1fs", operation, self.timeout_sec)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("thread store %s failed: %s", operation, exc)
        return fallback

    async def list_threads(
        self,
        project: str,
        statuses: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> Optional[List[Thread]]:
        """Threads of a project, most vital first. Unbounded unless `limit` is given."""

        async def _query() -> Optional[List[Thread]]:
            async with self.session() as session:
                stmt = select(ThreadRow).where(ThreadRow.project == project)
                if statuses:
                    stmt = stmt.where(ThreadRow.status.in_(list(statuses)))
                stmt = stmt.order_by(
                    ThreadRow.vitality_score.desc(),
                    ThreadRow.last_touched_at.desc(),
                )
                if limit is not None:
                    stmt = stmt.limit(max(1, int(limit)))
                result = await session.execute(stmt)
                return [row_to_thread(row) for row in result.scalars().all()]

        return await self._bounded("list_threads", _query, None)

    @staticmethod
    async def _get_row(
        session: AsyncSession, project: str, thread_id: str
    ) -> Optional[ThreadRow]:
        result = await session.execute(
            select(ThreadRow)
            .where(ThreadRow.project == project)
            .where(ThreadRow.thread_id == thread_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert_threads(self, project: str, threads: Sequence[Thread]) -> bool:
        """Insert or update each thread; returns False when the store is unreachable."""
        if not threads:
            return True

        async def _write() -> bool:
            async with self.session() as session:
                for thread in threads:
                    row = await self._get_row(session, project, thread.id)
                    if row is None:
                        row = ThreadRow(
                            thread_id=thread.id,
                            project=project,
                            status=thread.status,
                            metadata_json="{}",
                        )
                    _apply_thread_to_row(row, thread)
                    session.add(row)
            return True

        return await self._bounded("upsert_threads", _write, False)

    async def list_recent_sessions(
        self, project: str, limit: int = 10
    ) -> Optional[List[SessionSnapshot]]:
        async def _query() -> List[SessionSnapshot]:
            async with self.session() as session:
                result = await session.execute(
                    select(SessionRow)
                    .where(SessionRow.project == project)
                    .order_by(SessionRow.created_at.desc())
                    .limit(max(1, int(limit)))
                )
                return [
                    SessionSnapshot.from_mapping(
                        {
                            "id": row.id,
                            "session_date": row.session_date,
                            "open_threads": _load_json(row.open_threads, []),
                            "close_compliance": _load_json(row.close_compliance, None),
                        }
                    )
                    for row in result.scalars().all()
                ]

        return await self._bounded("list_recent_sessions", _query, None)

    async def record_session(
        self,
        *,
        session_id: str,
        project: str,
        open_threads: Sequence[Any],
        close_compliance: Optional[Dict[str, Any]] = None,
        session_date: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> bool:
        def _encode(entry: Any) -> Any:
            return entry.to_dict() if isinstance(entry, Thread) else entry

        async def _write() -> bool:
            created = _to_naive(created_at) or _utc_now_naive()
            async with self.session() as session:
                row = await session.get(SessionRow, session_id)
                if row is None:
                    row = SessionRow(id=session_id)
                row.project = project
                row.session_date = session_date or created.strftime("%Y-%m-%d")
                row.created_at = created
                row.open_threads = json.dumps(
                    [_encode(entry) for entry in open_threads], ensure_ascii=False
                )
                row.close_compliance = (
                    json.dumps(close_compliance) if close_compliance is not None else None
                )
                session.add(row)
            return True

        return await self._bounded("record_session", _write, False)


# =============================================================================
# Global Singleton
# =============================================================================

_thread_store: Optional[ThreadStoreClient] = None


def get_thread_store(settings: Optional[ThreadSettings] = None) -> Optional[ThreadStoreClient]:
    """Get the global ThreadStoreClient, or None when no DATABASE_URL is configured."""
    global _thread_store
    if _thread_store is None:
        settings = settings or ThreadSettings.from_env()
        if not settings.database_url:
            return None
        _thread_store = ThreadStoreClient(
            settings.database_url, timeout_sec=settings.remote_timeout_sec
        )
    return _thread_store


async def close_thread_store():
    """Close the global ThreadStoreClient connection."""
    global _thread_store
    if _thread_store:
        await _thread_store.close()
        _thread_store = None
