from pathlib import Path

import pytest

from conftest import NOW, days_ago, make_thread
from db.thread_store import ThreadRow, ThreadStoreClient, close_thread_store, get_thread_store
from threads.config import ThreadSettings


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _get(client: ThreadStoreClient, thread_id: str):
    threads = await client.list_threads("default") or []
    return next((thread for thread in threads if thread.id == thread_id), None)


@pytest.mark.asyncio
async def test_upsert_and_list_threads_by_status(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "threads.db"))
    await client.init_db()

    open_thread = make_thread("t-store001", "Fix auth timeout", embedding=(0.6, 0.8))
    done_thread = make_thread("t-store002", "Write docs", status="resolved", resolved_at=NOW)
    assert await client.upsert_threads("alpha", [open_thread, done_thread]) is True
    assert await client.upsert_threads("beta", [make_thread("t-store003", "Other project")]) is True

    everything = await client.list_threads("alpha")
    open_only = await client.list_threads("alpha", statuses=["open"])
    await client.close()

    assert {thread.id for thread in everything} == {"t-store001", "t-store002"}
    assert [thread.id for thread in open_only] == ["t-store001"]
    assert open_only[0].embedding == (0.6, 0.8)
    assert open_only[0].created_at == open_thread.created_at


@pytest.mark.asyncio
async def test_persisted_status_never_moves_backward(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "ratchet.db"))
    await client.init_db()

    thread = make_thread("t-store004", "Fix auth timeout")
    await client.upsert_threads("default", [thread.with_changes(status="resolved", resolved_at=NOW)])
    await client.upsert_threads("default", [thread.with_changes(touch_count=7)])
    await client.upsert_threads("default", [thread.with_changes(status="archived")])

    stored = await _get(client, "t-store004")
    await client.close()

    assert stored is not None
    assert stored.status == "resolved"
    assert stored.touch_count == 7


@pytest.mark.asyncio
async def test_dormant_since_round_trips_through_metadata(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "meta.db"))
    await client.init_db()

    thread = make_thread("t-store005", "Refresh onboarding guide", dormant_since=days_ago(3))
    await client.upsert_threads("default", [thread])
    stored = await _get(client, "t-store005")
    await client.upsert_threads("default", [thread.with_changes(dormant_since=None)])
    cleared = await _get(client, "t-store005")
    await client.close()

    assert stored.dormant_since == days_ago(3)
    assert cleared.dormant_since is None


@pytest.mark.asyncio
async def test_stale_id_prefix_is_stripped_from_text(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "prefix.db"))
    await client.init_db()
    async with client.session() as session:
        session.add(
            ThreadRow(
                thread_id="t-1a2b3c4d",
                project="default",
                text="t-1a2b3c4d: Fix deploy script",
                status="open",
                metadata_json="{}",
            )
        )

    threads = await client.list_threads("default")
    await client.close()

    assert [thread.text for thread in threads] == ["Fix deploy script"]


@pytest.mark.asyncio
async def test_recent_sessions_are_newest_first(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "sessions.db"))
    await client.init_db()

    await client.record_session(
        session_id="s-old",
        project="default",
        open_threads=["Older item"],
        close_compliance={"ok": True},
        created_at=days_ago(2),
    )
    await client.record_session(
        session_id="s-new",
        project="default",
        open_threads=[make_thread("t-store006", "Newer item")],
        close_compliance=None,
        created_at=days_ago(1),
    )
    sessions = await client.list_recent_sessions("default", limit=10)
    await client.close()

    assert [session.id for session in sessions] == ["s-new", "s-old"]
    assert sessions[0].is_closed is False
    assert sessions[0].open_threads[0]["id"] == "t-store006"
    assert sessions[1].is_closed is True
    assert sessions[1].session_date == days_ago(2).date()


@pytest.mark.asyncio
async def test_database_errors_degrade_to_none(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "uninitialized.db"))

    assert await client.list_threads("default") is None
    assert await client.list_recent_sessions("default") is None
    assert await client.upsert_threads("default", [make_thread("t-store007", "x")]) is False
    await client.close()


@pytest.mark.asyncio
async def test_old_open_thread_survives_many_resolved_rows(tmp_path: Path) -> None:
    client = ThreadStoreClient(_sqlite_url(tmp_path / "crowded.db"), timeout_sec=30)
    await client.init_db()

    stale = make_thread("t-old00001", "Refresh onboarding guide", created_days_ago=90)
    resolved = [
        make_thread(
            f"t-done{i:04d}",
            f"Finished item {i}",
            status="resolved",
            created_days_ago=0,
            touch_count=5,
            resolved_at=NOW,
        )
        for i in range(250)
    ]
    assert await client.upsert_threads("default", [stale, *resolved]) is True

    everything = await client.list_threads("default")
    open_only = await client.list_threads("default", statuses=["open"])
    await client.close()

    assert len(everything) == 251
    assert "t-old00001" in {thread.id for thread in everything}
    assert [thread.id for thread in open_only] == ["t-old00001"]


@pytest.mark.asyncio
async def test_store_singleton_is_built_from_settings(tmp_path: Path) -> None:
    assert get_thread_store(ThreadSettings()) is None

    settings = ThreadSettings(
        database_url=_sqlite_url(tmp_path / "singleton.db"), remote_timeout_sec=2.5
    )
    store = get_thread_store(settings)
    try:
        assert store is not None
        assert store.database_url == settings.database_url
        assert store.timeout_sec == 2.5
        assert get_thread_store() is store
    finally:
        await close_thread_store()
