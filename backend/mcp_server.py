"""
MCP Server for the thread lifecycle engine.

Tools return JSON strings. Successful calls carry `ok: true` plus the
operation payload; input problems come back as `ok: false` with a message
instead of raising into the agent.

Tools:
- create_thread   : open a work item, or touch the existing duplicate
- list_threads    : reconciled view across remote store, sessions and cache
- resolve_thread  : close one thread by id or text match
- cleanup_threads : lifecycle triage, optionally archiving long-dormant items
"""

import json
import os
import sys
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from db.thread_store import get_thread_store
from threads.models import ThreadInputError
from threads.service import get_thread_service

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

mcp = FastMCP("Thread Lifecycle Interface")


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _session_arg(session_id: Optional[str]) -> Optional[str]:
    value = (session_id or "").strip()
    return value or None


@mcp.tool()
async def create_thread(
    text: str,
    linear_issue: Optional[str] = None,
    project: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """
    Opens a tracked thread (an unresolved work item).

    If an open thread already says the same thing (by embedding similarity,
    or by normalized text when embeddings are unavailable) that thread is
    touched and returned instead, with deduplicated=true.

    Args:
        text: What needs doing, e.g. "Fix auth timeout on login".
        linear_issue: Optional tracker key, e.g. "OD-692".
        project: Project scope. Defaults to THREADS_DEFAULT_PROJECT.
        session_id: Session creating the thread, recorded as source_session.
    """
    try:
        result = await get_thread_service().create_thread(
            text,
            linear_issue=linear_issue,
            project=project,
            session_id=_session_arg(session_id),
        )
    except ThreadInputError as exc:
        return _tool_response(ok=False, message=f"Error: {exc}")
    thread = result["thread"]
    message = (
        f"Matched existing thread {thread['id']} ({result['dedup_method']})"
        if result["deduplicated"]
        else f"Created thread {thread['id']}"
    )
    return _tool_response(ok=True, message=message, **result)


@mcp.tool()
async def list_threads(
    status: Optional[str] = None,
    include_resolved: bool = False,
    project: Optional[str] = None,
) -> str:
    """
    Lists threads with their current lifecycle (emerging/active/cooling/dormant).

    Args:
        status: Persisted status filter: open (default), resolved or archived.
        include_resolved: Return every thread regardless of status.
        project: Project scope. Defaults to THREADS_DEFAULT_PROJECT.
    """
    try:
        result = await get_thread_service().list_threads(
            status=status, include_resolved=include_resolved, project=project
        )
    except ThreadInputError as exc:
        return _tool_response(ok=False, message=f"Error: {exc}")
    return _tool_response(
        ok=True,
        message=f"{len(result['threads'])} threads from {result['source']}",
        **result,
    )


@mcp.tool()
async def resolve_thread(
    thread_id: Optional[str] = None,
    text_match: Optional[str] = None,
    resolution_note: Optional[str] = None,
    session_id: Optional[str] = None,
    project: Optional[str] = None,
) -> str:
    """
    Resolves exactly one thread.

    Looks up by thread_id first, then by case-insensitive substring of the
    text. Resolving an already-resolved thread is a no-op. Ids mentioned in
    resolution_note are not followed.

    Args:
        thread_id: e.g. "t-1a2b3c4d".
        text_match: Substring of the thread text.
        resolution_note: Free-form note stored on the thread.
        session_id: Session resolving the thread.
        project: Project scope. Defaults to THREADS_DEFAULT_PROJECT.
    """
    try:
        result = await get_thread_service().resolve_thread(
            thread_id=thread_id,
            text_match=text_match,
            resolution_note=resolution_note,
            session_id=_session_arg(session_id),
            project=project,
        )
    except ThreadInputError as exc:
        return _tool_response(ok=False, message=f"Error: {exc}")
    thread = result["thread"]
    if thread is None:
        return _tool_response(ok=True, message="No matching thread found", **result)
    message = (
        f"Resolved thread {thread['id']}"
        if result["changed"]
        else f"Thread {thread['id']} was already {thread['status']}"
    )
    return _tool_response(ok=True, message=message, **result)


@mcp.tool()
async def cleanup_threads(
    project: Optional[str] = None,
    auto_archive: bool = False,
) -> str:
    """
    Groups open threads by lifecycle for review.

    Args:
        project: Project scope. Defaults to THREADS_DEFAULT_PROJECT.
        auto_archive: Archive threads that stayed dormant past the archive window.
    """
    result = await get_thread_service().cleanup_threads(
        project=project, auto_archive=auto_archive
    )
    return _tool_response(
        ok=True,
        message=f"{result['summary']['total_open']} open, {result['archived_count']} archived",
        **result,
    )


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the remote store tables when one is configured."""
    store = get_thread_store()
    if store is not None:
        await store.init_db()


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
