from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from api.auth import require_api_key
from threads.models import ThreadInputError
from threads.service import ThreadService, get_thread_service

router = APIRouter(
    prefix="/threads",
    tags=["threads"],
    dependencies=[Depends(require_api_key)],
)


class CreateThreadRequest(BaseModel):
    text: str = Field(min_length=1)
    linear_issue: Optional[str] = None
    project: Optional[str] = None
    session_id: Optional[str] = None


class ResolveThreadRequest(BaseModel):
    thread_id: Optional[str] = None
    text_match: Optional[str] = None
    resolution_note: Optional[str] = None
    session_id: Optional[str] = None
    project: Optional[str] = None


class CleanupThreadsRequest(BaseModel):
    project: Optional[str] = None
    auto_archive: bool = False
    wait_remote: bool = False


class TouchThreadsRequest(BaseModel):
    thread_ids: List[str] = Field(min_length=1)
    project: Optional[str] = None
    session_id: Optional[str] = None


class SessionSyncRequest(BaseModel):
    threads: List[Any] = Field(default_factory=list)
    project: Optional[str] = None
    close_compliance: Optional[Dict[str, Any]] = None
    wait_remote: bool = False


def _unprocessable(exc: ThreadInputError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"error": "invalid_thread_request", "reason": str(exc)},
    )


@router.post("")
async def create_thread(
    payload: CreateThreadRequest,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    try:
        return await service.create_thread(
            payload.text,
            linear_issue=payload.linear_issue,
            project=payload.project,
            session_id=payload.session_id,
        )
    except ThreadInputError as exc:
        raise _unprocessable(exc) from exc


@router.get("")
async def list_threads(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    include_resolved: bool = False,
    project: Optional[str] = None,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    try:
        return await service.list_threads(
            status=status_filter, include_resolved=include_resolved, project=project
        )
    except ThreadInputError as exc:
        raise _unprocessable(exc) from exc


@router.post("/resolve")
async def resolve_thread(
    payload: ResolveThreadRequest,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    try:
        return await service.resolve_thread(
            thread_id=payload.thread_id,
            text_match=payload.text_match,
            resolution_note=payload.resolution_note,
            session_id=payload.session_id,
            project=payload.project,
        )
    except ThreadInputError as exc:
        raise _unprocessable(exc) from exc


@router.post("/cleanup")
async def cleanup_threads(
    payload: CleanupThreadsRequest,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    return await service.cleanup_threads(
        project=payload.project,
        auto_archive=payload.auto_archive,
        wait_remote=payload.wait_remote,
    )


@router.post("/touch")
async def touch_threads(
    payload: TouchThreadsRequest,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    return await service.touch_threads(
        payload.thread_ids, project=payload.project, session_id=payload.session_id
    )


@router.post("/sessions/{session_id}/sync")
async def sync_session_threads(
    session_id: str,
    payload: SessionSyncRequest,
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    return await service.sync_session_threads(
        payload.threads,
        session_id=session_id,
        project=payload.project,
        close_compliance=payload.close_compliance,
        wait_remote=payload.wait_remote,
    )


@router.get("/sync-status")
async def sync_status(
    limit: int = Query(default=20, ge=1, le=200),
    service: ThreadService = Depends(get_thread_service),
) -> Dict[str, Any]:
    return await service.sync_status(limit)
