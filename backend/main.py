import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import threads_router
from db import close_thread_store, get_thread_store
from runtime_state import runtime_state
from threads.service import reset_thread_service


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: create remote tables, drain background syncs on exit."""
    logging.basicConfig(level=logging.INFO)
    print("Thread API starting...")

    store = get_thread_store()
    if store is None:
        print("DATABASE_URL not set; running on the local thread cache only.")
    else:
        try:
            await store.init_db()
            print("Remote thread store initialized.")
        except Exception as e:
            print(f"Failed to initialize remote thread store: {e}")
            raise RuntimeError("Failed to initialize remote thread store during startup") from e

    yield

    print("Draining remote sync tasks...")
    await runtime_state.shutdown()
    await close_thread_store()
    reset_thread_service()


app = FastAPI(
    title="Thread Lifecycle API",
    description="Tracked work items with vitality scoring and cross-source reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(threads_router)


@app.get("/")
async def root():
    return {
        "message": "Thread Lifecycle API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
        "remote_configured": get_thread_store() is not None,
    }
    sync_summary = await runtime_state.remote_sync.summary()
    payload["runtime"] = {
        "write_lanes": await runtime_state.write_lanes.status(),
        "remote_sync": sync_summary,
    }
    if sync_summary.get("last_failure"):
        payload["status"] = "degraded"
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
