from .thread_store import (
    SessionRow,
    ThreadRow,
    ThreadStoreClient,
    close_thread_store,
    get_thread_store,
)

__all__ = [
    "SessionRow",
    "ThreadRow",
    "ThreadStoreClient",
    "close_thread_store",
    "get_thread_store",
]
