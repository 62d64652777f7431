from .threads import router as threads_router

__all__ = ["threads_router"]
