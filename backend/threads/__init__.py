"""Thread lifecycle and reconciliation engine."""

from .config import ThreadSettings
from .models import Thread, ThreadInputError
from .service import ThreadService, get_thread_service, present_thread

__all__ = [
    "Thread",
    "ThreadInputError",
    "ThreadService",
    "ThreadSettings",
    "get_thread_service",
    "present_thread",
]
