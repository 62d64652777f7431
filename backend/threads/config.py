"""
Environment-driven settings for the thread engine.

Values are read once into an immutable `ThreadSettings`; tests build the
dataclass directly instead of patching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_DISABLED_BACKENDS = {"", "none", "off", "disabled", "false", "0"}
REMOTE_EMBEDDING_BACKENDS = {"router", "api", "openai"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass(frozen=True)
class ThreadSettings:
    database_url: Optional[str] = None
    remote_timeout_sec: float = 5.0
    cache_dir: Path = Path(".gitmem")
    cache_file: str = "threads.json"
    cache_lock_timeout_sec: float = 5.0
    embedding_backend: str = "none"
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_timeout_sec: float = 5.0
    dedup_threshold: float = 0.85
    token_overlap_enabled: bool = False
    token_overlap_threshold: float = 0.6
    issue_prefix_overlap_threshold: float = 0.4
    aggregate_max_sessions: int = 5
    aggregate_max_age_days: int = 14
    aggregate_fetch_limit: int = 10
    archive_after_days: int = 30
    default_project: str = "default"

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / self.cache_file

    @property
    def embedding_enabled(self) -> bool:
        return self.embedding_backend in REMOTE_EMBEDDING_BACKENDS

    @classmethod
    def from_env(cls) -> "ThreadSettings":
        backend = (
            os.getenv("THREADS_EMBEDDING_BACKEND", "none").strip().lower() or "none"
        )
        if backend in _DISABLED_BACKENDS:
            backend = "none"
        return cls(
            database_url=_first_env(["THREADS_DATABASE_URL", "DATABASE_URL"]) or None,
            remote_timeout_sec=_env_float("THREADS_REMOTE_TIMEOUT_SEC", 5.0, minimum=0.1),
            cache_dir=Path(
                _first_env(["THREADS_CACHE_DIR"], default=str(Path.cwd() / ".gitmem"))
            ).expanduser(),
            cache_file=_first_env(["THREADS_CACHE_FILE"], default="threads.json"),
            cache_lock_timeout_sec=_env_float(
                "THREADS_CACHE_LOCK_TIMEOUT_SEC", 5.0, minimum=0.1
            ),
            embedding_backend=backend,
            embedding_api_base=_first_env(
                [
                    "THREADS_EMBEDDING_API_BASE",
                    "OPENAI_BASE_URL",
                    "OPENAI_API_BASE",
                ],
                default="https://api.openai.com/v1" if backend == "openai" else "",
            ),
            embedding_api_key=_first_env(
                ["THREADS_EMBEDDING_API_KEY", "OPENAI_API_KEY"]
            ),
            embedding_model=_first_env(
                ["THREADS_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"],
                default="text-embedding-3-small",
            ),
            embedding_timeout_sec=_env_float(
                "THREADS_EMBEDDING_TIMEOUT_SEC", 5.0, minimum=0.1
            ),
            dedup_threshold=min(
                1.0, _env_float("THREADS_DEDUP_THRESHOLD", 0.85, minimum=0.0)
            ),
            token_overlap_enabled=_env_bool("THREADS_DEDUP_TOKEN_OVERLAP", False),
            token_overlap_threshold=_env_float("THREADS_TOKEN_OVERLAP_THRESHOLD", 0.6),
            issue_prefix_overlap_threshold=_env_float(
                "THREADS_TOKEN_OVERLAP_ISSUE_THRESHOLD", 0.4
            ),
            aggregate_max_sessions=_env_int("THREADS_AGGREGATE_MAX_SESSIONS", 5, minimum=1),
            aggregate_max_age_days=_env_int("THREADS_AGGREGATE_MAX_AGE_DAYS", 14, minimum=1),
            aggregate_fetch_limit=_env_int("THREADS_AGGREGATE_FETCH_LIMIT", 10, minimum=1),
            archive_after_days=_env_int("THREADS_ARCHIVE_AFTER_DAYS", 30, minimum=1),
            default_project=_first_env(["THREADS_DEFAULT_PROJECT"], default="default"),
        )
