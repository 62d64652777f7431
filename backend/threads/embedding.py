"""
Best-effort embedding client.

`embed()` returns a unit-length vector or None. It never raises: a missing
configuration, a transport error or an unexpected payload all degrade to None
and append a reason code the caller can surface.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

import httpx

from .config import ThreadSettings

logger = logging.getLogger(__name__)


def append_degrade_reason(degrade_reasons: Optional[List[str]], reason: str) -> None:
    if degrade_reasons is None or not reason:
        return
    if reason not in degrade_reasons:
        degrade_reasons.append(reason)


def _normalize_embedding_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if normalized.lower().endswith("/embeddings"):
        return normalized[: -len("/embeddings")]
    return normalized


def _extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def _unit(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return vector
    return [v / norm for v in vector]


class EmbeddingClient:
    def __init__(self, settings: ThreadSettings) -> None:
        self._enabled = settings.embedding_enabled
        self._api_base = _normalize_embedding_api_base(settings.embedding_api_base)
        self._api_key = settings.embedding_api_key
        self._model = settings.embedding_model
        self._timeout_sec = settings.embedding_timeout_sec

    @property
    def configured(self) -> bool:
        return self._enabled and bool(self._api_base) and bool(self._model)

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> Optional[Any]:
        url = f"{self._api_base}/{endpoint.lstrip('/')}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            logger.warning("embedding request to %s failed: %s", url, exc)
            return None

    async def embed(
        self, text: str, degrade_reasons: Optional[List[str]] = None
    ) -> Optional[List[float]]:
        content = (text or "").strip()
        if not content:
            return None
        if not self._enabled:
            append_degrade_reason(degrade_reasons, "embedding_unavailable")
            return None
        if not self.configured:
            append_degrade_reason(degrade_reasons, "embedding_config_missing")
            return None

        response = await self._post_json(
            "/embeddings", {"model": self._model, "input": content}
        )
        if response is None:
            append_degrade_reason(degrade_reasons, "embedding_request_failed")
            return None
        embedding = _extract_embedding_from_response(response)
        if embedding is None:
            append_degrade_reason(degrade_reasons, "embedding_response_invalid")
            return None
        return _unit(embedding)
