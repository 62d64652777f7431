import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

_MCP_API_KEY_ENV = "MCP_API_KEY"
_MCP_API_KEY_HEADER = "X-MCP-API-Key"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _configured_api_key() -> str:
    return str(os.getenv(_MCP_API_KEY_ENV) or "").strip()


def _insecure_local_allowed() -> bool:
    value = str(os.getenv(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    value = (authorization or "").strip()
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "threads_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    """Accepts the key as `X-MCP-API-Key` or a Bearer token.

    With no key configured, requests are refused unless the insecure local
    override is set and the client is on loopback.
    """
    configured = _configured_api_key()
    if not configured:
        if _insecure_local_allowed() and _is_loopback(request):
            return
        raise _unauthorized(
            "insecure_local_override_requires_loopback"
            if _insecure_local_allowed()
            else "api_key_not_configured"
        )

    provided = str(x_mcp_api_key or "").strip() or _bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _unauthorized("invalid_or_missing_api_key")
