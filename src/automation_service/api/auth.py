from __future__ import annotations

from fastapi import Header, Request

from automation_service.errors import UnauthorizedError
from automation_service.storage.models import ApiPrincipal


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
) -> ApiPrincipal:
    """Resolve ``X-API-Key`` to a principal; the store bumps last_used on success."""
    if not x_api_key:
        raise UnauthorizedError("API key is required")
    principal = await request.app.state.storage.authenticate_api_key(x_api_key)
    if principal is None:
        raise UnauthorizedError("Invalid or expired API key")
    request.state.principal = principal
    return principal
