from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from .models import UserClaims
from .settings import get_settings


# PUBLIC_INTERFACE
async def get_user_claims(
    x_user_id: Optional[str] = Header(default=None, description="Account id of the calling user"),
    x_app_id: Optional[str] = Header(default=None, description="Application id; defaults to the configured tenant"),
    x_org_id: Optional[str] = Header(default=None, description="Organization id; defaults to the configured tenant"),
) -> UserClaims:
    """
    Resolve the caller's claims from request headers.

    Token validation happens in front of this service; the gateway forwards
    the authenticated account id in X-User-ID.

    Raises:
        HTTPException(401) if X-User-ID is missing.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    settings = get_settings()
    return UserClaims(
        app_id=(x_app_id or settings.multi_tenancy_app_id).strip(),
        org_id=(x_org_id or settings.multi_tenancy_org_id).strip(),
        user_id=x_user_id.strip(),
    )


# PUBLIC_INTERFACE
def get_internal_api_key_dependency():
    """
    Return a FastAPI dependency callable guarding internal routes with the
    INTERNAL-API-KEY header.

    Behavior:
    - If WELLNESS_INTERNAL_API_KEY is not configured, every call is rejected
      with 401, so internal routes are never left open by accident.
    - Otherwise the header must match the configured key.

    Usage:
        router = APIRouter(dependencies=[Depends(get_internal_api_key_dependency())])
    """

    async def _enforce(internal_api_key: Optional[str] = Header(default=None, alias="INTERNAL-API-KEY")) -> None:
        expected = get_settings().internal_api_key
        if expected is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Internal API key not configured",
            )
        if internal_api_key is None or not secrets.compare_digest(internal_api_key, expected):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid internal API key",
            )

    return _enforce
