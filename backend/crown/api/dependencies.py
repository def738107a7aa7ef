"""Request-scoped dependencies."""
from typing import Optional

from fastapi import Header, HTTPException, Query

from crown.services.identity_service import IdentityService, PlatformUser
from crown.utils.exceptions import AuthenticationError


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(authorization: Optional[str] = Header(None)) -> PlatformUser:
    """Resolve the signed-in platform user from the Authorization header."""
    token = _bearer_token(authorization)
    try:
        return await IdentityService().resolve(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


async def get_user_token(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None, description="Session token, for browser redirects"),
) -> Optional[str]:
    """Raw session token from the header or, for browser redirects, the query string."""
    return _bearer_token(authorization) or token
