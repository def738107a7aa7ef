"""Resolve platform users from managed-auth session tokens."""
import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Optional

from crown.config import settings
from crown.services.supabase_client import get_supabase
from crown.utils.exceptions import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass
class PlatformUser:
    """Authenticated platform user."""
    id: str
    email: Optional[str] = None
    verified: bool = True


def _unverified_subject(token: str) -> Optional[str]:
    """Read the ``sub`` claim of a JWT without verifying its signature."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    subject = claims.get("sub")
    return str(subject) if subject else None


class IdentityService:
    """Looks up the user behind a session token via Supabase auth."""

    async def resolve(self, token: Optional[str]) -> PlatformUser:
        if not token:
            raise AuthenticationError("Authentication token is required")

        if not settings.supabase_configured:
            subject = _unverified_subject(token)
            if not subject:
                raise AuthenticationError()
            logger.warning("Supabase is not configured; trusting unverified token subject %s", subject)
            return PlatformUser(id=subject, verified=False)

        client = get_supabase()
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, client.auth.get_user, token)
        except Exception as exc:
            logger.warning("Supabase rejected session token: %s", exc)
            raise AuthenticationError() from exc

        user = getattr(response, "user", None)
        if not user:
            raise AuthenticationError()
        return PlatformUser(id=str(user.id), email=getattr(user, "email", None))

    async def resolve_optional(self, token: Optional[str]) -> Optional[PlatformUser]:
        """Like :meth:`resolve` but returns None for a missing or rejected token."""
        if not token:
            return None
        try:
            return await self.resolve(token)
        except AuthenticationError:
            return None
