"""Creator-facing TikTok profile and video operations."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from crown.models.linked_account import LinkedAccount
from crown.services.api_invoker import ResilientApiInvoker
from crown.services.linked_account_service import LinkedAccountService
from crown.services.tiktok_api import (
    ApiAuthError,
    ApiNotFound,
    ApiSuccess,
    TikTokApiClient,
    unwrap,
)
from crown.services.token_exchange import TokenExchangeClient
from crown.utils.exceptions import CrownError, NotFoundError, ScopePermissionError

logger = logging.getLogger(__name__)

VIDEO_LIST_SCOPE = "video.list"
VIDEO_ACCESS_MISSING_MESSAGE = (
    "TikTok video access permission not granted or no videos available. "
    "Please reconnect your TikTok account with video permissions."
)


class CreatorService:
    """Profile and video lookups for a user's primary linked TikTok account."""

    def __init__(
        self,
        account_service: LinkedAccountService,
        api_client: Optional[TikTokApiClient] = None,
        token_client: Optional[TokenExchangeClient] = None,
        invoker: Optional[ResilientApiInvoker] = None,
    ):
        self.account_service = account_service
        self.api_client = api_client or TikTokApiClient()
        self.invoker = invoker or ResilientApiInvoker(account_service, token_client=token_client)

    async def _require_primary(self, user_id: str) -> LinkedAccount:
        account = await self.account_service.get_primary(user_id)
        if not account:
            raise NotFoundError("No TikTok account linked to this user")
        return account

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        """Fetch the live TikTok profile and refresh the cached profile fields."""
        account = await self._require_primary(user_id)
        result = await self.invoker.invoke(account, self.api_client.get_user_info)
        user = unwrap(result).get("user") or {}

        if user.get("display_name"):
            account.display_name = user["display_name"]
        if user.get("avatar_url"):
            account.avatar_url = user["avatar_url"]
        if "is_verified" in user:
            account.is_verified = bool(user["is_verified"])
        if "follower_count" in user:
            account.follower_count = int(user.get("follower_count") or 0)
        if "video_count" in user:
            account.video_count = int(user.get("video_count") or 0)

        return {"account": account.to_dict(), "user": user}

    async def list_videos(
        self,
        user_id: str,
        cursor: Optional[Union[int, str]] = None,
        max_count: int = 20,
    ) -> Dict[str, Any]:
        """List the user's TikTok videos with cursor pagination."""
        account = await self._require_primary(user_id)
        scopes = account.scope_set
        if scopes and VIDEO_LIST_SCOPE not in scopes:
            logger.warning("Account %s lacks the %s scope", account.id, VIDEO_LIST_SCOPE)
            raise ScopePermissionError(VIDEO_LIST_SCOPE)

        result = await self.invoker.invoke(
            account,
            lambda token: self.api_client.list_videos(token, cursor=cursor, max_count=max_count),
        )
        if isinstance(result, ApiNotFound):
            raise NotFoundError(VIDEO_ACCESS_MISSING_MESSAGE)
        data = unwrap(result)
        return {
            "videos": data.get("videos") or [],
            "cursor": data.get("cursor"),
            "has_more": bool(data.get("has_more", False)),
        }

    async def get_video(self, user_id: str, video_id: str) -> Dict[str, Any]:
        """Fetch details for one of the user's videos."""
        account = await self._require_primary(user_id)
        result = await self.invoker.invoke(
            account,
            lambda token: self.api_client.query_videos(token, [video_id]),
        )
        videos = unwrap(result, not_found_message=f"TikTok video {video_id} not found").get("videos") or []
        if not videos:
            raise NotFoundError(f"TikTok video {video_id} not found")
        return videos[0]

    async def validate_session(self, user_id: str, account_id: int) -> Dict[str, Any]:
        """Probe whether the stored access token is still accepted by TikTok."""
        account = await self.account_service.get_account(user_id, account_id)

        if not account.token_expires_at or not account.access_token:
            return {"is_valid": False, "needs_refresh": True, "reason": "missing_token_data"}

        if datetime.utcnow() >= account.token_expires_at:
            return {
                "is_valid": False,
                "needs_refresh": True,
                "reason": "token_expired",
                "expires_at": account.token_expires_at.isoformat(),
            }

        try:
            result = await self.api_client.get_user_info(account.access_token)
        except CrownError as exc:
            logger.error("TikTok session validation failed for account %s: %s", account.id, exc)
            return {
                "is_valid": None,
                "needs_refresh": False,
                "reason": "validation_failed",
                "error": exc.message,
            }

        if isinstance(result, ApiAuthError):
            return {"is_valid": False, "needs_refresh": True, "reason": "unauthorized"}

        user = result.data.get("user") if isinstance(result, ApiSuccess) else None
        if not user:
            return {"is_valid": False, "needs_refresh": True, "reason": "invalid_response"}

        return {
            "is_valid": True,
            "needs_refresh": False,
            "tiktok_user_id": user.get("open_id"),
            "username": user.get("display_name"),
        }
