"""TikTok Open API client with typed response variants."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from crown.config import settings
from crown.utils.exceptions import (
    ApiAuthenticationError,
    NotFoundError,
    ScopePermissionError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

USER_INFO_FIELDS = (
    "open_id,union_id,avatar_url,avatar_url_100,avatar_url_200,display_name,"
    "bio_description,profile_deep_link,is_verified,follower_count,following_count,"
    "likes_count,video_count"
)
BASIC_USER_INFO_FIELDS = "open_id,display_name"
VIDEO_FIELDS = (
    "id,title,cover_image_url,share_url,video_description,duration,height,width,"
    "create_time,view_count,like_count,comment_count,share_count"
)

AUTH_ERROR_CODES = {"access_token_invalid", "invalid_token", "token_expired"}
PERMISSION_ERROR_CODES = {"scope_not_authorized", "scope_permission_missed", "permission_denied"}


@dataclass
class ApiSuccess:
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApiAuthError:
    message: str
    status: int = 401


@dataclass
class ApiPermissionError:
    message: str
    scope: Optional[str] = None
    status: int = 403


@dataclass
class ApiNotFound:
    message: str
    status: int = 404


ApiResult = Union[ApiSuccess, ApiAuthError, ApiPermissionError, ApiNotFound]


def is_auth_failure_message(message: Optional[str]) -> bool:
    """Whether an error message signals a rejected access token."""
    if not message:
        return False
    lowered = message.lower()
    return "access token is invalid" in lowered or "invalid token" in lowered or "access_token_invalid" in lowered


def parse_api_response(response: httpx.Response, scope: Optional[str] = None) -> ApiResult:
    """
    Classify a TikTok API response into exactly one result variant.

    TikTok wraps every payload as ``{"data": ..., "error": {"code", "message"}}``
    with ``code == "ok"`` on success. Anything that fits none of the variants
    raises UpstreamError.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    error: Dict[str, Any] = {}
    data: Dict[str, Any] = {}
    if isinstance(payload, dict):
        if isinstance(payload.get("error"), dict):
            error = payload["error"]
        if isinstance(payload.get("data"), dict):
            data = payload["data"]

    code = str(error.get("code") or "ok").lower()
    message = str(error.get("message") or "") or (response.text.strip() if payload is None else "")
    status = response.status_code

    if status == 401 or code in AUTH_ERROR_CODES or is_auth_failure_message(message):
        return ApiAuthError(message=message or "Access token is invalid", status=status)
    if status == 403 or code in PERMISSION_ERROR_CODES:
        return ApiPermissionError(message=message or "Permission not granted", scope=scope, status=status)
    if status == 404:
        return ApiNotFound(message=message or "Not found")
    if 200 <= status < 300 and code == "ok" and isinstance(payload, dict):
        return ApiSuccess(data=data)

    logger.error("Unexpected TikTok API response: status=%s code=%s message=%s", status, code, message)
    raise UpstreamError(
        f"Unexpected TikTok API response (HTTP {status}): {message or code}",
        details={"upstream_status": status, "upstream_code": code},
    )


def unwrap(result: ApiResult, not_found_message: Optional[str] = None) -> Dict[str, Any]:
    """Return the success payload or raise the matching typed error."""
    if isinstance(result, ApiSuccess):
        return result.data
    if isinstance(result, ApiAuthError):
        raise ApiAuthenticationError(result.message)
    if isinstance(result, ApiPermissionError):
        raise ScopePermissionError(result.scope or "unknown", message=result.message)
    if isinstance(result, ApiNotFound):
        raise NotFoundError(not_found_message or result.message)
    raise TypeError(f"Unknown TikTok API result: {result!r}")


class TikTokApiClient:
    """Bearer-authenticated calls to the TikTok Open API."""

    def __init__(self, api_base: Optional[str] = None, timeout: Optional[float] = None):
        self.api_base = (api_base or settings.tiktok_api_base).rstrip("/")
        self.timeout = timeout or settings.oauth_http_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        scope: Optional[str] = None,
    ) -> ApiResult:
        url = f"{self.api_base}{path}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"TikTok API request to {path} timed out. Please try again.") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Unable to reach TikTok API ({path}).") from exc

        result = parse_api_response(response, scope=scope)
        if not isinstance(result, ApiSuccess):
            logger.warning("TikTok API %s %s returned %s", method, path, type(result).__name__)
        return result

    async def get_user_info(self, access_token: str) -> ApiResult:
        """Fetch the full profile of the token owner."""
        return await self._request(
            "GET", "/v2/user/info/", access_token,
            params={"fields": USER_INFO_FIELDS},
            scope="user.info.basic",
        )

    async def get_basic_user_info(self, access_token: str) -> ApiResult:
        """Fetch only open_id and display_name; works with the narrowest grant."""
        return await self._request(
            "GET", "/v2/user/info/", access_token,
            params={"fields": BASIC_USER_INFO_FIELDS},
            scope="user.info.basic",
        )

    async def list_videos(self, access_token: str, cursor: Optional[Union[int, str]] = None, max_count: int = 20) -> ApiResult:
        """List the token owner's videos, paginated by an opaque cursor."""
        body: Dict[str, Any] = {"max_count": max_count}
        if cursor:
            body["cursor"] = int(cursor) if str(cursor).isdigit() else cursor
        return await self._request(
            "POST", "/v2/video/list/", access_token,
            params={"fields": VIDEO_FIELDS},
            json_body=body,
            scope="video.list",
        )

    async def query_videos(self, access_token: str, video_ids: List[str]) -> ApiResult:
        """Fetch details for specific videos owned by the token owner."""
        return await self._request(
            "POST", "/v2/video/query/", access_token,
            params={"fields": VIDEO_FIELDS},
            json_body={"filters": {"video_ids": list(video_ids)}},
            scope="video.list",
        )
