"""TikTok OAuth token endpoint client."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from crown.config import settings
from crown.utils.exceptions import (
    AuthExchangeError,
    ConfigurationError,
    TokenRefreshError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    """Access/refresh token pair returned by the token endpoint."""
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    scope: FrozenSet[str] = field(default_factory=frozenset)
    open_id: Optional[str] = None
    refresh_expires_in: Optional[int] = None


def _parse_scope(raw: Any) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in str(raw).split(",") if part.strip())


def _extract_oauth_error_detail(response: httpx.Response) -> str:
    """Extract concise OAuth error detail from provider response."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or f"HTTP {response.status_code}"

    if isinstance(payload, dict):
        code = payload.get("error")
        description = payload.get("error_description")

        parts: List[str] = []
        if code:
            parts.append(str(code))
        if description:
            parts.append(str(description))
        if parts:
            return ": ".join(parts)

    return f"HTTP {response.status_code}"


class TokenExchangeClient:
    """
    Exchanges authorization codes and refresh tokens at the TikTok token endpoint.

    Neither call invalidates previous tokens; persisting the returned pair is
    the caller's job.
    """

    def __init__(
        self,
        client_key: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.client_key = client_key if client_key is not None else settings.tiktok_client_key
        self.client_secret = client_secret if client_secret is not None else settings.tiktok_client_secret
        self.redirect_uri = redirect_uri or settings.tiktok_redirect_uri
        self.api_base = (api_base or settings.tiktok_api_base).rstrip("/")
        self.timeout = timeout or settings.oauth_http_timeout_seconds

    @property
    def token_url(self) -> str:
        return f"{self.api_base}/v2/oauth/token/"

    def _require_credentials(self) -> None:
        if not self.client_key or not self.client_secret:
            raise ConfigurationError("TikTok client key/secret are not configured")

    async def _post(self, data: Dict[str, str], action: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(
                    self.token_url,
                    data=data,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Cache-Control": "no-cache",
                    },
                )
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"TikTok token {action} timed out. Please try again.") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Unable to reach TikTok token endpoint for {action}.") from exc

    @staticmethod
    def _parse_pair(response: httpx.Response) -> Optional[TokenPair]:
        """Parse a token response; None when it does not carry an access token."""
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        # Some responses nest the token fields under "data"
        if "access_token" not in payload and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        access_token = payload.get("access_token")
        if not access_token:
            return None
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        try:
            refresh_expires_in = int(payload.get("refresh_expires_in") or 0) or None
        except (TypeError, ValueError):
            refresh_expires_in = None
        return TokenPair(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or None,
            expires_in=expires_in,
            scope=_parse_scope(payload.get("scope")),
            open_id=payload.get("open_id"),
            refresh_expires_in=refresh_expires_in,
        )

    async def exchange_code(self, code: str, verifier: str, redirect_uri: Optional[str] = None) -> TokenPair:
        """Exchange an authorization code plus PKCE verifier for a token pair."""
        self._require_credentials()
        data = {
            "client_key": self.client_key,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri or self.redirect_uri,
        }
        if verifier:
            data["code_verifier"] = verifier

        logger.info("Exchanging TikTok authorization code (verifier present: %s)", bool(verifier))
        response = await self._post(data, "exchange")

        if response.status_code < 200 or response.status_code >= 300:
            detail = _extract_oauth_error_detail(response)
            logger.warning("TikTok code exchange rejected: %s", detail)
            raise AuthExchangeError(f"TikTok code exchange failed: {detail}")

        pair = self._parse_pair(response)
        if pair is None:
            detail = _extract_oauth_error_detail(response)
            logger.warning("TikTok code exchange returned no access token: %s", detail)
            raise AuthExchangeError(f"TikTok code exchange failed: {detail}")

        logger.info("TikTok code exchange succeeded (expires_in=%s)", pair.expires_in)
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Obtain a new token pair from a refresh token."""
        self._require_credentials()
        if not refresh_token:
            raise TokenRefreshError("No refresh token available - re-authorization required")

        data = {
            "client_key": self.client_key,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        response = await self._post(data, "refresh")

        if response.status_code < 200 or response.status_code >= 300:
            detail = _extract_oauth_error_detail(response)
            logger.warning("TikTok token refresh rejected: %s", detail)
            raise TokenRefreshError(f"TikTok token refresh failed: {detail}")

        pair = self._parse_pair(response)
        if pair is None:
            detail = _extract_oauth_error_detail(response)
            raise TokenRefreshError(f"TikTok token refresh failed: {detail}")

        logger.info("TikTok access token refreshed (expires_in=%s)", pair.expires_in)
        return pair
