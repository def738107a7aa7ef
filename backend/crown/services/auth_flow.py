"""TikTok PKCE authorization handshake."""
import base64
import binascii
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import unquote, urlencode

from crown.config import settings
from crown.services.token_exchange import TokenExchangeClient, TokenPair
from crown.utils.exceptions import ConfigurationError, OAuthCallbackError

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("user.info.basic", "video.list")
VIDEO_FIRST_SCOPES = ("video.list", "user.info.basic")


def generate_pkce_pair(num_bytes: int = 32) -> Tuple[str, str]:
    """
    Generate a PKCE (code_verifier, code_challenge) pair.

    The verifier is URL-safe base64 without padding; 32 random bytes give the
    minimum 43 characters and 96 bytes the maximum 128.
    """
    if num_bytes < 32 or num_bytes > 96:
        raise ValueError("PKCE verifier must be generated from 32-96 random bytes")
    code_verifier = secrets.token_urlsafe(num_bytes)
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return code_verifier, code_challenge


def _b64decode_padded(value: str, urlsafe: bool) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    if urlsafe:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded)


@dataclass
class AuthorizationState:
    """
    Data carried through the OAuth redirect inside the ``state`` parameter.

    Nothing is stored server-side; the state is not signed, so its contents
    are only as trustworthy as the redirect round-trip.
    """
    code_verifier: str
    user_token: str = ""
    issued_at: Optional[int] = None  # epoch milliseconds

    def encode(self) -> str:
        """Encode as base64 of JSON."""
        payload = {
            "codeVerifier": self.code_verifier,
            "userToken": self.user_token or "",
            "timestamp": self.issued_at if self.issued_at is not None else int(time.time() * 1000),
        }
        return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

    def encode_legacy(self, csrf: Optional[str] = None) -> str:
        """Encode in the older ``csrf:verifier[:userToken]`` base64url form."""
        parts = [csrf or secrets.token_hex(8), self.code_verifier]
        if self.user_token:
            parts.append(self.user_token)
        return base64.urlsafe_b64encode(":".join(parts).encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, state: Optional[str]) -> "AuthorizationState":
        """
        Decode either state encoding.

        Undecodable input yields an empty verifier instead of raising; the
        code exchange then fails on its own if TikTok required the verifier.
        """
        if not state:
            return cls(code_verifier="")

        # Form decoding may have turned "+" into spaces
        raw = unquote(state).replace(" ", "+")
        try:
            payload = json.loads(_b64decode_padded(raw, urlsafe=False).decode("utf-8"))
            if isinstance(payload, dict):
                return cls(
                    code_verifier=str(payload.get("codeVerifier") or ""),
                    user_token=str(payload.get("userToken") or ""),
                    issued_at=payload.get("timestamp"),
                )
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.info("OAuth state is not JSON, trying legacy format")

        try:
            parts = _b64decode_padded(raw, urlsafe=True).decode("utf-8").split(":")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("Could not decode OAuth state; continuing without code verifier")
            return cls(code_verifier="")

        if len(parts) >= 2:
            return cls(code_verifier=parts[1], user_token=parts[2] if len(parts) > 2 else "")

        logger.warning("OAuth state has no code verifier; continuing without one")
        return cls(code_verifier="")


@dataclass
class AuthorizationResult:
    """Outcome of a completed authorization callback."""
    token_pair: TokenPair
    user_token: str


class AuthorizationFlowManager:
    """Builds the TikTok authorization URL and completes the callback."""

    def __init__(
        self,
        token_client: Optional[TokenExchangeClient] = None,
        client_key: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        authorize_url: Optional[str] = None,
    ):
        self.token_client = token_client or TokenExchangeClient()
        self.client_key = client_key if client_key is not None else settings.tiktok_client_key
        self.redirect_uri = redirect_uri or settings.tiktok_redirect_uri
        self.authorize_url = authorize_url or settings.tiktok_authorize_url

    def begin(self, user_token: Optional[str] = None, emphasize_video_permissions: bool = False) -> str:
        """
        Build the authorization redirect URL.

        ``emphasize_video_permissions`` only reorders the requested scopes so
        the consent screen lists video access first; the grant is the same.
        """
        if not self.client_key:
            raise ConfigurationError("TikTok client key is not configured")

        code_verifier, code_challenge = generate_pkce_pair()
        state = AuthorizationState(code_verifier=code_verifier, user_token=user_token or "")
        scopes = VIDEO_FIRST_SCOPES if emphasize_video_permissions else DEFAULT_SCOPES

        params = {
            "client_key": self.client_key,
            "scope": ",".join(scopes),
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "state": state.encode(),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        logger.info(
            "Generated TikTok authorization URL (scopes=%s, user token present: %s)",
            params["scope"],
            bool(user_token),
        )
        return f"{self.authorize_url}?{urlencode(params)}"

    async def complete(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> AuthorizationResult:
        """Decode the callback state and exchange the code for tokens."""
        if error:
            logger.error("TikTok OAuth error: %s (%s)", error, error_description or "no description")
            raise OAuthCallbackError(f"TikTok authentication failed: {error}")
        if not code:
            raise OAuthCallbackError("Authorization code is required", error_code="MISSING_CODE")

        decoded = AuthorizationState.decode(state)
        logger.info(
            "TikTok callback state decoded (verifier found: %s, user token found: %s)",
            bool(decoded.code_verifier),
            bool(decoded.user_token),
        )

        token_pair = await self.token_client.exchange_code(code, decoded.code_verifier, self.redirect_uri)
        return AuthorizationResult(token_pair=token_pair, user_token=decoded.user_token)
