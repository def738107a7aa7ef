"""Tests for the TikTok PKCE authorization flow and token endpoint client."""
import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from crown.services import token_exchange
from crown.services.auth_flow import (
    AuthorizationFlowManager,
    AuthorizationState,
    generate_pkce_pair,
)
from crown.services.token_exchange import TokenExchangeClient, TokenPair
from crown.utils.exceptions import (
    AuthExchangeError,
    ConfigurationError,
    OAuthCallbackError,
    TokenRefreshError,
    UpstreamError,
)


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload


class _FakeClient:
    def __init__(self, post_response=None, error=None, calls=None, **kwargs):
        self._post_response = post_response
        self._error = error
        self._calls = calls if calls is not None else []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, data=None, headers=None):
        self._calls.append({"url": url, "data": data})
        if self._error:
            raise self._error
        return self._post_response


class _FakeTokenClient:
    def __init__(self):
        self.exchanges = []

    async def exchange_code(self, code, verifier, redirect_uri=None):
        self.exchanges.append((code, verifier, redirect_uri))
        return TokenPair(access_token="access-1", refresh_token="refresh-1", expires_in=86400)


def _client():
    return TokenExchangeClient(
        client_key="ck",
        client_secret="cs",
        redirect_uri="https://example.com/callback",
        api_base="https://open.tiktokapis.com",
    )


# =============================================================================
# PKCE
# =============================================================================

def test_pkce_verifier_length_and_challenge():
    verifier, challenge = generate_pkce_pair()
    assert 43 <= len(verifier) <= 128
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    assert challenge == expected
    assert "=" not in challenge

    long_verifier, _ = generate_pkce_pair(96)
    assert len(long_verifier) == 128


def test_pkce_rejects_out_of_range_entropy():
    with pytest.raises(ValueError):
        generate_pkce_pair(16)


# =============================================================================
# State encoding
# =============================================================================

def test_state_round_trip_json_encoding():
    state = AuthorizationState(code_verifier="verifier-abc", user_token="user.jwt.token", issued_at=1700000000000)
    decoded = AuthorizationState.decode(state.encode())
    assert decoded.code_verifier == "verifier-abc"
    assert decoded.user_token == "user.jwt.token"
    assert decoded.issued_at == 1700000000000


def test_state_round_trip_legacy_encoding():
    state = AuthorizationState(code_verifier="legacy-verifier_123", user_token="tok.en.value")
    decoded = AuthorizationState.decode(state.encode_legacy(csrf="csrf123"))
    assert decoded.code_verifier == "legacy-verifier_123"
    assert decoded.user_token == "tok.en.value"


def test_state_legacy_without_user_token():
    encoded = base64.urlsafe_b64encode(b"csrf:only-verifier").decode().rstrip("=")
    decoded = AuthorizationState.decode(encoded)
    assert decoded.code_verifier == "only-verifier"
    assert decoded.user_token == ""


def test_state_accepts_url_encoded_json_form():
    raw = base64.b64encode(json.dumps({"codeVerifier": "v", "userToken": "u", "timestamp": 1}).encode()).decode()
    encoded = raw.replace("+", "%2B").replace("/", "%2F").replace("=", "%3D")
    decoded = AuthorizationState.decode(encoded)
    assert decoded.code_verifier == "v"
    assert decoded.user_token == "u"


@pytest.mark.parametrize("garbage", [None, "", "%%%not-base64%%%", base64.b64encode(b"nocolons").decode()])
def test_state_decode_failure_degrades_to_empty_verifier(garbage):
    decoded = AuthorizationState.decode(garbage)
    assert decoded.code_verifier == ""


# =============================================================================
# AuthorizationFlowManager
# =============================================================================

def test_begin_builds_pkce_authorization_url():
    manager = AuthorizationFlowManager(
        token_client=_FakeTokenClient(),
        client_key="ck",
        redirect_uri="https://example.com/callback",
        authorize_url="https://www.tiktok.com/v2/auth/authorize/",
    )
    url = manager.begin("user-token")
    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    assert parsed.netloc == "www.tiktok.com"
    assert params["client_key"] == "ck"
    assert params["scope"] == "user.info.basic,video.list"
    assert params["response_type"] == "code"
    assert params["redirect_uri"] == "https://example.com/callback"
    assert params["code_challenge_method"] == "S256"

    state = AuthorizationState.decode(params["state"])
    assert state.user_token == "user-token"
    expected = base64.urlsafe_b64encode(hashlib.sha256(state.code_verifier.encode()).digest()).decode().rstrip("=")
    assert params["code_challenge"] == expected


def test_begin_can_list_video_scope_first():
    manager = AuthorizationFlowManager(token_client=_FakeTokenClient(), client_key="ck")
    params = parse_qs(urlparse(manager.begin(None, emphasize_video_permissions=True)).query)
    assert params["scope"] == ["video.list,user.info.basic"]


def test_begin_without_client_key_is_configuration_error():
    manager = AuthorizationFlowManager(token_client=_FakeTokenClient(), client_key="")
    with pytest.raises(ConfigurationError):
        manager.begin("user-token")


@pytest.mark.asyncio
async def test_complete_passes_decoded_verifier_to_exchange():
    token_client = _FakeTokenClient()
    manager = AuthorizationFlowManager(token_client=token_client, client_key="ck", redirect_uri="https://example.com/cb")
    state = AuthorizationState(code_verifier="the-verifier", user_token="the-user").encode()

    result = await manager.complete("auth-code", state)

    assert token_client.exchanges == [("auth-code", "the-verifier", "https://example.com/cb")]
    assert result.user_token == "the-user"
    assert result.token_pair.access_token == "access-1"


@pytest.mark.asyncio
async def test_complete_with_undecodable_state_still_attempts_exchange():
    token_client = _FakeTokenClient()
    manager = AuthorizationFlowManager(token_client=token_client, client_key="ck")
    await manager.complete("auth-code", "!!garbage!!")
    assert token_client.exchanges[0][1] == ""


@pytest.mark.asyncio
async def test_complete_rejects_provider_error_and_missing_code():
    manager = AuthorizationFlowManager(token_client=_FakeTokenClient(), client_key="ck")
    with pytest.raises(OAuthCallbackError):
        await manager.complete(None, None, error="access_denied")
    with pytest.raises(OAuthCallbackError) as exc_info:
        await manager.complete(None, "state")
    assert exc_info.value.error_code == "MISSING_CODE"


# =============================================================================
# TokenExchangeClient
# =============================================================================

@pytest.mark.asyncio
async def test_exchange_code_posts_form_and_parses_pair(monkeypatch):
    calls = []
    response = _FakeResponse(
        200,
        payload={
            "access_token": "act.1",
            "refresh_token": "rft.1",
            "expires_in": 86400,
            "refresh_expires_in": 31536000,
            "scope": "user.info.basic,video.list",
            "open_id": "open-1",
        },
    )
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, calls=calls, **kwargs),
    )

    pair = await _client().exchange_code("code-1", "verifier-1")

    assert calls[0]["url"] == "https://open.tiktokapis.com/v2/oauth/token/"
    assert calls[0]["data"]["grant_type"] == "authorization_code"
    assert calls[0]["data"]["code_verifier"] == "verifier-1"
    assert calls[0]["data"]["redirect_uri"] == "https://example.com/callback"
    assert pair.access_token == "act.1"
    assert pair.refresh_token == "rft.1"
    assert pair.expires_in == 86400
    assert pair.scope == frozenset({"user.info.basic", "video.list"})
    assert pair.open_id == "open-1"


@pytest.mark.asyncio
async def test_refresh_tolerates_non_numeric_refresh_expiry(monkeypatch):
    response = _FakeResponse(
        200,
        payload={"access_token": "a", "refresh_token": "r", "expires_in": 86400, "refresh_expires_in": "n/a"},
    )
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, **kwargs),
    )

    pair = await _client().refresh("r")

    assert pair.access_token == "a"
    assert pair.expires_in == 86400
    assert pair.refresh_expires_in is None


@pytest.mark.asyncio
async def test_exchange_code_omits_empty_verifier(monkeypatch):
    calls = []
    response = _FakeResponse(200, payload={"access_token": "a", "expires_in": 10})
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, calls=calls, **kwargs),
    )
    await _client().exchange_code("code-1", "")
    assert "code_verifier" not in calls[0]["data"]


@pytest.mark.asyncio
async def test_exchange_code_non_2xx_is_auth_exchange_error(monkeypatch):
    response = _FakeResponse(400, payload={"error": "invalid_grant", "error_description": "Code expired"})
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, **kwargs),
    )
    with pytest.raises(AuthExchangeError) as exc_info:
        await _client().exchange_code("code-1", "verifier-1")
    assert "invalid_grant: Code expired" in exc_info.value.message
    assert exc_info.value.error_code == "AUTH_EXCHANGE_FAILED"


@pytest.mark.asyncio
async def test_exchange_code_error_body_with_200_is_auth_exchange_error(monkeypatch):
    response = _FakeResponse(200, payload={"error": "invalid_request", "error_description": "Bad verifier"})
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, **kwargs),
    )
    with pytest.raises(AuthExchangeError):
        await _client().exchange_code("code-1", "verifier-1")


@pytest.mark.asyncio
async def test_refresh_rejection_is_token_refresh_error(monkeypatch):
    calls = []
    response = _FakeResponse(401, payload={"error": "invalid_grant"})
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(post_response=response, calls=calls, **kwargs),
    )
    with pytest.raises(TokenRefreshError):
        await _client().refresh("rft.old")
    assert calls[0]["data"]["grant_type"] == "refresh_token"
    assert calls[0]["data"]["refresh_token"] == "rft.old"


@pytest.mark.asyncio
async def test_refresh_network_failure_is_upstream_error(monkeypatch):
    request = httpx.Request("POST", "https://open.tiktokapis.com/v2/oauth/token/")
    monkeypatch.setattr(
        token_exchange.httpx,
        "AsyncClient",
        lambda **kwargs: _FakeClient(error=httpx.ConnectTimeout("timed out", request=request), **kwargs),
    )
    with pytest.raises(UpstreamError):
        await _client().refresh("rft.old")


@pytest.mark.asyncio
async def test_missing_client_secret_is_configuration_error():
    client = TokenExchangeClient(client_key="ck", client_secret="")
    with pytest.raises(ConfigurationError):
        await client.exchange_code("code", "verifier")
