"""Tests for refresh-before-call and refresh-once-retry-once behaviour."""
import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from crown.models.linked_account import LinkedAccount
from crown.services.api_invoker import ResilientApiInvoker, is_auth_failure, needs_refresh
from crown.services.tiktok_api import ApiAuthError, ApiSuccess
from crown.services.token_exchange import TokenPair
from crown.utils.exceptions import (
    ApiAuthenticationError,
    AuthenticationError,
    TokenRefreshError,
    UpstreamError,
)


class _FakeTokenClient:
    def __init__(self, pairs=None, error=None, delays=None):
        self._pairs = list(pairs or [])
        self._error = error
        self._delays = list(delays or [])
        self.refresh_calls = []

    async def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        index = len(self.refresh_calls) - 1
        if self._delays:
            await asyncio.sleep(self._delays[index])
        if self._error:
            raise self._error
        return self._pairs[index]


class _FakeAccountService:
    """Mirrors LinkedAccountService.save_tokens without a database."""

    def __init__(self):
        self.saved = []

    async def save_tokens(self, account, token_pair):
        account.access_token = token_pair.access_token
        if token_pair.refresh_token:
            account.refresh_token = token_pair.refresh_token
        account.token_expires_at = datetime.utcnow() + timedelta(seconds=token_pair.expires_in)
        self.saved.append(token_pair.access_token)
        return account


def _account(expires_in: timedelta = timedelta(hours=12), refresh_token="refresh-old"):
    return LinkedAccount(
        id=1,
        user_id="user-1",
        external_account_id="open-1",
        access_token="access-old",
        refresh_token=refresh_token,
        token_expires_at=datetime.utcnow() + expires_in,
        is_primary=True,
    )


def _pair(n: int) -> TokenPair:
    return TokenPair(access_token=f"access-{n}", refresh_token=f"refresh-{n}", expires_in=86400)


def test_needs_refresh_inside_buffer():
    buffer = timedelta(minutes=5)
    assert needs_refresh(_account(timedelta(minutes=4)), buffer)
    assert not needs_refresh(_account(timedelta(minutes=10)), buffer)
    account = _account()
    account.token_expires_at = None
    assert needs_refresh(account, buffer)


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_before_the_call():
    token_client = _FakeTokenClient(pairs=[_pair(1)])
    accounts = _FakeAccountService()
    invoker = ResilientApiInvoker(accounts, token_client=token_client)
    account = _account(timedelta(minutes=2))
    seen_tokens = []

    async def call(token):
        # The refresh must already be persisted when the call is issued
        assert accounts.saved == ["access-1"]
        seen_tokens.append(token)
        return ApiSuccess(data={"ok": True})

    result = await invoker.invoke(account, call)

    assert token_client.refresh_calls == ["refresh-old"]
    assert seen_tokens == ["access-1"]
    assert result.data == {"ok": True}
    assert account.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_fresh_token_is_used_without_refresh():
    token_client = _FakeTokenClient()
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)

    async def call(token):
        return token

    assert await invoker.invoke(_account(), call) == "access-old"
    assert token_client.refresh_calls == []


@pytest.mark.asyncio
async def test_near_expiry_without_refresh_token_calls_with_current_token():
    token_client = _FakeTokenClient()
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)

    async def call(token):
        return token

    assert await invoker.invoke(_account(timedelta(minutes=1), refresh_token=None), call) == "access-old"
    assert token_client.refresh_calls == []


@pytest.mark.asyncio
async def test_auth_failure_triggers_exactly_one_refresh_and_one_retry():
    token_client = _FakeTokenClient(pairs=[_pair(1)])
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)
    calls = []

    async def call(token):
        calls.append(token)
        if len(calls) == 1:
            raise ApiAuthenticationError("Access token is invalid")
        return {"videos": ["v1"]}

    result = await invoker.invoke(_account(), call)

    assert token_client.refresh_calls == ["refresh-old"]
    assert calls == ["access-old", "access-1"]
    assert result == {"videos": ["v1"]}


@pytest.mark.asyncio
async def test_auth_error_variant_triggers_refresh_and_retry():
    token_client = _FakeTokenClient(pairs=[_pair(1)])
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)
    calls = []

    async def call(token):
        calls.append(token)
        if token == "access-old":
            return ApiAuthError(message="The access token is invalid or not found in the request.")
        return ApiSuccess(data={"user": {"open_id": "open-1"}})

    result = await invoker.invoke(_account(), call)

    assert len(token_client.refresh_calls) == 1
    assert calls == ["access-old", "access-1"]
    assert isinstance(result, ApiSuccess)


@pytest.mark.asyncio
async def test_second_auth_failure_propagates_without_looping():
    token_client = _FakeTokenClient(pairs=[_pair(1), _pair(2)])
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)
    calls = []

    async def call(token):
        calls.append(token)
        raise ApiAuthenticationError()

    with pytest.raises(ApiAuthenticationError):
        await invoker.invoke(_account(), call)
    assert len(token_client.refresh_calls) == 1
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_non_auth_failure_propagates_without_refresh():
    token_client = _FakeTokenClient(pairs=[_pair(1)])
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)

    async def call(token):
        raise UpstreamError("TikTok is down")

    with pytest.raises(UpstreamError):
        await invoker.invoke(_account(), call)
    assert token_client.refresh_calls == []


@pytest.mark.asyncio
async def test_rejected_refresh_token_propagates():
    token_client = _FakeTokenClient(error=TokenRefreshError())
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)

    async def call(token):
        raise ApiAuthenticationError()

    with pytest.raises(TokenRefreshError):
        await invoker.invoke(_account(), call)


@pytest.mark.asyncio
async def test_concurrent_refreshes_last_write_wins():
    # First refresh finishes last, so its pair is the one left persisted
    token_client = _FakeTokenClient(pairs=[_pair(1), _pair(2)], delays=[0.05, 0.0])
    accounts = _FakeAccountService()
    invoker = ResilientApiInvoker(accounts, token_client=token_client)
    account = _account(timedelta(minutes=1))

    async def call(token):
        return token

    results = await asyncio.gather(invoker.invoke(account, call), invoker.invoke(account, call))

    assert len(token_client.refresh_calls) == 2
    assert sorted(results) == ["access-1", "access-2"]
    assert accounts.saved == ["access-2", "access-1"]
    assert account.access_token == "access-1"
    assert account.refresh_token == "refresh-1"


def test_is_auth_failure_only_for_api_token_rejections():
    request = httpx.Request("GET", "https://open.tiktokapis.com/v2/user/info/")
    unauthorized = httpx.HTTPStatusError("401", request=request, response=httpx.Response(401, request=request))
    server_error = httpx.HTTPStatusError("500", request=request, response=httpx.Response(500, request=request))

    assert is_auth_failure(ApiAuthenticationError())
    assert is_auth_failure(unauthorized)
    assert is_auth_failure(RuntimeError("The access token is invalid or not found in the request."))
    assert not is_auth_failure(server_error)
    assert not is_auth_failure(TokenRefreshError())
    assert not is_auth_failure(AuthenticationError())


@pytest.mark.asyncio
async def test_refresh_rejected_inside_call_is_not_refreshed_again():
    token_client = _FakeTokenClient(pairs=[_pair(1)])
    invoker = ResilientApiInvoker(_FakeAccountService(), token_client=token_client)
    calls = []

    async def call(token):
        calls.append(token)
        raise TokenRefreshError()

    with pytest.raises(TokenRefreshError):
        await invoker.invoke(_account(), call)
    assert token_client.refresh_calls == []
    assert calls == ["access-old"]
