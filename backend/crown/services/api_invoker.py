"""Refresh-aware wrapper for authenticated TikTok API calls."""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from crown.config import settings
from crown.models.linked_account import LinkedAccount
from crown.services.linked_account_service import LinkedAccountService
from crown.services.tiktok_api import ApiAuthError, is_auth_failure_message
from crown.services.token_exchange import TokenExchangeClient
from crown.utils.exceptions import ApiAuthenticationError, CrownError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def needs_refresh(account: LinkedAccount, buffer: timedelta, now: Optional[datetime] = None) -> bool:
    """True when the access token expires within ``buffer`` (or has no recorded expiry)."""
    if not account.token_expires_at:
        return True
    now = now or datetime.utcnow()
    return now + buffer > account.token_expires_at


def is_auth_failure(exc: BaseException) -> bool:
    """Whether an exception means the TikTok API rejected the access token."""
    if isinstance(exc, ApiAuthenticationError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 401
    # Platform errors such as a rejected refresh are never retried
    if isinstance(exc, CrownError):
        return False
    return is_auth_failure_message(str(exc))


class ResilientApiInvoker:
    """
    Runs an operation with a valid access token for a linked account.

    The token is refreshed up front when it is within the safety buffer of
    expiry. If the operation then fails with an authentication error, the
    token is refreshed once and the operation retried once; any further
    failure propagates unchanged. Refreshes are not serialized per account.
    """

    def __init__(
        self,
        account_service: LinkedAccountService,
        token_client: Optional[TokenExchangeClient] = None,
        refresh_buffer: Optional[timedelta] = None,
    ):
        self.account_service = account_service
        self.token_client = token_client or TokenExchangeClient()
        self.refresh_buffer = refresh_buffer or timedelta(minutes=settings.token_refresh_buffer_minutes)

    async def _refresh(self, account: LinkedAccount, reason: str) -> str:
        logger.info("Refreshing TikTok token for account %s (%s)", account.id, reason)
        token_pair = await self.token_client.refresh(account.refresh_token)
        await self.account_service.save_tokens(account, token_pair)
        return token_pair.access_token

    async def invoke(self, account: LinkedAccount, fn: Callable[[str], Awaitable[T]]) -> T:
        """Call ``fn(access_token)`` with proactive refresh and a single reactive retry."""
        access_token = account.access_token

        if account.refresh_token and needs_refresh(account, self.refresh_buffer):
            access_token = await self._refresh(account, "token near expiry")

        try:
            result = await fn(access_token)
        except Exception as exc:
            if not account.refresh_token or not is_auth_failure(exc):
                raise
            logger.warning("TikTok call for account %s rejected the token: %s", account.id, exc)
            access_token = await self._refresh(account, "authentication failure")
            return await fn(access_token)

        if isinstance(result, ApiAuthError) and account.refresh_token:
            logger.warning("TikTok call for account %s rejected the token: %s", account.id, result.message)
            access_token = await self._refresh(account, "authentication failure")
            return await fn(access_token)

        return result
