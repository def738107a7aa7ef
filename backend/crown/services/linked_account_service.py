"""Service for linked TikTok account persistence."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from crown.models.linked_account import LinkedAccount
from crown.services.token_exchange import TokenPair
from crown.utils.exceptions import AccountLinkError, NotFoundError

logger = logging.getLogger(__name__)


def _profile_int(profile: Dict[str, Any], key: str) -> int:
    try:
        return int(profile.get(key) or 0)
    except (TypeError, ValueError):
        return 0


class LinkedAccountService:
    """Create, read, and mutate a user's linked TikTok accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_account(self, user_id: str, account_id: int) -> LinkedAccount:
        """Get one of the user's accounts by ID."""
        result = await self.db.execute(
            select(LinkedAccount).where(
                LinkedAccount.id == account_id,
                LinkedAccount.user_id == user_id,
            )
        )
        account = result.scalar_one_or_none()
        if not account:
            raise NotFoundError(f"TikTok account {account_id} not found")
        return account

    async def get_by_external_id(self, external_account_id: str) -> Optional[LinkedAccount]:
        result = await self.db.execute(
            select(LinkedAccount).where(LinkedAccount.external_account_id == external_account_id)
        )
        return result.scalar_one_or_none()

    async def list_accounts(self, user_id: str) -> List[LinkedAccount]:
        """List the user's accounts, primary first, then oldest first."""
        result = await self.db.execute(
            select(LinkedAccount)
            .where(LinkedAccount.user_id == user_id)
            .order_by(LinkedAccount.is_primary.desc(), LinkedAccount.created_at.asc(), LinkedAccount.id.asc())
        )
        return list(result.scalars().all())

    async def get_primary(self, user_id: str) -> Optional[LinkedAccount]:
        """
        Get the user's primary account.

        When accounts exist but none is marked primary, the oldest one is
        promoted and returned.
        """
        accounts = await self.list_accounts(user_id)
        if not accounts:
            return None
        if accounts[0].is_primary:
            return accounts[0]

        oldest = accounts[0]
        logger.info("No primary TikTok account for user %s; promoting account %s", user_id, oldest.id)
        oldest.is_primary = True
        await self.db.flush()
        return oldest

    # =========================================================================
    # Mutations
    # =========================================================================

    async def link_account(
        self,
        user_id: str,
        token_pair: TokenPair,
        profile: Dict[str, Any],
    ) -> LinkedAccount:
        """Link a newly authorized TikTok account to a user."""
        if not user_id:
            raise AccountLinkError("No logged-in user to link the TikTok account to", error_code="USER_REQUIRED", status_code=401)

        external_id = profile.get("open_id") or token_pair.open_id
        if not external_id:
            raise AccountLinkError("TikTok did not return an account identifier", error_code="MISSING_ACCOUNT_ID", status_code=502)

        existing = await self.get_by_external_id(external_id)
        if existing:
            if existing.user_id != user_id:
                raise AccountLinkError(
                    "This TikTok account is already linked to another user",
                    error_code="ACCOUNT_LINKED_ELSEWHERE",
                )
            raise AccountLinkError(
                "This TikTok account is already linked to your profile",
                error_code="ACCOUNT_ALREADY_LINKED",
            )

        has_primary = await self.db.execute(
            select(LinkedAccount.id).where(
                LinkedAccount.user_id == user_id,
                LinkedAccount.is_primary.is_(True),
            )
        )
        is_primary = has_primary.scalar_one_or_none() is None

        display_name = profile.get("display_name")
        account = LinkedAccount(
            user_id=user_id,
            external_account_id=external_id,
            username=profile.get("username") or display_name,
            display_name=display_name,
            avatar_url=profile.get("avatar_url"),
            is_verified=bool(profile.get("is_verified", False)),
            follower_count=_profile_int(profile, "follower_count"),
            video_count=_profile_int(profile, "video_count"),
            access_token=token_pair.access_token,
            refresh_token=token_pair.refresh_token,
            token_expires_at=datetime.utcnow() + timedelta(seconds=token_pair.expires_in),
            granted_scopes=",".join(sorted(token_pair.scope)) if token_pair.scope else None,
            is_primary=is_primary,
        )
        self.db.add(account)
        await self.db.flush()
        await self.db.refresh(account)

        logger.info(
            "Linked TikTok account %s to user %s (primary=%s)",
            external_id, user_id, is_primary,
        )
        return account

    async def save_tokens(self, account: LinkedAccount, token_pair: TokenPair) -> LinkedAccount:
        """
        Persist a refreshed token pair in place.

        Concurrent refreshes each write a complete pair; whichever writes last
        wins. A missing refresh token in the response keeps the stored one.
        """
        account.access_token = token_pair.access_token
        if token_pair.refresh_token:
            account.refresh_token = token_pair.refresh_token
        account.token_expires_at = datetime.utcnow() + timedelta(seconds=token_pair.expires_in)
        if token_pair.scope:
            account.granted_scopes = ",".join(sorted(token_pair.scope))
        account.updated_at = datetime.utcnow()
        await self.db.flush()
        logger.info("Stored refreshed TikTok tokens for account %s", account.id)
        return account

    async def set_primary(self, user_id: str, account_id: int) -> LinkedAccount:
        """Mark one account primary and unset every other account of the user."""
        account = await self.get_account(user_id, account_id)
        await self.db.execute(
            update(LinkedAccount)
            .where(LinkedAccount.user_id == user_id, LinkedAccount.id != account_id)
            .values(is_primary=False)
        )
        account.is_primary = True
        await self.db.flush()
        logger.info("Set TikTok account %s as primary for user %s", account_id, user_id)
        return account

    async def delete_account(self, user_id: str, account_id: int) -> None:
        """Delete one linked account; the user's only account cannot be deleted."""
        account = await self.get_account(user_id, account_id)
        accounts = await self.list_accounts(user_id)
        if len(accounts) <= 1:
            raise AccountLinkError(
                "Cannot delete your only TikTok account",
                error_code="LAST_ACCOUNT",
                status_code=400,
            )

        was_primary = account.is_primary
        await self.db.delete(account)
        await self.db.flush()

        if was_primary:
            remaining = [a for a in accounts if a.id != account_id]
            remaining[0].is_primary = True
            await self.db.flush()
        logger.info("Deleted TikTok account %s for user %s", account_id, user_id)

    async def disconnect(self, user_id: str) -> int:
        """Remove every linked account of the user; returns how many were removed."""
        result = await self.db.execute(
            delete(LinkedAccount).where(LinkedAccount.user_id == user_id)
        )
        await self.db.flush()
        logger.info("Disconnected %s TikTok account(s) for user %s", result.rowcount, user_id)
        return result.rowcount or 0
