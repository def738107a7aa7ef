"""Linked TikTok account credentials for a platform user."""
from datetime import datetime
from typing import FrozenSet

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from crown.db.database import Base


class LinkedAccount(Base):
    """A TikTok account linked to a platform user, with its OAuth token pair."""

    __tablename__ = "linked_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)  # managed auth user id

    # TikTok identity
    external_account_id = Column(String(255), nullable=False, unique=True, index=True)  # open_id
    username = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    avatar_url = Column(Text, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    follower_count = Column(Integer, default=0, nullable=False)
    video_count = Column(Integer, default=0, nullable=False)

    # Authentication
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=False)
    granted_scopes = Column(Text, nullable=True)  # comma-separated

    is_primary = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<LinkedAccount(id={self.id}, user_id='{self.user_id}', external_account_id='{self.external_account_id}')>"

    @property
    def scope_set(self) -> FrozenSet[str]:
        """Granted scopes as a set; empty when TikTok did not report them."""
        if not self.granted_scopes:
            return frozenset()
        return frozenset(s.strip() for s in self.granted_scopes.split(",") if s.strip())

    def to_dict(self):
        """Convert to dictionary (excludes sensitive auth data)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "external_account_id": self.external_account_id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "is_verified": self.is_verified,
            "follower_count": self.follower_count,
            "video_count": self.video_count,
            "granted_scopes": sorted(self.scope_set),
            "is_primary": self.is_primary,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
