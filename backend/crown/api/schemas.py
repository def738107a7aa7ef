"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Health
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    tiktok_configured: bool
    supabase_configured: bool
    storage_backend: str
    message: Optional[str] = None


# =============================================================================
# TikTok Authorization
# =============================================================================

class AuthInitiateRequest(BaseModel):
    """Request to start the TikTok authorization flow."""
    emphasize_video_permissions: bool = Field(
        False, description="List the video permission first on the consent screen"
    )


class AuthUrlResponse(BaseModel):
    """TikTok authorization URL."""
    auth_url: str


# =============================================================================
# Linked Accounts
# =============================================================================

class LinkedAccountResponse(BaseModel):
    """Linked TikTok account (tokens are never returned)."""
    id: int
    user_id: str
    external_account_id: str
    username: Optional[str]
    display_name: Optional[str]
    avatar_url: Optional[str]
    is_verified: bool
    follower_count: int
    video_count: int
    granted_scopes: List[str]
    is_primary: bool
    token_expires_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class SetPrimaryAccountRequest(BaseModel):
    """Request to change the primary TikTok account."""
    account_id: int = Field(..., description="Linked account ID to make primary")


class SessionValidationResponse(BaseModel):
    """Result of probing a linked account's access token."""
    is_valid: Optional[bool]
    needs_refresh: bool
    reason: Optional[str] = None
    expires_at: Optional[str] = None
    tiktok_user_id: Optional[str] = None
    username: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# TikTok Profile & Videos
# =============================================================================

class TikTokProfileResponse(BaseModel):
    """Live TikTok profile with the cached account record."""
    account: Dict[str, Any]
    user: Dict[str, Any]


class VideoListRequest(BaseModel):
    """Request for a page of the user's TikTok videos."""
    cursor: Optional[str] = Field(None, description="Opaque pagination cursor from the previous page")
    max_count: int = Field(20, ge=1, le=20, description="Videos per page")


class VideoListResponse(BaseModel):
    """A page of TikTok videos."""
    videos: List[Dict[str, Any]]
    cursor: Optional[Any] = None
    has_more: bool


# =============================================================================
# Contest Submissions
# =============================================================================

class SubmitVideoRequest(BaseModel):
    """Request to submit a TikTok video into a contest."""
    video_url: str = Field(..., description="TikTok video page URL or direct video URL")
    tiktok_video_id: Optional[str] = Field(None, description="TikTok video ID, if known")
    description: Optional[str] = None


class OperationLogEntry(BaseModel):
    """One step of the submission pipeline log."""
    timestamp: str
    level: str
    message: str
    step: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class SubmitVideoResponse(BaseModel):
    """Successful submission."""
    status: str = "success"
    submission_id: int
    public_url: str
    object_key: str
    size_bytes: int
    logs: List[OperationLogEntry]


class ErrorResponse(BaseModel):
    """Structured error, with the pipeline log when one exists."""
    status: str = "error"
    error_code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    logs: Optional[List[OperationLogEntry]] = None
