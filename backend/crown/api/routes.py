"""API routes."""
import html
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crown.config import settings
from crown.db.database import get_db
from crown.api.dependencies import get_current_user, get_user_token
from crown.api.schemas import (
    AuthInitiateRequest,
    AuthUrlResponse,
    ErrorResponse,
    HealthResponse,
    LinkedAccountResponse,
    SessionValidationResponse,
    SetPrimaryAccountRequest,
    SubmitVideoRequest,
    SubmitVideoResponse,
    TikTokProfileResponse,
    VideoListRequest,
    VideoListResponse,
)
from crown.models.linked_account import LinkedAccount
from crown.services.auth_flow import AuthorizationFlowManager
from crown.services.creator_service import CreatorService
from crown.services.identity_service import IdentityService, PlatformUser
from crown.services.linked_account_service import LinkedAccountService
from crown.services.submission_service import SubmissionService
from crown.services.tiktok_api import ApiSuccess, TikTokApiClient
from crown.services.token_exchange import TokenPair
from crown.utils.exceptions import AccountLinkError, CrownError, SubmissionFailedError

router = APIRouter()
logger = logging.getLogger(__name__)


def _error_response(error: CrownError) -> JSONResponse:
    """Render a CrownError as the structured error body."""
    payload = ErrorResponse(
        error_code=error.error_code,
        message=error.user_message,
        details=error.details,
        logs=error.logs if isinstance(error, SubmissionFailedError) else None,
    )
    return JSONResponse(status_code=error.status_code, content=payload.model_dump(exclude_none=True))


def _account_to_response(account: LinkedAccount) -> LinkedAccountResponse:
    return LinkedAccountResponse(**account.to_dict())


def _callback_page(title: str, message: str, success: bool) -> HTMLResponse:
    """Popup page that reports the result to the opener window and closes itself."""
    status = "success" if success else "error"
    body = f"""<!DOCTYPE html>
<html>
<head><title>{html.escape(title)}</title><meta charset="utf-8"></head>
<body>
  <h2>{html.escape(title)}</h2>
  <p>{html.escape(message)}</p>
  <script>
    if (window.opener) {{
      window.opener.postMessage({{ type: "tiktok-auth", status: "{status}" }}, "{settings.frontend_url}");
    }}
    setTimeout(function () {{ window.close(); }}, {1500 if success else 3000});
  </script>
</body>
</html>"""
    return HTMLResponse(content=body, status_code=200 if success else 400)


# =============================================================================
# Health
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check API health and third-party configuration."""
    missing = []
    if not settings.tiktok_configured:
        missing.append("TikTok client key/secret")
    if not settings.supabase_configured:
        missing.append("Supabase URL/service role key")

    return HealthResponse(
        status="healthy" if not missing else "degraded",
        tiktok_configured=settings.tiktok_configured,
        supabase_configured=settings.supabase_configured,
        storage_backend="supabase" if settings.supabase_configured else "local",
        message=f"Not configured: {', '.join(missing)}" if missing else None,
    )


# =============================================================================
# TikTok Authorization
# =============================================================================

@router.get("/tiktok/auth")
async def tiktok_auth_redirect(
    emphasize_video_permissions: bool = Query(False),
    user_token: Optional[str] = Depends(get_user_token),
):
    """Redirect the browser to TikTok's consent screen."""
    try:
        auth_url = AuthorizationFlowManager().begin(user_token, emphasize_video_permissions)
    except CrownError as e:
        return _error_response(e)
    return RedirectResponse(auth_url, status_code=302)


@router.post("/tiktok/auth/initiate", response_model=AuthUrlResponse)
async def tiktok_auth_initiate(
    data: AuthInitiateRequest,
    user_token: Optional[str] = Depends(get_user_token),
):
    """Return the TikTok authorization URL for a popup flow."""
    try:
        auth_url = AuthorizationFlowManager().begin(user_token, data.emphasize_video_permissions)
        return AuthUrlResponse(auth_url=auth_url)
    except CrownError as e:
        return _error_response(e)


async def _fetch_tiktok_profile(token_pair: TokenPair) -> dict:
    """Full profile, falling back to the basic profile, then to the token's open_id."""
    client = TikTokApiClient()
    for fetch in (client.get_user_info, client.get_basic_user_info):
        try:
            result = await fetch(token_pair.access_token)
        except CrownError as e:
            logger.warning("TikTok profile lookup failed: %s", e)
            continue
        if isinstance(result, ApiSuccess) and result.data.get("user"):
            return result.data["user"]
        logger.warning("TikTok profile lookup returned %s", type(result).__name__)
    return {"open_id": token_pair.open_id} if token_pair.open_id else {}


@router.get("/tiktok/auth/callback")
async def tiktok_auth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Complete the TikTok authorization and link the account to the user."""
    try:
        result = await AuthorizationFlowManager().complete(code, state, error, error_description)
        user = await IdentityService().resolve_optional(result.user_token)
        if not user:
            raise AccountLinkError("No logged-in user to link the TikTok account to", error_code="USER_REQUIRED", status_code=401)

        profile = await _fetch_tiktok_profile(result.token_pair)
        account = await LinkedAccountService(db).link_account(user.id, result.token_pair, profile)
    except CrownError as e:
        logger.warning("TikTok callback failed: %s", e)
        return _callback_page("TikTok Connection Error", e.user_message, success=False)

    logger.info("TikTok account %s connected for user %s", account.external_account_id, account.user_id)
    return _callback_page("TikTok Connected Successfully!", "This window will close automatically...", success=True)


# =============================================================================
# TikTok Profile & Videos
# =============================================================================

@router.get("/tiktok/profile", response_model=TikTokProfileResponse)
async def get_tiktok_profile(
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the live profile of the user's primary TikTok account."""
    service = CreatorService(LinkedAccountService(db))
    try:
        return TikTokProfileResponse(**await service.get_profile(user.id))
    except CrownError as e:
        return _error_response(e)


@router.post("/tiktok/videos", response_model=VideoListResponse)
async def list_tiktok_videos(
    data: VideoListRequest,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List videos of the user's primary TikTok account."""
    service = CreatorService(LinkedAccountService(db))
    try:
        return VideoListResponse(**await service.list_videos(user.id, data.cursor, data.max_count))
    except CrownError as e:
        return _error_response(e)


@router.get("/tiktok/videos/{video_id}")
async def get_tiktok_video(
    video_id: str,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get details of one TikTok video."""
    service = CreatorService(LinkedAccountService(db))
    try:
        return await service.get_video(user.id, video_id)
    except CrownError as e:
        return _error_response(e)


# =============================================================================
# Linked Accounts
# =============================================================================

@router.get("/tiktok/accounts", response_model=List[LinkedAccountResponse])
async def list_tiktok_accounts(
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the user's linked TikTok accounts, primary first."""
    service = LinkedAccountService(db)
    await service.get_primary(user.id)
    accounts = await service.list_accounts(user.id)
    return [_account_to_response(a) for a in accounts]


@router.post("/tiktok/accounts/primary", response_model=LinkedAccountResponse)
async def set_primary_tiktok_account(
    data: SetPrimaryAccountRequest,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Make one linked account the primary account."""
    service = LinkedAccountService(db)
    try:
        account = await service.set_primary(user.id, data.account_id)
        return _account_to_response(account)
    except CrownError as e:
        return _error_response(e)


@router.get("/tiktok/accounts/{account_id}/validate", response_model=SessionValidationResponse)
async def validate_tiktok_account(
    account_id: int,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Check whether a linked account's access token is still accepted."""
    service = CreatorService(LinkedAccountService(db))
    try:
        return SessionValidationResponse(**await service.validate_session(user.id, account_id))
    except CrownError as e:
        return _error_response(e)


@router.delete("/tiktok/accounts/{account_id}")
async def delete_tiktok_account(
    account_id: int,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Unlink one TikTok account."""
    service = LinkedAccountService(db)
    try:
        await service.delete_account(user.id, account_id)
    except CrownError as e:
        return _error_response(e)
    return {"status": "success", "message": "TikTok account removed"}


@router.delete("/tiktok/profile")
async def disconnect_tiktok(
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Unlink every TikTok account of the user."""
    removed = await LinkedAccountService(db).disconnect(user.id)
    return {"status": "success", "message": "TikTok disconnected", "removed": removed}


# =============================================================================
# Contest Submissions
# =============================================================================

@router.post("/contests/{contest_id}/submit-video", response_model=SubmitVideoResponse)
async def submit_contest_video(
    contest_id: str,
    data: SubmitVideoRequest,
    user: PlatformUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Re-host a TikTok video and record it as a contest submission.

    The response carries the pipeline log on success and on failure.
    """
    if not data.video_url.strip():
        raise HTTPException(status_code=400, detail="video_url is required")

    service = SubmissionService(db)
    try:
        result = await service.submit(
            user_id=user.id,
            contest_id=contest_id,
            video_url=data.video_url.strip(),
            tiktok_video_id=data.tiktok_video_id,
            description=data.description,
        )
    except SubmissionFailedError as e:
        logger.warning("Submission to contest %s failed: %s", contest_id, e.error_code)
        await db.rollback()
        return _error_response(e)

    return SubmitVideoResponse(**result.to_dict())
