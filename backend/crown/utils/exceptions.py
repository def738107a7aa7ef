"""Crown error taxonomy with API-friendly metadata."""

from typing import Any, Dict, List, Optional


class CrownError(Exception):
    """Base exception for Crown errors carrying an error code and HTTP status."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        # Message safe to show to end users
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.user_message,
            "details": self.details,
        }


# =============================================================================
# CONFIGURATION
# =============================================================================

class ConfigurationError(CrownError):
    """Raised when third-party credentials are missing."""

    def __init__(self, message: str = "TikTok integration is not configured"):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            status_code=500,
            user_message="TikTok integration is not configured. Please contact support.",
        )


# =============================================================================
# AUTHORIZATION / CREDENTIALS
# =============================================================================

class AuthExchangeError(CrownError):
    """Raised when the token endpoint rejects an authorization code or verifier."""

    def __init__(self, message: str = "Authorization code exchange failed"):
        super().__init__(
            message=message,
            error_code="AUTH_EXCHANGE_FAILED",
            status_code=400,
            user_message="TikTok authentication failed",
        )


class TokenRefreshError(CrownError):
    """Raised when a refresh token is rejected; the user must re-authorize."""

    def __init__(self, message: str = "Failed to refresh token - re-authorization required"):
        super().__init__(
            message=message,
            error_code="TOKEN_REFRESH_FAILED",
            status_code=401,
            user_message="Your TikTok session has expired. Please reconnect your TikTok account.",
        )


class ScopePermissionError(CrownError):
    """Raised when the account owner did not grant a required scope."""

    def __init__(self, scope: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"TikTok scope '{scope}' was not granted",
            error_code="PERMISSION_DENIED",
            status_code=403,
            details={"scope": scope},
            user_message=(
                "TikTok video access permission not granted. "
                "Please reconnect your TikTok account with video permissions."
            ),
        )


class ApiAuthenticationError(CrownError):
    """Raised when the metadata API keeps rejecting the access token."""

    def __init__(self, message: str = "TikTok access token is invalid"):
        super().__init__(
            message=message,
            error_code="UNAUTHORIZED",
            status_code=401,
            user_message="TikTok account authentication failed. Please reconnect the account.",
        )


class AuthenticationError(CrownError):
    """Raised when the platform user's session token cannot be verified."""

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_REQUIRED",
            status_code=401,
            user_message="Please sign in again.",
        )


class OAuthCallbackError(CrownError):
    """Raised when the authorization callback carries an error or no code."""

    def __init__(self, message: str, error_code: str = "OAUTH_CALLBACK_ERROR"):
        super().__init__(message=message, error_code=error_code, status_code=400)


class AccountLinkError(CrownError):
    """Raised when a TikTok account cannot be linked to the requesting user."""

    def __init__(self, message: str, error_code: str = "ACCOUNT_LINK_FAILED", status_code: int = 409):
        super().__init__(message=message, error_code=error_code, status_code=status_code)


class NotFoundError(CrownError):
    """Raised when a requested resource does not exist."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message=message, error_code="NOT_FOUND", status_code=404)


class UpstreamError(CrownError):
    """Raised when a third-party service is unreachable or answers unexpectedly."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="UPSTREAM_ERROR",
            status_code=502,
            details=details,
        )


# =============================================================================
# MEDIA PIPELINE
# =============================================================================

class ExtractionError(CrownError):
    """Raised when no media URL can be extracted from a content page."""

    def __init__(self, page_url: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Could not extract a video URL from page: {page_url}",
            error_code="EXTRACTION_FAILED",
            status_code=422,
            details={"page_url": page_url},
        )


class DownloadError(CrownError):
    """Raised when the media host refuses or fails the fetch."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="DOWNLOAD_FAILED",
            status_code=502,
            details={"upstream_status": status} if status is not None else None,
        )


class SizeExceededError(CrownError):
    """Raised when media exceeds the size ceiling."""

    def __init__(self, size_bytes: int, max_bytes: int):
        size_mb = size_bytes / (1024 * 1024)
        max_mb = max_bytes / (1024 * 1024)
        super().__init__(
            message=f"Video file too large: {size_mb:.2f}MB (max: {max_mb:.2f}MB)",
            error_code="SIZE_EXCEEDED",
            status_code=413,
            details={"size_bytes": size_bytes, "max_bytes": max_bytes},
        )


class DownloadTimeoutError(CrownError):
    """Raised when a media fetch exceeds its wall-clock bound."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            message=(
                f"Video download timed out after {timeout_seconds:g}s - "
                "the video may be too large or the server is slow"
            ),
            error_code="DOWNLOAD_TIMEOUT",
            status_code=504,
            details={"timeout_seconds": timeout_seconds},
        )


class StorageError(CrownError):
    """Raised when durable storage rejects an operation."""

    def __init__(self, message: str, key: Optional[str] = None, error_code: str = "STORAGE_FAILED"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=500,
            details={"key": key} if key else None,
        )


class SubmissionFailedError(CrownError):
    """Raised by the submission pipeline; carries the cause and the operation log."""

    def __init__(self, cause: CrownError, logs: List[Dict[str, Any]]):
        super().__init__(
            message=cause.message,
            error_code=cause.error_code,
            status_code=cause.status_code,
            details=cause.details,
            user_message=cause.user_message,
        )
        self.cause = cause
        self.logs = logs

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["logs"] = self.logs
        return payload
