"""Contest video submission pipeline."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crown.models.submission import StoredMedia, VideoSubmission
from crown.services.downloader import StreamingDownloader
from crown.services.operation_log import OperationLog
from crown.services.storage import DEFAULT_CONTENT_TYPE, StorageUploader, build_object_key
from crown.services.video_resolver import VideoUrlResolver
from crown.utils.exceptions import (
    CrownError,
    DownloadError,
    SizeExceededError,
    SubmissionFailedError,
)

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """Outcome of a successful submission."""
    submission_id: int
    public_url: str
    object_key: str
    size_bytes: int
    logs: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "public_url": self.public_url,
            "object_key": self.object_key,
            "size_bytes": self.size_bytes,
            "logs": self.logs,
        }


class SubmissionService:
    """
    Re-hosts a submitted TikTok video and records the submission.

    Steps run strictly in order: resolve, download, validate, upload,
    persist. Once a storage key has been minted, any failure triggers a
    best-effort delete of that key. The operation log is returned on
    success and attached to the raised error on failure.
    """

    def __init__(
        self,
        db: AsyncSession,
        resolver: Optional[VideoUrlResolver] = None,
        downloader: Optional[StreamingDownloader] = None,
        uploader: Optional[StorageUploader] = None,
    ):
        self.db = db
        self.resolver = resolver or VideoUrlResolver()
        self.downloader = downloader or StreamingDownloader()
        self.uploader = uploader or StorageUploader()

    async def submit(
        self,
        user_id: str,
        contest_id: str,
        video_url: str,
        tiktok_video_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SubmissionResult:
        log = OperationLog(context=f"contest {contest_id}")
        log.info(
            f"Starting video submission for URL: {video_url}",
            step="initialization",
            details={"user_id": user_id, "contest_id": contest_id, "tiktok_video_id": tiktok_video_id},
        )
        object_key: Optional[str] = None

        try:
            try:
                resolved = self.resolver.resolve(video_url)
            except ValueError as exc:
                raise CrownError(str(exc), error_code="INVALID_URL", status_code=400) from exc
            if resolved.warning:
                log.warn(resolved.warning, step="resolve")

            media_url = video_url
            if resolved.is_page_url:
                log.info("Extracting video URL from TikTok page", step="resolve", details={"page_url": video_url})
                media_url = await self.resolver.extract_actual_url(video_url)
            log.success("Resolved video URL", step="resolve", details={"media_url": media_url})

            try:
                object_key = build_object_key(user_id, tiktok_video_id or resolved.video_id)
            except ValueError as exc:
                raise CrownError(str(exc), error_code="INVALID_OWNER", status_code=400) from exc
            log.info(f"Generated storage key: {object_key}", step="key")

            log.info("Downloading video", step="download", details={"media_url": media_url})
            media = await self.downloader.fetch(media_url, log)
            log.success(
                f"Downloaded {media.size_bytes} bytes in {media.duration_seconds:.2f}s",
                step="download",
            )

            if media.size_bytes == 0:
                raise DownloadError("No video data received from URL")
            if media.size_bytes > self.uploader.max_bytes:
                raise SizeExceededError(media.size_bytes, self.uploader.max_bytes)
            log.success("Video size validated", step="validate", details={"size_bytes": media.size_bytes})

            content_type = media.content_type if media.content_type and "video/" in media.content_type else DEFAULT_CONTENT_TYPE
            log.info("Uploading to storage", step="upload", details={"key": object_key})
            public_url = await self.uploader.store(media.content, object_key, content_type)
            log.success("Uploaded to storage", step="upload", details={"public_url": public_url})

            submission = await self._persist(
                user_id=user_id,
                contest_id=contest_id,
                video_url=video_url,
                tiktok_video_id=tiktok_video_id or resolved.video_id,
                description=description,
                object_key=object_key,
                public_url=public_url,
                size_bytes=media.size_bytes,
                content_type=content_type,
            )
            log.success("Submission recorded", step="persist", details={"submission_id": submission.id})
        except Exception as exc:
            cause = exc if isinstance(exc, CrownError) else CrownError(
                f"Video submission failed: {exc}", error_code="SUBMISSION_FAILED"
            )
            log.error(f"Video submission failed: {cause.message}", step="error", details={"error_code": cause.error_code})
            if object_key:
                await self._cleanup(object_key, log)
            raise SubmissionFailedError(cause, log.to_list()) from exc

        log.success("Video submission completed", step="completion", details={"public_url": public_url})
        return SubmissionResult(
            submission_id=submission.id,
            public_url=public_url,
            object_key=object_key,
            size_bytes=media.size_bytes,
            logs=log.to_list(),
        )

    async def _persist(
        self,
        user_id: str,
        contest_id: str,
        video_url: str,
        tiktok_video_id: Optional[str],
        description: Optional[str],
        object_key: str,
        public_url: str,
        size_bytes: int,
        content_type: str,
    ) -> VideoSubmission:
        submission = VideoSubmission(
            contest_id=contest_id,
            user_id=user_id,
            source_url=video_url,
            tiktok_video_id=tiktok_video_id,
            description=description,
        )
        submission.media = StoredMedia(
            object_key=object_key,
            public_url=public_url,
            size_bytes=size_bytes,
            content_type=content_type,
        )
        try:
            self.db.add(submission)
            await self.db.flush()
        except SQLAlchemyError as exc:
            raise CrownError(
                "Failed to record the submission",
                error_code="PERSISTENCE_FAILED",
                details={"key": object_key},
            ) from exc
        return submission

    async def _cleanup(self, object_key: str, log: OperationLog) -> None:
        """Best-effort delete; a failure here is logged and never replaces the original error."""
        log.info(f"Attempting to clean up failed upload: {object_key}", step="cleanup")
        try:
            await self.uploader.delete(object_key)
        except Exception as exc:
            log.warn(f"Failed to clean up {object_key}: {exc}", step="cleanup")
            return
        log.success(f"Cleaned up failed upload: {object_key}", step="cleanup")
