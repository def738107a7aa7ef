"""Durable object storage for re-hosted submission videos."""
import asyncio
import logging
import re
import time
import uuid
from pathlib import Path
from typing import List, Optional, Protocol

from crown.config import settings
from crown.services.supabase_client import get_supabase
from crown.utils.exceptions import SizeExceededError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "video/mp4"

_KEY_SEGMENT = re.compile(r"[A-Za-z0-9_-]{1,128}")


def build_object_key(owner_id: str, content_id: Optional[str], extension: str = "mp4") -> str:
    """
    Mint a storage key under the owner/content namespace with a random suffix.

    Raises ValueError for an owner id that is not a single safe path segment.
    An unsafe content id is replaced with ``video``.
    """
    owner = str(owner_id or "")
    if not _KEY_SEGMENT.fullmatch(owner):
        raise ValueError(f"Invalid storage owner id: {owner_id!r}")
    content = str(content_id or "")
    if not _KEY_SEGMENT.fullmatch(content):
        if content:
            logger.warning("Unsafe content id %r in storage key; using 'video'", content_id)
        content = "video"
    return f"{owner}/{content}/{int(time.time() * 1000)}_{uuid.uuid4().hex}.{extension}"


class StorageBackend(Protocol):
    async def upload(self, key: str, data: bytes, content_type: str) -> None: ...

    def public_url(self, key: str) -> str: ...

    async def delete(self, key: str) -> None: ...


class SupabaseStorageBackend:
    """Supabase Storage bucket; blocking client calls run in the default executor."""

    def __init__(self, bucket: Optional[str] = None, timeout_seconds: Optional[float] = None, client=None):
        self.bucket = bucket or settings.storage_bucket
        self.timeout_seconds = timeout_seconds or settings.storage_timeout_seconds
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, func, *args), timeout=self.timeout_seconds)

    async def verify_bucket(self) -> None:
        """Check that the configured bucket exists."""
        try:
            buckets = await self._run(self.client.storage.list_buckets)
        except asyncio.TimeoutError as exc:
            raise StorageError("Timed out listing storage buckets") from exc
        except Exception as exc:
            raise StorageError(f"Bucket verification failed: {exc}") from exc

        names: List[str] = [getattr(b, "name", None) or getattr(b, "id", "") for b in buckets or []]
        if self.bucket not in names:
            raise StorageError(
                f"Bucket '{self.bucket}' does not exist. Available buckets: {', '.join(names)}",
                error_code="BUCKET_MISSING",
            )

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        def _blocking_upload():
            self.client.storage.from_(self.bucket).upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "false"},
            )

        try:
            await self._run(_blocking_upload)
        except asyncio.TimeoutError as exc:
            raise StorageError(f"Upload timed out after {self.timeout_seconds:g}s", key=key) from exc
        except Exception as exc:
            message = str(exc)
            if "already exists" in message.lower() or "duplicate" in message.lower():
                raise StorageError(f"Storage key collision: {key}", key=key, error_code="STORAGE_KEY_COLLISION") from exc
            raise StorageError(f"Upload failed: {message}", key=key) from exc

    def public_url(self, key: str) -> str:
        url = self.client.storage.from_(self.bucket).get_public_url(key)
        if not url:
            raise StorageError("Failed to get public URL", key=key)
        return url

    async def delete(self, key: str) -> None:
        try:
            await self._run(self.client.storage.from_(self.bucket).remove, [key])
        except asyncio.TimeoutError as exc:
            raise StorageError(f"Delete timed out for {key}", key=key) from exc
        except Exception as exc:
            raise StorageError(f"Delete failed: {exc}", key=key) from exc


class LocalStorageBackend:
    """Filesystem storage used when Supabase is not configured."""

    def __init__(self, root: Optional[Path] = None, public_base_url: Optional[str] = None):
        self.root = Path(root or settings.local_storage_dir)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}", key=key)
        return path

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # "xb" refuses to overwrite an existing object
            with open(path, "xb") as handle:
                handle.write(data)
        except FileExistsError as exc:
            raise StorageError(f"Storage key collision: {key}", key=key, error_code="STORAGE_KEY_COLLISION") from exc
        except OSError as exc:
            raise StorageError(f"Upload failed: {exc}", key=key) from exc

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {key}", key=key, error_code="STORAGE_NOT_FOUND") from exc
        except OSError as exc:
            raise StorageError(f"Delete failed: {exc}", key=key) from exc


def default_backend() -> StorageBackend:
    """Supabase when configured, else local files."""
    if settings.supabase_configured:
        return SupabaseStorageBackend()
    logger.warning("Supabase is not configured; storing videos under %s", settings.local_storage_dir)
    return LocalStorageBackend()


class StorageUploader:
    """Non-overwriting uploads with compensating delete."""

    def __init__(self, backend: Optional[StorageBackend] = None, max_bytes: Optional[int] = None):
        self.backend = backend or default_backend()
        self.max_bytes = max_bytes or settings.max_video_bytes

    async def store(self, buffer: bytes, key: str, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        """Upload ``buffer`` under ``key`` and return its public URL."""
        if not buffer:
            raise StorageError("Video buffer is empty - no data received", key=key, error_code="EMPTY_MEDIA")
        if len(buffer) > self.max_bytes:
            raise SizeExceededError(len(buffer), self.max_bytes)

        await self.backend.upload(key, buffer, content_type)
        public_url = self.backend.public_url(key)
        if not public_url:
            raise StorageError("Upload succeeded but no public URL was returned", key=key)
        logger.info("Stored %s bytes at %s", len(buffer), key)
        return public_url

    async def delete(self, key: str) -> None:
        """Remove an object; used only to clean up after a failed submission."""
        await self.backend.delete(key)
        logger.info("Deleted stored object %s", key)
