# sora_studio/storage.py
# Object storage for generated videos: local directory or S3-compatible bucket.
# Rows keep the object *path*; readers get short-lived signed URLs on demand.

import hashlib
import hmac
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from .config import settings
from .errors import NotFoundError, StorageConflictError, StorageError
from .logging_config import get_logger

logger = get_logger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"
THUMBNAIL_CONTENT_TYPE = "image/webp"


def video_key(openai_task_id: str) -> str:
    return f"{openai_task_id}.mp4"


def thumbnail_key(openai_task_id: str) -> str:
    return f"thumbnails/{openai_task_id}.webp"


def legacy_video_key(owner_id: str, now: Optional[datetime] = None) -> str:
    """Older layout: one folder per owner, file named after the upload time in ms."""
    ts = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    return f"{owner_id}/{ts}.mp4"


class Storage:
    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        raise NotImplementedError


# -------------------------------------------------------------------
# Local
# -------------------------------------------------------------------
class LocalStorage(Storage):
    """
    Files under `root`. Signed URLs point at /api/storage/<path> and carry an
    expiry timestamp plus an HMAC of (path, expiry).
    """

    def __init__(self, root: str | Path, secret: str, url_prefix: str = "/api/storage"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.secret = secret.encode("utf-8")
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageError(f"invalid storage path: {path}", status_code=400)
        return target

    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str:
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise StorageConflictError(f"object already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as f:
            f.write(data)
        logger.info("stored %s (%d bytes, %s)", path, len(data), content_type)
        return path

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def open_path(self, path: str) -> Path:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError("Object not found")
        return target

    def _signature(self, path: str, expires: int) -> str:
        return hmac.new(self.secret, f"{path}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.url_prefix}/{quote(path)}?{query}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)


# -------------------------------------------------------------------
# S3 / R2
# -------------------------------------------------------------------
class S3Storage(Storage):
    def __init__(self):
        # Lazy import to avoid hard dependency in local dev
        try:
            import boto3  # type: ignore
            from botocore.exceptions import ClientError  # type: ignore
        except Exception as e:
            raise RuntimeError("boto3 is required for S3 storage; install and set STORAGE_BACKEND=s3") from e

        if not settings.S3_BUCKET:
            raise RuntimeError("S3_BUCKET is required when STORAGE_BACKEND=s3")

        self._client_error = ClientError
        self.bucket = settings.S3_BUCKET
        session_kwargs = {}
        if settings.S3_REGION:
            session_kwargs["region_name"] = settings.S3_REGION
        s3_session = boto3.session.Session(**session_kwargs)
        client_kwargs = {}
        if settings.S3_ENDPOINT:
            client_kwargs["endpoint_url"] = settings.S3_ENDPOINT
        if settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY:
            client_kwargs["aws_access_key_id"] = settings.S3_ACCESS_KEY_ID
            client_kwargs["aws_secret_access_key"] = settings.S3_SECRET_ACCESS_KEY
        self.s3 = s3_session.client("s3", **client_kwargs)

    def exists(self, path: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=path)
            return True
        except self._client_error as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"s3 head_object failed: {e}") from e

    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str:
        if not upsert and self.exists(path):
            raise StorageConflictError(f"object already exists: {path}")
        try:
            self.s3.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except self._client_error as e:
            raise StorageError(f"s3 put_object failed: {e}") from e
        logger.info("stored s3://%s/%s (%d bytes)", self.bucket, path, len(data))
        return path

    def delete(self, path: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=path)
        except self._client_error as e:
            raise StorageError(f"s3 delete_object failed: {e}") from e

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except self._client_error as e:
            raise StorageError(f"could not sign url for {path}: {e}") from e


def build_storage() -> Storage:
    if (settings.STORAGE_BACKEND or "local").lower() == "s3":
        return S3Storage()
    return LocalStorage(settings.STORAGE_DIR, settings.SIGNING_SECRET)
