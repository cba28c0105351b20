"""S3 uploads and signed playback URLs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import require_storage_bucket, settings
from services.best_effort import BestEffort
from services.errors import UploadFailed

logger = logging.getLogger(__name__)


def _s3_client():
    return boto3.client(
        "s3",
        region_name=settings.AWS_REGION,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        config=Config(signature_version="s3v4"),
    )


def video_key(external_id: str) -> str:
    prefix = settings.S3_KEY_PREFIX.strip("/")
    return f"{prefix}/{external_id}/{external_id}.mp4" if prefix else f"{external_id}/{external_id}.mp4"


def object_url(key: str, bucket: Optional[str] = None) -> str:
    bucket = bucket or require_storage_bucket()
    return f"https://{bucket}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"


def key_from_url(storage_url: str) -> Optional[str]:
    """Extract the object key from a virtual-hosted or path-style S3 URL."""
    parsed = urlparse(storage_url or "")
    if not parsed.netloc:
        return None
    path = unquote(parsed.path.lstrip("/"))
    bucket = (settings.S3_BUCKET or "").strip()
    if bucket and parsed.netloc.startswith(f"{bucket}."):
        return path or None
    if bucket and path.startswith(f"{bucket}/"):
        return path[len(bucket) + 1:] or None
    return path or None


def delete_local_file(path: Optional[Path]) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove local file %s", path)


def _upload(local_path: str, key: str, content_type: str) -> str:
    bucket = require_storage_bucket()
    client = _s3_client()
    client.upload_file(local_path, bucket, key, ExtraArgs={"ContentType": content_type})
    return object_url(key, bucket)


async def upload_file(local_path: Path, key: str, content_type: str = "video/mp4") -> str:
    """Upload and return the object's URL. Deletes the local file only on success."""
    local_path = Path(local_path)
    try:
        url = await asyncio.to_thread(_upload, str(local_path), key, content_type)
    except (BotoCoreError, ClientError, OSError, ValueError) as exc:
        logger.error("Upload of %s to %s failed: %s", local_path, key, exc)
        raise UploadFailed(f"Upload to object storage failed: {exc}") from exc
    logger.info("Uploaded %s to %s", local_path.name, url)
    delete_local_file(local_path)
    return url


def _presign(key: str, ttl_seconds: int) -> str:
    client = _s3_client()
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": require_storage_bucket(), "Key": key},
        ExpiresIn=int(ttl_seconds),
    )


async def issue_signed_url(storage_url: str, ttl_seconds: Optional[int] = None) -> BestEffort[str]:
    """Time-limited GET URL; falls back to the unsigned URL on any signing failure."""
    ttl = settings.SIGNED_URL_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    key = key_from_url(storage_url)
    if not key:
        return BestEffort.fallback(storage_url, "Could not derive object key from URL")
    try:
        signed = await asyncio.to_thread(_presign, key, ttl)
    except Exception as exc:
        logger.warning("Signing %s failed, returning unsigned URL: %s", key, exc)
        return BestEffort.fallback(storage_url, exc)
    return BestEffort.ok(signed)
