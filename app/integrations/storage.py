"""
S3-compatible object storage for uploaded legacy archives.

Archives are stored under ``<legacy_import_folder>/<tenant_id>/`` with a
random prefix so re-uploading the same export never overwrites the archive
an earlier session still points at. Works with Backblaze B2, AWS S3 and
MinIO through boto3.
"""
import logging
import uuid
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"


class StorageError(Exception):
    """Base exception for storage operations."""


class StorageConnectionError(StorageError):
    """Storage is not configured or the client cannot be built."""


class StorageUploadError(StorageError):
    pass


class StorageDownloadError(StorageError):
    pass


def get_storage_client():
    """
    Build the boto3 S3 client for the configured provider.

    Raises:
        StorageConnectionError: If storage configuration is incomplete or the client cannot be built
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConnectionError(
            "Storage configuration is incomplete. Set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY and STORAGE_BUCKET_NAME."
        )

    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": Config(
            signature_version="s3v4",
            retries={"max_attempts": settings.storage_max_retries, "mode": "standard"},
        ),
    }
    # Non-AWS providers need an explicit endpoint
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {e}")


def archive_key(tenant_id: str, archive_name: str) -> str:
    """Object key for a new upload of ``archive_name`` by ``tenant_id``."""
    safe_name = archive_name.replace("\\", "/").rsplit("/", 1)[-1] or "archive.zip"
    return f"{settings.legacy_import_folder}/{tenant_id}/{uuid.uuid4().hex}_{safe_name}"


def store_archive(tenant_id: str, archive_name: str, content: bytes) -> Dict[str, Any]:
    """
    Upload an archive for a tenant.

    Returns:
        ``{"storage_path", "etag", "size"}``

    Raises:
        StorageError: If storage is unavailable or refuses the upload
    """
    client = get_storage_client()
    key = archive_key(tenant_id, archive_name)
    try:
        response = client.put_object(
            Bucket=settings.storage_bucket_name,
            Key=key,
            Body=content,
            ContentType=ZIP_CONTENT_TYPE,
            Metadata={"tenant-id": tenant_id},
        )
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Archive upload failed for '{key}': {e}")
        raise StorageUploadError(f"Upload failed: {e}")

    logger.info(f"Stored archive '{archive_name}' for tenant {tenant_id} at '{key}' ({len(content)} bytes)")
    return {
        "storage_path": key,
        "etag": response.get("ETag", "").strip('"'),
        "size": len(content),
    }


def fetch_archive(storage_path: str) -> bytes:
    """
    Download a stored archive.

    Raises:
        StorageDownloadError: The object is missing or the download failed
    """
    client = get_storage_client()
    try:
        response = client.get_object(Bucket=settings.storage_bucket_name, Key=storage_path)
        return response["Body"].read()
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        if error_code in ("NoSuchKey", "404"):
            raise StorageDownloadError(f"Archive not found: {storage_path}")
        logger.error(f"Archive download failed: {error_code} - {e}")
        raise StorageDownloadError(f"Download failed: {e}")
    except BotoCoreError as e:
        logger.error(f"Archive download failed: {e}")
        raise StorageDownloadError(f"Download failed: {e}")
