"""
Object Store - uploads rendered PDFs to S3 and returns their public URL.

Small payloads go up in a single PutObject; payloads above the multipart
threshold use boto3's managed transfer with parallel parts. boto3 is
blocking, so uploads run in a worker thread to keep the event loop free.
"""

import asyncio
import logging
import re
import time
from io import BytesIO
from typing import Any, Awaitable, Callable, Dict, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from .errors import StoreError
from .queue.models import JobPayload

logger = logging.getLogger(__name__)

MB = 1024 * 1024
PDF_CONTENT_TYPE = "application/pdf"


def sanitize_for_path(text: str) -> str:
    """
    Sanitize text for use in an object key segment.

    Removes special characters (except word chars, spaces, hyphens)
    and replaces spaces with underscores.

    Example:
        >>> sanitize_for_path("Hotel Voucher (Goa)")
        "Hotel_Voucher__Goa_"
    """
    cleaned = re.sub(r'[^\w\s-]', '_', text)
    return cleaned.replace(" ", "_")


def build_storage_key(payload: JobPayload, timestamp_us: Optional[int] = None) -> str:
    """
    Derive the object key for a job's PDF.

    Layout:
        {category}/{doc_type}/{owner_id}/{file_name}-{timestamp}.pdf  (owner given)
        {category}/{file_name}-{timestamp}.pdf                        (no owner)

    The timestamp is epoch microseconds; with one worker rendering at a
    time it keeps keys unique per job.
    """
    if timestamp_us is None:
        timestamp_us = time.time_ns() // 1000

    filename = f"{sanitize_for_path(payload.file_name)}-{timestamp_us}.pdf"
    if payload.owner_id:
        doc_type = sanitize_for_path(payload.doc_type or "document")
        owner = sanitize_for_path(payload.owner_id)
        return f"{payload.category}/{doc_type}/{owner}/{filename}"
    return f"{payload.category}/{filename}"


def build_s3_client(settings):
    """Create the process-wide S3 client."""
    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": 2, "mode": "standard"},
        connect_timeout=10,
        read_timeout=60,
        max_pool_connections=settings.multipart_concurrency * 2,
    )
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        config=config,
    )


class ObjectStore:
    """
    Object Store Collaborator: bytes + key in, public URL out.

    The returned URL is always built from configuration, never from the
    S3 response: https://{cdn_url}/{key} when a CDN is configured,
    otherwise https://{bucket}.s3.{region}.amazonaws.com/{key}.
    """

    def __init__(
        self,
        client,
        bucket: str,
        region: str,
        cdn_url: Optional[str] = None,
        acl: Optional[str] = "public-read",
        multipart_threshold: int = 5 * MB,
        multipart_concurrency: int = 4,
        retries: int = 3,
        retry_base_ms: int = 1500,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.bucket = bucket
        self.region = region
        self.cdn_url = cdn_url
        self.acl = acl or None
        self.multipart_threshold = multipart_threshold
        self.multipart_concurrency = multipart_concurrency
        self.retries = retries
        self.retry_base_ms = retry_base_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, client=None) -> "ObjectStore":
        if not settings.s3_bucket:
            logger.warning("S3_BUCKET not configured, uploads will fail")
        return cls(
            client=client if client is not None else build_s3_client(settings),
            bucket=settings.s3_bucket or "",
            region=settings.aws_region,
            cdn_url=settings.cdn_url,
            acl=settings.s3_object_acl,
            multipart_threshold=settings.multipart_threshold_bytes,
            multipart_concurrency=settings.multipart_concurrency,
            retries=settings.upload_retries,
            retry_base_ms=settings.upload_retry_base_ms,
        )

    def public_url(self, key: str) -> str:
        """Build the public URL for an object key."""
        if self.cdn_url:
            return f"https://{self.cdn_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def store(self, buffer: bytes, key: str) -> str:
        """
        Upload a PDF and return its public URL.

        Args:
            buffer: PDF bytes
            key: Object key

        Returns:
            Public URL of the stored object

        Raises:
            StoreError: When every upload attempt failed
        """
        attempt = 0
        try:
            async for attempt_state in AsyncRetrying(
                stop=stop_after_attempt(self.retries),
                wait=wait_exponential(multiplier=self.retry_base_ms / 1000),
                before_sleep=self._log_retry,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    logger.info(f"Uploading PDF to S3 ({attempt}/{self.retries}) -> {key}")
                    await asyncio.to_thread(self._upload, buffer, key)
        except Exception as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StoreError(
                f"S3 upload failed after {attempt} attempts → {e}", key=key, attempts=attempt
            ) from e

        url = self.public_url(key)
        logger.info(f"Upload successful: {url}")
        return url

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Upload attempt {retry_state.attempt_number} failed: {error}. "
            f"Retrying in {delay:.1f}s"
        )

    def _extra_args(self) -> Dict[str, str]:
        extra = {
            "ContentType": PDF_CONTENT_TYPE,
            "ServerSideEncryption": "AES256",
        }
        if self.acl:
            extra["ACL"] = self.acl
        return extra

    def _upload(self, buffer: bytes, key: str) -> None:
        if len(buffer) > self.multipart_threshold:
            self._upload_multipart(buffer, key)
        else:
            self._upload_single(buffer, key)

    def _upload_single(self, buffer: bytes, key: str) -> None:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=buffer, **self._extra_args())

    def _upload_multipart(self, buffer: bytes, key: str) -> None:
        logger.info(f"Using multipart upload for {len(buffer)} bytes")
        transfer_config = TransferConfig(
            multipart_threshold=self.multipart_threshold,
            multipart_chunksize=self.multipart_threshold,
            max_concurrency=self.multipart_concurrency,
        )
        self.client.upload_fileobj(
            BytesIO(buffer),
            self.bucket,
            key,
            ExtraArgs=self._extra_args(),
            Config=transfer_config,
        )
