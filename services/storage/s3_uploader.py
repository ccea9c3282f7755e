"""Re-host generated images in an S3-compatible bucket."""

from __future__ import annotations

import logging
import random
import string
import time
from typing import Any, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from utils.errors import StorageUploadError
from utils.media_validation import extension_for_content_type, resolve_content_type
from utils.settings import S3Settings

LOGGER = logging.getLogger(__name__)

_KEY_ALPHABET = string.digits + string.ascii_lowercase


def _random_suffix(length: int = 8) -> str:
    return "".join(random.choice(_KEY_ALPHABET) for _ in range(length))


class S3Uploader:
    """Download an artifact from the engine and publish it in the bucket."""

    def __init__(self, settings: S3Settings, s3_client: Any = None, http: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = s3_client or boto3.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint,
            aws_access_key_id=settings.access_key_id,
            aws_secret_access_key=settings.secret_access_key,
        )
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=60.0, follow_redirects=True)
        LOGGER.info("S3 client initialized successfully")

    def build_key(self, content_type: str) -> str:
        """Return `<prefix><epoch ms>-<random><ext>` for a new object."""
        timestamp = int(time.time() * 1000)
        return f"{self.settings.key_prefix}{timestamp}-{_random_suffix()}{extension_for_content_type(content_type)}"

    def public_url(self, key: str) -> str:
        return f"{self.settings.public_endpoint}/{key}"

    async def upload_from_url(self, image_url: str) -> str:
        """Copy the image at `image_url` into the bucket and return its public URL.

        Raises:
            StorageUploadError: On any download, network, auth or policy failure.
        """
        try:
            response = await self._http.get(image_url)
        except httpx.HTTPError as exc:
            raise StorageUploadError(f"Failed to download image: {exc}") from exc
        if response.status_code >= 400:
            raise StorageUploadError(f"Failed to download image: {response.status_code}")

        body = response.content
        content_type = resolve_content_type(response.headers.get("content-type"), body)
        key = self.build_key(content_type)
        try:
            await run_in_threadpool(
                self._client.put_object,
                Bucket=self.settings.bucket_name,
                Key=key,
                Body=body,
                ContentType=content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUploadError(f"Failed to upload image to bucket {self.settings.bucket_name}: {exc}") from exc
        return self.public_url(key)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
