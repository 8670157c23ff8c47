import asyncio
import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

import boto3
import httpx
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


@dataclass
class StoredObject:
    public_url: str
    key: str


class StorageService:
    """Copies provider outputs into the bucket so result URLs outlive the provider's."""

    def __init__(self):
        self.endpoint_url = settings.S3_ENDPOINT
        self.public_endpoint = settings.S3_PUBLIC_ENDPOINT or self.endpoint_url
        self.bucket = settings.S3_BUCKET
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def _generate_key(self, key_prefix: str, extension: str = "") -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"{key_prefix.strip('/')}/{timestamp}_{uuid.uuid4().hex[:12]}{extension}"

    def public_url(self, key: str) -> str:
        return f"{self.public_endpoint.rstrip('/')}/{self.bucket}/{key}"

    async def put_from_bytes(
        self,
        data: bytes,
        key_prefix: str,
        content_type: str = "application/octet-stream",
        extension: Optional[str] = None,
    ) -> StoredObject:
        if not extension:
            extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ""
        key = self._generate_key(key_prefix, extension)

        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"uploaded_at": datetime.now(timezone.utc).isoformat()},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

        logger.info("[Storage] Stored %s (%d bytes)", key, len(data))
        return StoredObject(public_url=self.public_url(key), key=key)

    async def put_from_url(self, url: str, key_prefix: str) -> StoredObject:
        try:
            async with httpx.AsyncClient(timeout=120.0, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Download of {url} failed: {e}") from e

        content_type = response.headers.get("content-type", "application/octet-stream")
        extension = os.path.splitext(urlparse(url).path)[1].lower()
        return await self.put_from_bytes(response.content, key_prefix, content_type, extension=extension)

    async def rehost_outputs(self, outputs: list, key_prefix: str) -> list[str]:
        """Copy provider output URLs into the bucket.

        An output that cannot be copied keeps its provider URL; losing the
        copy must not lose the generation.
        """
        urls = []
        for output in outputs or []:
            if not isinstance(output, str) or not output.startswith(("http://", "https://")):
                continue
            try:
                stored = await self.put_from_url(output, key_prefix)
                urls.append(stored.public_url)
            except StorageError:
                logger.warning("[Storage] Keeping provider URL for %s", output, exc_info=True)
                urls.append(output)
        return urls


storage_service = StorageService()
