"""
Blob Storage - Signed Upload URLs
=================================
Clients upload order attachments and admins upload deliverables straight
to the bucket; the backend only hands out short-lived presigned PUT URLs.

Object keys: ``uploads/{unix_ms}-{file_name}``
"""

import re
import time
from abc import ABC, abstractmethod
from typing import Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from pipeline.errors import ProviderError, ValidationError

logger = structlog.get_logger().bind(component="blob_storage")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class UploadTicket(BaseModel):
    upload_url: str
    key: str
    file_url: str
    expires_in: int


def object_key_for(file_name: str, now_ms: Optional[int] = None) -> str:
    cleaned = _UNSAFE.sub("-", file_name.strip()).strip("-.")
    if not cleaned:
        raise ValidationError("fileName is required")
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"uploads/{stamp}-{cleaned}"


class IUploadUrlGenerator(ABC):
    """Signed upload URL interface"""

    @abstractmethod
    async def create_upload_url(self, file_name: str, content_type: str) -> UploadTicket:
        pass


class S3UploadUrlGenerator(IUploadUrlGenerator):
    """Direct S3 presigned PUT URL generator"""

    def __init__(self, bucket: str, region: str, expires_in_seconds: int = 900, client=None):
        self.bucket = bucket
        self.region = region
        self.expires_in_seconds = expires_in_seconds
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            config=Config(signature_version="s3v4"),
        )

    async def create_upload_url(self, file_name: str, content_type: str) -> UploadTicket:
        if not self.bucket:
            raise ProviderError("upload storage is not configured", provider="s3")

        key = object_key_for(file_name)
        try:
            url = self.s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self.expires_in_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("upload_url_failed", key=key, error=str(e))
            raise ProviderError("could not create upload URL", provider="s3") from e

        logger.info("upload_url_created", key=key, expires_in=self.expires_in_seconds)
        return UploadTicket(
            upload_url=url,
            key=key,
            file_url=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}",
            expires_in=self.expires_in_seconds,
        )
