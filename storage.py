"""
S3-compatible object storage (MinIO in development) for uploaded documents.
"""
import logging
import os
import secrets
import time
from typing import BinaryIO, Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

import config
from errors import InternalError

logger = logging.getLogger("storage")


def object_key(filename: str) -> str:
    _, ext = os.path.splitext(filename or "")
    ext = ext.lower().lstrip(".") or "bin"
    return f"documents/{int(time.time() * 1000)}_{secrets.token_hex(6)}.{ext}"


class ObjectStorage:
    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket
        self._bucket_checked = False

    def _ensure_bucket(self):
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError:
            logger.info("Creating bucket %s", self.bucket)
            self.client.create_bucket(Bucket=self.bucket)
        self._bucket_checked = True

    def upload(self, key: str, fileobj: BinaryIO, content_type: Optional[str] = None) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self._ensure_bucket()
            self.client.upload_fileobj(fileobj, self.bucket, key, ExtraArgs=extra)
        except (BotoCoreError, ClientError) as e:
            logger.error("Upload of %s failed: %s", key, e)
            raise InternalError("File upload failed")
        return f"{config.S3_ENDPOINT_URL.rstrip('/')}/{self.bucket}/{key}"

    def presigned_url(self, key: str, expires: Optional[int] = None) -> Optional[str]:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires or config.PRESIGNED_URL_TTL,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Presigning %s failed: %s", key, e)
            return None

    def delete(self, key: str):
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("Delete of %s failed: %s", key, e)
            raise InternalError("File deletion failed")


_storage: Optional[ObjectStorage] = None


def get_storage() -> Optional[ObjectStorage]:
    """FastAPI dependency; one client per process, None when not configured."""
    global _storage
    if _storage is None:
        if not (config.S3_ACCESS_KEY and config.S3_SECRET_KEY):
            logger.warning("Object storage credentials missing")
            return None
        client = boto3.client(
            "s3",
            endpoint_url=config.S3_ENDPOINT_URL,
            aws_access_key_id=config.S3_ACCESS_KEY,
            aws_secret_access_key=config.S3_SECRET_KEY,
            region_name=config.S3_REGION,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        _storage = ObjectStorage(client, config.S3_BUCKET)
    return _storage
