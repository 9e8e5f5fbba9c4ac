import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

ONE_YEAR_CACHE_CONTROL = "max-age=31536000"
PUBLIC_READ_ACL = "public-read"


class S3ObjectStorage:
    """Public object storage for part images, backed by an S3 bucket."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Optional[BaseClient] = None,
    ) -> None:
        self.bucket = bucket or getattr(settings, "AWS_STORAGE_BUCKET_NAME", "")
        self.region = region or getattr(settings, "AWS_S3_REGION_NAME", "us-east-1")
        self.public_base_url = (
            public_base_url
            if public_base_url is not None
            else getattr(settings, "AWS_S3_PUBLIC_BASE_URL", "")
        )
        self._client = client

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            timeout = getattr(settings, "AWS_S3_TIMEOUT_SECONDS", 10)
            client_kwargs = {
                "region_name": self.region,
                "config": Config(
                    signature_version="s3v4",
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": 3},
                ),
            }
            access_key = getattr(settings, "AWS_ACCESS_KEY_ID", None)
            secret_key = getattr(settings, "AWS_SECRET_ACCESS_KEY", None)
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key
            self._client = boto3.client("s3", **client_kwargs)
        return self._client

    def put_file(
        self,
        key: str,
        file_path: Path,
        content_type: str,
        cache_control: str = ONE_YEAR_CACHE_CONTROL,
    ) -> str:
        """Upload ``file_path`` with public-read visibility and return its public URL."""
        try:
            self.client.upload_file(
                Filename=str(file_path),
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={
                    "ContentType": content_type,
                    "CacheControl": cache_control,
                    "ACL": PUBLIC_READ_ACL,
                },
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as exc:
            raise ExternalServiceError(f"Failed to upload {key} to S3: {exc}") from exc
        logger.info("Uploaded s3://%s/%s", self.bucket, key)
        return self.url_for(key)

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            error_code = str(exc.response.get("Error", {}).get("Code", ""))
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise ExternalServiceError(f"Failed to check s3://{self.bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ExternalServiceError(f"Failed to check s3://{self.bucket}/{key}: {exc}") from exc
        return True

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise ExternalServiceError(f"Failed to delete s3://{self.bucket}/{key}: {exc}") from exc
        logger.info("Deleted s3://%s/%s", self.bucket, key)

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(key)}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    def key_from_url(self, url: str) -> Optional[str]:
        if not url:
            return None
        path = unquote(urlparse(url).path).lstrip("/")
        if self.public_base_url:
            base_path = urlparse(self.public_base_url).path.strip("/")
            if base_path and path.startswith(f"{base_path}/"):
                path = path[len(base_path) + 1:]
        # Path-style URLs carry the bucket as the first segment.
        if self.bucket and path.startswith(f"{self.bucket}/"):
            path = path[len(self.bucket) + 1:]
        return path or None
