from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config

from app.domain.contracts import STORAGE_PREFIXES
from app.settings import StorageSettings


class S3StorageClient:
    """S3-compatible object storage for materialized results."""

    def __init__(self, *, settings: StorageSettings, client: Any | None = None) -> None:
        if not settings.bucket:
            raise ValueError("STORAGE_BUCKET is required for S3 storage")
        self.bucket = settings.bucket
        self.public_base_url = (settings.public_base_url or "").rstrip("/") or None
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.endpoint_url,
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            config=Config(signature_version="s3v4"),
        )

    def put_bytes(self, *, key: str, payload: bytes, content_type: str = "image/png") -> str:
        if not any(key.startswith(prefix) for prefix in STORAGE_PREFIXES):
            raise ValueError("storage key must start with an allowed prefix")
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=payload,
            ContentType=content_type,
            CacheControl="public, max-age=31536000",
        )
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"s3://{self.bucket}/{key}"

    def get_bytes(self, *, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()
