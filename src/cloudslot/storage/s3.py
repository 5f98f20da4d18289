"""S3 blob store for transient package uploads."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote, unquote, urlparse

import boto3
import structlog
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from cloudslot.core.exceptions import (
    CloudSlotError,
    ConfigurationError,
    RemoteOperationError,
    TransientRemoteError,
)
from cloudslot.deploy.retry import is_transient


logger = structlog.get_logger()


def _translate_error(exc: Exception, action: str) -> CloudSlotError:
    """Map boto errors onto the orchestrator's error taxonomy."""
    if isinstance(exc, NoCredentialsError):
        return ConfigurationError(f"S3 {action} failed: no AWS credentials available", code="no_credentials")
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = f"S3 {action} failed: {error.get('Code', 'Unknown')}: {error.get('Message', str(exc))}"
        if is_transient(exc):
            return TransientRemoteError(message, code=error.get("Code"), status_code=status)
        return RemoteOperationError(message, code=error.get("Code"), status_code=status, payload=error)
    if isinstance(exc, (BotoCoreError, S3UploadFailedError)):
        return TransientRemoteError(f"S3 {action} failed: {exc}")
    return RemoteOperationError(f"S3 {action} failed: {exc}")


class S3BlobStore:
    """Blob store where the account hint is the bucket name."""

    def __init__(
        self,
        client=None,
        *,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        key_prefix: str = "packages/",
    ):
        self._client = client
        self.region = region
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings) -> "S3BlobStore":
        return cls(
            region=settings.aws_region,
            endpoint_url=str(settings.s3_endpoint_url) if settings.s3_endpoint_url else None,
            key_prefix=settings.package_key_prefix,
        )

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)
        return self._client

    def url_for(self, bucket: str, key: str) -> str:
        quoted = quote(key)
        if self.endpoint_url:
            return f"{self.endpoint_url}/{bucket}/{quoted}"
        return f"https://{bucket}.s3.{self.region}.amazonaws.com/{quoted}"

    def key_from_url(self, bucket: str, uri: str) -> str:
        parsed = urlparse(uri)
        path = unquote(parsed.path).lstrip("/")
        # Path-style URLs carry the bucket as the first segment
        if not parsed.netloc.startswith(f"{bucket}.") and path.startswith(f"{bucket}/"):
            path = path[len(bucket) + 1:]
        if not path:
            raise ValueError(f"No object key in URL: {uri}")
        return path

    def upload(self, account_hint: str, local_path: Union[str, Path]) -> str:
        path = Path(local_path)
        if not path.is_file():
            raise ConfigurationError(f"Package file not found: {path}", code="package_not_found")

        key = f"{self.key_prefix}{uuid.uuid4().hex}/{path.name}"
        logger.info("Uploading to S3", bucket=account_hint, key=key, size=path.stat().st_size)
        try:
            self.client.upload_file(str(path), account_hint, key)
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            raise _translate_error(exc, "upload") from exc
        return self.url_for(account_hint, key)

    def delete(self, account_hint: str, uri: str) -> None:
        key = self.key_from_url(account_hint, uri)
        logger.info("Deleting from S3", bucket=account_hint, key=key)
        try:
            self.client.delete_object(Bucket=account_hint, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, "delete") from exc
