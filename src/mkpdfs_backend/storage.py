"""
S3 storage for rendered documents.

This module provides functionality for:
- Uploading rendered PDF bytes to S3
- Generating presigned URLs for secure, time-limited downloads

The bucket name comes from the ``storage.bucket`` setting (``S3_BUCKET_NAME``
in the environment). Unlike a best-effort upload, a missing bucket or failed
upload is a render failure: a job cannot complete without its artifact.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import RenderError

logger = logging.getLogger(__name__)


class ArtifactStorage:
    """
    Uploads artifacts to one S3 bucket and signs download links for them.

    Attributes:
        bucket: Target bucket name
        url_expiration: Lifetime of presigned URLs in seconds
    """

    def __init__(self, bucket: str, url_expiration: int = 7 * 24 * 3600, client: Optional[Any] = None) -> None:
        self.bucket = bucket
        self.url_expiration = url_expiration
        self._client = client

    def _get_s3_client(self):
        """
        Get or create the S3 client.

        We do not probe credentials up front; credential errors surface during
        the actual upload.
        """
        if not self.bucket:
            raise RenderError("S3 bucket is not configured")
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def upload_bytes(self, key: str, body: bytes, content_type: str = "application/pdf") -> None:
        """
        Upload an in-memory artifact.

        Raises:
            RenderError: If the bucket is not configured or S3 rejects the upload
        """
        client = self._get_s3_client()
        try:
            logger.info(f"Uploading {len(body)} bytes to s3://{self.bucket}/{key}")
            client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise RenderError(f"S3 upload failed for {key}: {e}") from e

    def generate_presigned_url(self, key: str, expiration: Optional[int] = None) -> str:
        """
        Generate a presigned URL for downloading an artifact.

        Args:
            key: S3 object key (path within the bucket)
            expiration: URL lifetime in seconds (default: ``url_expiration``)

        Note:
            The presigned URL allows anyone with the URL to download the file
            until the expiration time is reached.
        """
        client = self._get_s3_client()
        expires_in = expiration or self.url_expiration
        try:
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            raise RenderError(f"Could not sign download URL for {key}: {e}") from e
        logger.info(f"Generated presigned URL for {key} (expires in {expires_in}s)")
        return url
