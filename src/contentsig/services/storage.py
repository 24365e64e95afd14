"""S3 access for published certificate chains.

Chains uploaded to an s3:// location are stored with a SHA-256 digest in
their object metadata. Reading a chain back from an s3:// x5u checks the
body against that digest before anything parses it.

Example:
    from contentsig.core.settings import get_settings
    from contentsig.services.storage import ObjectStoreClient

    store = ObjectStoreClient.from_settings(get_settings().s3)
    stored = store.upload(
        "chains",
        "remote-settings-2026-10-19-12-00-00.chain",
        chain_pem,
        content_type="binary/octet-stream",
        acl="public-read",
    )
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from contentsig.core.config import S3Settings

logger = logging.getLogger(__name__)

# Metadata key holding the hex SHA-256 of the object body
DIGEST_METADATA_KEY = "sha256-digest"


@dataclass(frozen=True)
class UploadResult:
    """Where a chain landed and what was stored.

    Attributes:
        bucket: Bucket the chain was written to.
        key: Object key of the chain.
        sha256_digest: Hex SHA-256 of the chain bytes.
        etag: ETag returned by the store.
    """

    bucket: str
    key: str
    sha256_digest: str
    etag: str


class StorageError(Exception):
    """An object store request failed.

    Attributes:
        message: Human-readable error description.
        bucket: Bucket of the request.
        key: Object key of the request, if any.
        operation: "upload" or "download".
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """No chain is stored under the key."""


class BucketNotFoundError(StorageError):
    """The bucket does not exist."""


class IntegrityError(StorageError):
    """A downloaded chain does not match its recorded digest."""


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class ObjectStoreClient:
    """Uploads and downloads chains on an S3-compatible store."""

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Create the boto3 client.

        Args:
            endpoint_url: S3-compatible endpoint, None for AWS.
            access_key: Access key ID.
            secret_key: Secret access key.
            region: Region name.
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Attempts for transient failures.
        """
        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_retries, "mode": "standard"},
                signature_version="s3v4",
            ),
        )
        logger.debug("Object store client for endpoint=%s region=%s", endpoint_url, region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        acl: str | None = None,
    ) -> UploadResult:
        """Store data under bucket/key with its digest in metadata.

        Args:
            bucket: Target bucket.
            key: Object key.
            data: Bytes to store.
            content_type: Content-Type served with the object.
            acl: Canned ACL, e.g. "public-read".

        Raises:
            BucketNotFoundError: If the bucket does not exist.
            StorageError: For any other store failure.
        """
        digest = hashlib.sha256(data).hexdigest()
        params = {
            "Bucket": bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "Metadata": {DIGEST_METADATA_KEY: digest},
        }
        if acl:
            params["ACL"] = acl

        try:
            response = self._client.put_object(**params)
        except ClientError as e:
            if _error_code(e) == "NoSuchBucket":
                msg = f"Bucket does not exist: {bucket}"
                raise BucketNotFoundError(msg, bucket=bucket, key=key, operation="upload") from e
            msg = f"Upload of {bucket}/{key} failed: {e}"
            raise StorageError(msg, bucket=bucket, key=key, operation="upload") from e

        return UploadResult(
            bucket=bucket,
            key=key,
            sha256_digest=digest,
            etag=response.get("ETag", ""),
        )

    def download(self, bucket: str, key: str) -> bytes:
        """Read bucket/key and check it against its recorded digest.

        Objects stored without a digest are returned unchecked.

        Raises:
            ObjectNotFoundError: If the key does not exist.
            BucketNotFoundError: If the bucket does not exist.
            IntegrityError: If the body does not match the recorded digest.
            StorageError: For any other store failure.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = _error_code(e)
            if code == "NoSuchKey":
                msg = f"Object does not exist: {bucket}/{key}"
                raise ObjectNotFoundError(
                    msg, bucket=bucket, key=key, operation="download"
                ) from e
            if code == "NoSuchBucket":
                msg = f"Bucket does not exist: {bucket}"
                raise BucketNotFoundError(
                    msg, bucket=bucket, key=key, operation="download"
                ) from e
            msg = f"Download of {bucket}/{key} failed: {e}"
            raise StorageError(msg, bucket=bucket, key=key, operation="download") from e

        data = response["Body"].read()
        recorded = response.get("Metadata", {}).get(DIGEST_METADATA_KEY)
        if recorded and hashlib.sha256(data).hexdigest() != recorded:
            msg = f"Digest mismatch for {bucket}/{key}"
            raise IntegrityError(msg, bucket=bucket, key=key, operation="download")
        return data
