from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken


_LOGGER = logging.getLogger(__name__)


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


class StorageDecryptError(ValueError):
    """Raised when stored bytes cannot be decrypted with the configured key."""


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class S3StorageProvider:
    """
    S3-backed storage for the serialized state document.

    Usage
    - Provide S3 bucket/key; optionally a Fernet key to encrypt at rest.
    - `get()` returns the stored text, or None if the object does not exist.
    - `put(content)` overwrites the object.

    Conditional writes
    - With `conditional=True`, the provider remembers the ETag seen on the last
      `get()`/`put()` and only overwrites the object if its ETag still matches
      (copy-based compare-and-swap). A concurrent writer therefore causes
      `OptimisticLockError` instead of a silent overwrite. Without a known ETag
      (fresh organization) the write is unconditional.

    botocore `ClientError`s other than a missing object propagate unchanged.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes | None = None,
        region_name: Optional[str] = None,
        conditional: bool = False,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = _to_fernet(fernet_key) if fernet_key else None
        self._conditional = conditional
        self._etag: Optional[str] = None

    @property
    def etag(self) -> Optional[str]:
        """ETag of the object as last read or written by this provider."""
        return self._etag

    # -------- Encoding --------
    def _encode(self, content: str) -> bytes:
        data = content.encode("utf-8")
        if self._fernet is None:
            return data
        return self._fernet.encrypt(data)

    def _decode(self, body: bytes) -> str:
        if self._fernet is not None:
            try:
                body = self._fernet.decrypt(body)
            except InvalidToken as ex:
                raise StorageDecryptError(
                    f"Failed to decrypt state at {self._obj}: invalid Fernet token"
                ) from ex
        return body.decode("utf-8")

    # -------- Blocking operations --------
    def _read(self) -> Optional[str]:
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                self._etag = None
                return None
            raise

        body = resp["Body"].read()
        self._etag = resp.get("ETag")
        return self._decode(body)

    def _write(self, content: str) -> None:
        payload = self._encode(content)

        if not self._conditional or self._etag is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=payload,
                ContentType="application/json" if self._fernet is None else "application/octet-stream",
            )
            self._etag = resp.get("ETag")
            return

        # S3 PutObject does not support If-Match: upload to a temporary key, then
        # COPY over the destination with an If-Match precondition.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=payload,
            ContentType="application/octet-stream",
        )
        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=self._etag,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(f"ETag mismatch for {self._obj}") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                _LOGGER.warning("Unable to remove temporary object %s", temp_key)

        self._etag = resp.get("CopyObjectResult", {}).get("ETag") or resp.get("ETag")

    # -------- StorageProvider --------
    async def get(self) -> Optional[str]:
        _LOGGER.debug("Reading state from %s", self._obj)
        return await asyncio.to_thread(self._read)

    async def put(self, content: str) -> None:
        _LOGGER.debug("Writing state to %s (conditional=%s)", self._obj, self._conditional)
        await asyncio.to_thread(self._write, content)
