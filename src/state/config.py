from __future__ import annotations

import os
from typing import Optional

from .s3_store import S3StorageProvider
from .storage import FileStorageProvider, StorageProvider


# Environment variable names
ENV_STATE_BUCKET = "ORG_STATE_BUCKET"
ENV_STATE_KEY = "ORG_STATE_KEY"  # optional; defaults to "state.json"
ENV_FERNET_KEY = "ORG_STATE_FERNET_KEY"  # optional; enables encryption at rest
ENV_REGION = "ORG_STATE_REGION"  # optional
ENV_CONDITIONAL_WRITES = "ORG_STATE_CONDITIONAL_WRITES"  # optional; "1"/"true"/"yes"
ENV_STATE_FILE = "ORG_STATE_FILE"  # local file backend

DEFAULT_STATE_KEY = "state.json"

_TRUTHY = {"1", "true", "yes", "on"}


class StateConfigError(RuntimeError):
    """Raised when no storage backend can be built from the environment."""


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _flag(name: str) -> bool:
    val = _getenv(name)
    return val is not None and val.strip().lower() in _TRUTHY


def s3_provider_from_env() -> S3StorageProvider:
    bucket = _getenv(ENV_STATE_BUCKET)
    if not bucket:
        raise StateConfigError(f"Missing required configuration: {ENV_STATE_BUCKET}")
    return S3StorageProvider(
        bucket=bucket,
        key=_getenv(ENV_STATE_KEY, DEFAULT_STATE_KEY) or DEFAULT_STATE_KEY,
        fernet_key=_getenv(ENV_FERNET_KEY),
        region_name=_getenv(ENV_REGION),
        conditional=_flag(ENV_CONDITIONAL_WRITES),
    )


def provider_from_env() -> StorageProvider:
    """Build the storage backend described by the environment.

    S3 wins when a bucket is configured; otherwise a local file path is used.
    """
    if _getenv(ENV_STATE_BUCKET):
        return s3_provider_from_env()
    path = _getenv(ENV_STATE_FILE)
    if path:
        return FileStorageProvider(path)
    raise StateConfigError(
        f"Missing required configuration: one of {ENV_STATE_BUCKET}, {ENV_STATE_FILE}"
    )
