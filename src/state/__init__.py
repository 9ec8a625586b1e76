"""
Persisted deployment state for an organization.

This package defines the state document (stack targets, bindings, scalar
values, tracked tasks), the store that mutates and persists it, and the
storage backends it is saved to (local file, S3 with optional Fernet
encryption).
"""

from .models import Binding, OrgResourceType, StackTarget, StateDocument, TrackedTask
from .persisted import IdentityMismatchError, PersistedState, PersistedStateError, StateParseError
from .storage import FileStorageProvider, InMemoryStorageProvider, StorageProvider

__all__ = [
    "Binding",
    "FileStorageProvider",
    "IdentityMismatchError",
    "InMemoryStorageProvider",
    "OrgResourceType",
    "PersistedState",
    "PersistedStateError",
    "StackTarget",
    "StateDocument",
    "StateParseError",
    "StorageProvider",
    "TrackedTask",
]
