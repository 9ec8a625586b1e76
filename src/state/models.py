from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


SCHEMA_VERSION = 1


class OrgResourceType(str, Enum):
    """Type tags of organization-model resources that can carry a binding."""

    MASTER_ACCOUNT = "OC::ORG::MasterAccount"
    ACCOUNT = "OC::ORG::Account"
    ORGANIZATIONAL_UNIT = "OC::ORG::OrganizationalUnit"
    SERVICE_CONTROL_POLICY = "OC::ORG::ServiceControlPolicy"
    ORGANIZATION_ROOT = "OC::ORG::OrganizationRoot"
    PASSWORD_POLICY = "OC::ORG::PasswordPolicy"


class _Entity(BaseModel):
    # camelCase on disk, snake_case in Python
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class StackTarget(_Entity):
    """One (stack, account, region) deployment destination."""

    logical_account_id: str
    account_id: str
    region: str
    stack_name: str
    termination_protection: Optional[bool] = None
    last_committed_hash: str = ""


class Binding(_Entity):
    """
    Resolved identity of one organization-model resource.

    A binding may be partially populated: the hash is usually known before the
    resource is provisioned and the physical id only afterwards, so either
    field may be empty.
    """

    logical_id: str
    type: str
    physical_id: str = ""
    last_committed_hash: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _plain_type(cls, v: Any) -> Any:
        # Keyed by the plain string in the bindings map
        return v.value if isinstance(v, OrgResourceType) else v


class TrackedTask(_Entity):
    """A task seen in a tasks file, kept so it can be cleaned up once removed."""

    logical_name: str
    physical_id_for_cleanup: str
    type: str


class StateDocument(BaseModel):
    """
    The whole persisted ledger.

    Fields
    - master_account_id: organization root account; fixed for the lifetime of the document.
    - stacks: stack name -> account id -> region -> StackTarget.
    - bindings: resource type -> logical id -> Binding.
    - values: free-form scalars under dotted keys (e.g. "organization.template.hash").
    - previous_template: text of the last successfully processed organization template.
    - tracked_tasks: tasks file name -> ordered list of TrackedTask.
    """

    # Unknown top-level sections are kept and written back unchanged
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    schema_version: int = SCHEMA_VERSION
    master_account_id: str
    bindings: Dict[str, Dict[str, Binding]] = Field(default_factory=dict)
    stacks: Dict[str, Dict[str, Dict[str, StackTarget]]] = Field(default_factory=dict)
    values: Dict[str, str] = Field(default_factory=dict)
    previous_template: str = ""
    tracked_tasks: Dict[str, List[TrackedTask]] = Field(default_factory=dict)

    @classmethod
    def empty(cls, master_account_id: str) -> "StateDocument":
        return cls(master_account_id=master_account_id)


class UnsupportedSchemaVersion(ValueError):
    """Raised when a document was written by a newer schema than this code understands."""


def _v0_to_v1(raw: Dict[str, Any]) -> Dict[str, Any]:
    # Documents written before versioning may omit any optional section
    raw.setdefault("stacks", {})
    raw.setdefault("bindings", {})
    raw.setdefault("values", {})
    raw.setdefault("trackedTasks", {})
    raw.setdefault("previousTemplate", "")
    return raw


# version N -> step that produces version N + 1
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _v0_to_v1,
}


def migrate_document(raw: Mapping[str, Any]) -> tuple[Dict[str, Any], List[int]]:
    """Upgrade a raw on-disk mapping to the current schema version.

    Returns the migrated mapping and the list of source versions that were
    upgraded (empty if the document was already current).
    """
    doc = dict(raw)
    version = doc.get("schemaVersion", 0)
    if not isinstance(version, int) or version < 0:
        raise UnsupportedSchemaVersion(f"Invalid schemaVersion: {version!r}")
    if version > SCHEMA_VERSION:
        raise UnsupportedSchemaVersion(
            f"schemaVersion {version} is newer than supported version {SCHEMA_VERSION}"
        )

    applied: List[int] = []
    while version < SCHEMA_VERSION:
        doc = MIGRATIONS[version](doc)
        applied.append(version)
        version += 1
    doc["schemaVersion"] = version
    return doc, applied
