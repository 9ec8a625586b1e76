from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, List, MutableMapping, Optional, TypeVar

from pydantic import ValidationError

from .models import (
    Binding,
    OrgResourceType,
    StackTarget,
    StateDocument,
    TrackedTask,
    UnsupportedSchemaVersion,
    migrate_document,
)
from .storage import StorageProvider


_LOGGER = logging.getLogger(__name__)

TEMPLATE_HASH_KEY = "organization.template.hash"

K = TypeVar("K")


class PersistedStateError(RuntimeError):
    """Base error for the persisted state store."""


class StateParseError(PersistedStateError):
    """Stored content exists but is not a well-formed state document."""


class IdentityMismatchError(PersistedStateError):
    """Stored state belongs to a different organization than the current session."""

    def __init__(self, expected: str, found: str) -> None:
        super().__init__(
            "state and session do not belong to the same organization "
            f"(session master account {expected}, state master account {found})"
        )
        self.expected = expected
        self.found = found


def _child(parent: MutableMapping[K, Dict], key: K) -> Dict:
    """Return parent[key], creating an empty map there if missing."""
    child = parent.get(key)
    if child is None:
        child = parent[key] = {}
    return child


def _prune(parent: MutableMapping[K, Dict], key: K) -> bool:
    """Remove parent[key] if it is an empty map. Returns True if removed."""
    if key in parent and not parent[key]:
        del parent[key]
        return True
    return False


def _type_key(type_: str | OrgResourceType) -> str:
    return type_.value if isinstance(type_, OrgResourceType) else type_


class PersistedState:
    """
    Ledger of what has been deployed where, for one organization.

    The store owns its document exclusively: entities handed out are immutable
    and collection reads return fresh lists, so every change goes through a
    method below and sets the dirty flag. `save()` is the only operation that
    clears it, and it writes nothing when nothing changed.

    Only `load()` and `save()` touch the storage provider. All other methods
    are in-memory and do not fail.
    """

    def __init__(self, document: StateDocument, provider: Optional[StorageProvider] = None) -> None:
        self._provider = provider
        self._doc = document
        self._dirty = False

    # -------- Lifecycle --------
    @classmethod
    async def load(cls, provider: StorageProvider, master_account_id: str) -> "PersistedState":
        """Load state for `master_account_id` from `provider`.

        Raises:
        - StateParseError if stored content is present but malformed.
        - IdentityMismatchError if the stored master account differs.
        Provider errors propagate unchanged.
        """
        contents = await provider.get()
        if contents is None or not contents.strip():
            _LOGGER.debug("No stored state found, starting from an empty document")
            return cls(StateDocument.empty(master_account_id), provider)

        try:
            raw = json.loads(contents)
        except json.JSONDecodeError as ex:
            raise StateParseError(f"unable to parse state file: {ex}") from ex
        if not isinstance(raw, dict):
            raise StateParseError(
                f"unable to parse state file: expected an object, got {type(raw).__name__}"
            )

        stored_master = raw.get("masterAccountId")
        if stored_master is None:
            raw["masterAccountId"] = master_account_id
        elif stored_master != master_account_id:
            raise IdentityMismatchError(master_account_id, str(stored_master))

        try:
            raw, applied = migrate_document(raw)
            document = StateDocument.model_validate(raw)
        except (UnsupportedSchemaVersion, ValidationError) as ex:
            raise StateParseError(f"unable to parse state file: {ex}") from ex

        if applied:
            _LOGGER.debug("Migrated state document from schema version(s) %s", applied)
        return cls(document, provider)

    @classmethod
    def create_empty(
        cls, master_account_id: str, provider: Optional[StorageProvider] = None
    ) -> "PersistedState":
        """Fresh document, marked dirty so the first save writes a baseline."""
        state = cls(StateDocument.empty(master_account_id), provider)
        state._dirty = True
        return state

    @property
    def master_account(self) -> str:
        return self._doc.master_account_id

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    async def save(self, provider: Optional[StorageProvider] = None) -> None:
        """Persist the document if it changed since the last save.

        Uses `provider` when given, else the provider the state was loaded from.
        """
        provider = provider or self._provider
        if provider is None:
            _LOGGER.debug("No storage provider configured, skipping save")
            return
        if not self._dirty:
            _LOGGER.debug("State unchanged, skipping save")
            return

        await provider.put(self.to_json())
        self._dirty = False
        _LOGGER.info("Saved state for organization %s", self.master_account)

    def to_json(self) -> str:
        # exclude_none drops an unset terminationProtection
        payload = self._doc.model_dump(by_alias=True, mode="json", exclude_none=True)
        return json.dumps(payload, indent=2, sort_keys=True)

    # -------- Scalar values --------
    def get_value(self, key: str) -> Optional[str]:
        return self._doc.values.get(key)

    def put_value(self, key: str, value: str) -> None:
        self._doc.values[key] = value
        self._dirty = True

    def get_template_hash(self) -> Optional[str]:
        return self.get_value(TEMPLATE_HASH_KEY)

    def put_template_hash(self, value: str) -> None:
        self.put_value(TEMPLATE_HASH_KEY, value)

    def get_previous_template(self) -> str:
        return self._doc.previous_template

    def set_previous_template(self, template: str) -> None:
        self._doc.previous_template = template
        self._dirty = True

    # -------- Tracked tasks --------
    def get_tracked_tasks(self, tasks_file_name: str) -> List[TrackedTask]:
        return list(self._doc.tracked_tasks.get(tasks_file_name, []))

    def set_tracked_tasks(self, tasks_file_name: str, tracked_tasks: Iterable[TrackedTask]) -> None:
        # Replace, never merge: tasks dropped from the file must disappear here.
        self._doc.tracked_tasks[tasks_file_name] = list(tracked_tasks)
        self._dirty = True

    # -------- Stack targets --------
    def get_target(self, stack_name: str, account_id: str, region: str) -> Optional[StackTarget]:
        accounts = self._doc.stacks.get(stack_name)
        if not accounts:
            return None
        regions = accounts.get(account_id)
        if not regions:
            return None
        return regions.get(region)

    def set_target(self, target: StackTarget) -> None:
        accounts = _child(self._doc.stacks, target.stack_name)
        regions = _child(accounts, target.account_id)
        regions[target.region] = target
        self._dirty = True

    def list_stacks(self) -> List[str]:
        return list(self._doc.stacks)

    def enum_targets(self, stack_name: str) -> List[StackTarget]:
        accounts = self._doc.stacks.get(stack_name, {})
        return [target for regions in accounts.values() for target in regions.values()]

    def remove_target(self, stack_name: str, account_id: str, region: str) -> None:
        accounts = self._doc.stacks.get(stack_name)
        if accounts is None:
            return

        changed = False
        regions = accounts.get(account_id)
        if regions is not None:
            changed = regions.pop(region, None) is not None
            changed = _prune(accounts, account_id) or changed
        # Also clears empty maps that came in with a loaded document
        changed = _prune(self._doc.stacks, stack_name) or changed
        if changed:
            self._dirty = True

    # -------- Bindings --------
    def get_binding(self, type_: str | OrgResourceType, logical_id: str) -> Optional[Binding]:
        type_key = _type_key(type_)
        result = self._doc.bindings.get(type_key, {}).get(logical_id)
        if result is None:
            _LOGGER.debug("unable to find binding for %s/%s", type_key, logical_id)
        return result

    def get_account_binding(self, logical_id: str) -> Optional[Binding]:
        """Binding for an account-like logical id.

        The master account may be declared either as a MasterAccount or as a
        regular Account resource; MasterAccount wins when both exist.
        """
        masters = self._doc.bindings.get(OrgResourceType.MASTER_ACCOUNT.value, {})
        result = masters.get(logical_id)
        if result is not None:
            return result
        return self.get_binding(OrgResourceType.ACCOUNT, logical_id)

    def enum_bindings(self, type_: str | OrgResourceType) -> List[Binding]:
        return list(self._doc.bindings.get(_type_key(type_), {}).values())

    def set_binding(self, binding: Binding) -> None:
        _child(self._doc.bindings, binding.type)[binding.logical_id] = binding
        self._dirty = True

    def set_unique_binding_for_type(self, binding: Binding) -> None:
        """Make `binding` the only binding of its type, dropping any others."""
        self._doc.bindings[binding.type] = {binding.logical_id: binding}
        self._dirty = True

    def set_binding_hash(self, type_: str | OrgResourceType, logical_id: str, last_committed_hash: str) -> None:
        type_key = _type_key(type_)
        bindings = _child(self._doc.bindings, type_key)
        current = bindings.get(logical_id)
        if current is None:
            bindings[logical_id] = Binding(
                logical_id=logical_id, type=type_key, last_committed_hash=last_committed_hash
            )
        else:
            bindings[logical_id] = current.model_copy(update={"last_committed_hash": last_committed_hash})
        self._dirty = True

    def set_binding_physical_id(self, type_: str | OrgResourceType, logical_id: str, physical_id: str) -> None:
        type_key = _type_key(type_)
        bindings = _child(self._doc.bindings, type_key)
        current = bindings.get(logical_id)
        if current is None:
            bindings[logical_id] = Binding(logical_id=logical_id, type=type_key, physical_id=physical_id)
        else:
            bindings[logical_id] = current.model_copy(update={"physical_id": physical_id})
        self._dirty = True

    def remove_binding(self, binding: Binding) -> None:
        # The type map is kept even when it becomes empty.
        bindings = self._doc.bindings.get(binding.type)
        if bindings is None or bindings.pop(binding.logical_id, None) is None:
            return
        self._dirty = True
