"""
Registry of bulk actions.

The selection server does not define what a bulk action *means*; callers
register factories by name. A factory receives the request's action
parameters and the record store and returns the per-record coroutine
function the executor calls.

Built-ins (operating on the bundled record store):
    patch_fields  - merge params["patch"] into every selected record
    delete        - delete every selected record (already deleted is success)

Invariants:
    - Actions signal per-record failure by raising ActionError
    - Actions should be idempotent per record; a token can be resolved
      more than once
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .errors import ActionError, SelectionError, UnknownActionError
from .executor import BulkAction
from .records import RecordStore

logger = logging.getLogger(__name__)

ActionFactory = Callable[[dict[str, Any], RecordStore], BulkAction]


class ActionRegistry:
    """Maps action kinds to factories.

    Example:
        >>> registry = ActionRegistry()
        >>> registry.register("archive", make_archive_action)
        >>> action = registry.build("archive", {}, record_store)
    """

    def __init__(self) -> None:
        self._factories: dict[str, ActionFactory] = {}

    def register(self, kind: str, factory: ActionFactory) -> None:
        if kind in self._factories:
            logger.warning(f"Replacing bulk action factory: {kind}")
        self._factories[kind] = factory

    def kinds(self) -> list[str]:
        return sorted(self._factories)

    def build(self, kind: str, params: dict[str, Any], store: RecordStore) -> BulkAction:
        """Create the per-record action for a request.

        Raises:
            UnknownActionError: If nothing is registered under kind
            SelectionError: If the factory rejects the parameters
        """
        factory = self._factories.get(kind)
        if factory is None:
            raise UnknownActionError(kind, self.kinds())
        return factory(params, store)


def patch_fields_action(params: dict[str, Any], store: RecordStore) -> BulkAction:
    patch = params.get("patch")
    if not isinstance(patch, dict) or not patch:
        raise SelectionError(
            "patch_fields requires a non-empty 'patch' object",
            code="INVALID_ACTION_PARAMS",
            details={"action_kind": "patch_fields"},
        )

    async def action(record_id: str) -> None:
        if not await store.patch_record(record_id, patch):
            raise ActionError("not_found", f"Record {record_id} no longer exists")

    return action


def delete_action(params: dict[str, Any], store: RecordStore) -> BulkAction:
    async def action(record_id: str) -> None:
        # Already deleted counts as done
        if not await store.delete_records([record_id]):
            logger.debug("Record already deleted", extra={"record_id": record_id})

    return action


def default_registry() -> ActionRegistry:
    """Registry preloaded with the built-in actions."""
    registry = ActionRegistry()
    registry.register("patch_fields", patch_fields_action)
    registry.register("delete", delete_action)
    return registry
