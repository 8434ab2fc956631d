"""
Selection state for bulk actions over filtered collections.

A selection is one of two variants:

    ManualSelection(included)  - the user ticked these rows
    AllSelection(excluded)     - everything matching the filter, minus these

The variant *is* the mode. Each variant carries only the set that is
meaningful for it, so the inactive set cannot hold stale IDs.

Invariants:
    - States are immutable; every operation returns a new state
    - toggle_record is its own inverse
    - Switching mode always starts from an empty set
    - No I/O happens here

Example:
    >>> s = select_all_matching(ManualSelection())
    >>> s = toggle_record(s, "msg-3")
    >>> estimated_count(s, matching_total=10)
    9
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from ..errors import SelectionError

RecordId = str

MANUAL = "manual"
ALL = "all"


@dataclass(frozen=True)
class ManualSelection:
    """Explicit include-list selection.

    Attributes:
        included: Record IDs the user selected
    """

    included: frozenset[RecordId] = field(default_factory=frozenset)
    mode: Literal["manual"] = field(default=MANUAL, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"mode": MANUAL, "included": sorted(self.included)}


@dataclass(frozen=True)
class AllSelection:
    """Everything matching the active filter except the excluded IDs.

    Attributes:
        excluded: Record IDs the user deselected after "select all"
    """

    excluded: frozenset[RecordId] = field(default_factory=frozenset)
    mode: Literal["all"] = field(default=ALL, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"mode": ALL, "excluded": sorted(self.excluded)}


SelectionState = Union[ManualSelection, AllSelection]


def new_selection() -> SelectionState:
    """State of a freshly opened table view."""
    return ManualSelection()


def toggle_record(state: SelectionState, record_id: RecordId) -> SelectionState:
    """Flip one record's membership in the active set."""
    if isinstance(state, ManualSelection):
        return ManualSelection(included=state.included ^ {record_id})
    return AllSelection(excluded=state.excluded ^ {record_id})


def select_all_matching(state: SelectionState) -> SelectionState:
    """Switch to "all matching the filter" with no exclusions."""
    return AllSelection()


def clear_all(state: SelectionState) -> SelectionState:
    """Switch back to an empty manual selection."""
    return ManualSelection()


def is_selected(
    state: SelectionState,
    record_id: RecordId,
    membership_check: Callable[[RecordId], bool],
) -> bool:
    """Whether a record is currently selected.

    Args:
        state: Current selection
        record_id: Record to test
        membership_check: Tests whether the record matches the active filter;
            only consulted in all mode, where "all" is relative to the filter
    """
    if isinstance(state, ManualSelection):
        return record_id in state.included
    return record_id not in state.excluded and membership_check(record_id)


def estimated_count(state: SelectionState, matching_total: int) -> int:
    """Approximate number of selected records.

    matching_total can be stale by the time it is shown, so the result is
    advisory. The executor's attempted count is authoritative.
    """
    if isinstance(state, ManualSelection):
        return len(state.included)
    return max(matching_total - len(state.excluded), 0)


def selection_from_dict(data: Mapping[str, Any]) -> SelectionState:
    """Create a selection from its dictionary form.

    Raises:
        SelectionError: If the mode is unknown or the payload carries the set
            that is inactive for its mode
    """
    mode = data.get("mode", MANUAL)
    if mode == MANUAL:
        if data.get("excluded"):
            raise SelectionError("Manual selection cannot carry 'excluded'", code="INVALID_SELECTION")
        return ManualSelection(included=_id_set(data.get("included")))
    if mode == ALL:
        if data.get("included"):
            raise SelectionError("All selection cannot carry 'included'", code="INVALID_SELECTION")
        return AllSelection(excluded=_id_set(data.get("excluded")))
    raise SelectionError(
        f"Invalid selection mode '{mode}'. Must be one of: {MANUAL}, {ALL}",
        code="INVALID_SELECTION",
    )


def _id_set(values: Iterable[Any] | None) -> frozenset[RecordId]:
    if values is None:
        return frozenset()
    if isinstance(values, (str, bytes)):
        raise SelectionError("Record ID set must be a list", code="INVALID_SELECTION")
    ids = frozenset(values)
    if not all(isinstance(v, str) for v in ids):
        raise SelectionError("Record IDs must be strings", code="INVALID_SELECTION")
    return ids
