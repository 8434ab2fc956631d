"""
Client selection state (manual include-list or filter-relative select-all).

This module is transport-agnostic and has no I/O.
"""

from .state import (
    ALL,
    MANUAL,
    AllSelection,
    ManualSelection,
    RecordId,
    SelectionState,
    clear_all,
    estimated_count,
    is_selected,
    new_selection,
    select_all_matching,
    selection_from_dict,
    toggle_record,
)

__all__ = [
    "ALL",
    "MANUAL",
    "AllSelection",
    "ManualSelection",
    "RecordId",
    "SelectionState",
    "clear_all",
    "estimated_count",
    "is_selected",
    "new_selection",
    "select_all_matching",
    "selection_from_dict",
    "toggle_record",
]
