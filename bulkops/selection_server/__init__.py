"""
Selection Server - token-based selections and bulk actions over large collections.

A client browsing a filtered list keeps a selection as a rule (filter plus
inclusion or exclusion set) rather than a list of every chosen record. The
server stores that rule behind an opaque token and resolves it to concrete
record IDs only when a bulk action runs.

Architecture:
    ┌─────────────┐  create   ┌─────────────┐
    │   Client    │──────────▶│ Token Store │  (memory / SQLite)
    │ (list view) │   token   └──────┬──────┘
    └──────┬──────┘                  │ resolve
           │ bulk action             ▼
           │                 ┌─────────────┐  pages   ┌──────────────┐
           └────────────────▶│  Resolver   │◀────────▶│ Record Store │
                             └──────┬──────┘          │   (SQLite)   │
                                    │ batches         └──────────────┘
                                    ▼
                             ┌─────────────┐
                             │  Executor   │──▶ BulkOperationResult
                             └─────────────┘

Invariants:
    - A selection state is either manual (included IDs) or all-matching
      (excluded IDs), never both
    - Resolution never materializes the full match set in memory
    - Every resolved record is acted on at most once per execution
    - Partial failure and cancellation always produce a result with counts

How to change safely:
    - Keep token and selection JSON formats backward compatible; stored
      tokens outlive deployments
    - New bulk actions are registered, never special-cased in the executor
"""

from ._version import __version__

__all__ = ["__version__"]
