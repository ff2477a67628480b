"""Sync module for Notion API integration.

Handles import from and export to Notion, including rate limiting,
block diffing and conflict resolution.
"""

from .notion import (
    NotionClient,
    NotionError,
    NotionConfigError,
    NotionRateLimitError,
    NotionServerError,
    NotionNotFoundError,
    NotionAuthError,
    NotionPage,
)
from .scheduler import (
    OperationKind,
    Scheduler,
    SchedulerClosed,
    SchedulerError,
    SchedulerRetryExhausted,
    get_scheduler,
    reset_scheduler,
)
from .retry import RetryExecutor, retrying, with_retry
from .differ import BlockDiff, ContentDiffer, ContentDiffResult, DiffType
from .conflict import (
    ConflictResolution,
    SyncConflict,
    detect_conflict,
    policy_resolver,
    resolve_conflict_interactive,
)
from .engine import (
    DebouncedTasks,
    ExportOutcome,
    ExportReport,
    ExportState,
    OperationLocks,
    SyncEngine,
    SyncResult,
)

__all__ = [
    # Notion client
    "NotionClient",
    "NotionError",
    "NotionConfigError",
    "NotionRateLimitError",
    "NotionServerError",
    "NotionNotFoundError",
    "NotionAuthError",
    "NotionPage",
    # Request scheduling
    "OperationKind",
    "Scheduler",
    "SchedulerClosed",
    "SchedulerError",
    "SchedulerRetryExhausted",
    "get_scheduler",
    "reset_scheduler",
    "RetryExecutor",
    "retrying",
    "with_retry",
    # Content diffing
    "BlockDiff",
    "ContentDiffer",
    "ContentDiffResult",
    "DiffType",
    # Conflict handling
    "ConflictResolution",
    "SyncConflict",
    "detect_conflict",
    "policy_resolver",
    "resolve_conflict_interactive",
    # Orchestration
    "DebouncedTasks",
    "ExportOutcome",
    "ExportReport",
    "ExportState",
    "OperationLocks",
    "SyncEngine",
    "SyncResult",
]
