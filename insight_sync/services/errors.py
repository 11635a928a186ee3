"""Error taxonomy shared by the synchronization and ingestion services."""

from __future__ import annotations


class InsightSyncError(Exception):
    """Base class for synchronization errors."""


class TransientStageFailure(InsightSyncError):
    """Raised when a stage's external call fails and the stage may be retried."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message


class PermanentConfigError(InsightSyncError):
    """Raised synchronously when a sync request references a missing object or role."""


class SyncInProgressError(InsightSyncError):
    """Raised when a target already has an active synchronization unit."""


class MalformedInputRecord(InsightSyncError):
    """Raised while parsing one delta line; the line is skipped, never retried."""

    def __init__(self, message: str, *, line_number: int | None = None) -> None:
        super().__init__(message)
        self.line_number = line_number


class ReportingFailure(InsightSyncError):
    """Raised when a status write or notification could not be delivered."""


__all__ = [
    "InsightSyncError",
    "MalformedInputRecord",
    "PermanentConfigError",
    "ReportingFailure",
    "SyncInProgressError",
    "TransientStageFailure",
]
