from statbatch.batches.activity import ActivityEntry, ActivityLog
from statbatch.batches.errors import (
    BatchCodeCollisionError,
    BatchError,
    BatchNotFoundError,
    BatchValidationError,
    FailureKind,
    InvalidBatchStateError,
    InvariantViolationError,
    PreconditionError,
    TriggerRejectedError,
    WorkerConflictError,
)
from statbatch.batches.health import BatchHealthService
from statbatch.batches.orchestrator import BatchOrchestrator
from statbatch.batches.poller import ProgressPoller
from statbatch.batches.store import BatchStore, batch_snapshot_to_dict
from statbatch.batches.types import (
    BatchSnapshot,
    BatchUpdate,
    DuplicateWarning,
    EmployeeResult,
    InvariantViolation,
    ScopeCriteria,
    SyncSummary,
    TriggerAccepted,
)

__all__ = [
    "ActivityEntry",
    "ActivityLog",
    "BatchCodeCollisionError",
    "BatchError",
    "BatchNotFoundError",
    "BatchValidationError",
    "FailureKind",
    "InvalidBatchStateError",
    "InvariantViolationError",
    "PreconditionError",
    "TriggerRejectedError",
    "WorkerConflictError",
    "BatchHealthService",
    "BatchOrchestrator",
    "ProgressPoller",
    "BatchStore",
    "batch_snapshot_to_dict",
    "BatchSnapshot",
    "BatchUpdate",
    "DuplicateWarning",
    "EmployeeResult",
    "InvariantViolation",
    "ScopeCriteria",
    "SyncSummary",
    "TriggerAccepted",
]
