from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    VALIDATION = "VALIDATION"
    DUPLICATE = "DUPLICATE"
    TRIGGER_REJECTED = "TRIGGER_REJECTED"
    PARTIAL_EMPLOYEE_FAILURE = "PARTIAL_EMPLOYEE_FAILURE"
    FATAL_WORKER_ERROR = "FATAL_WORKER_ERROR"
    PRECONDITION = "PRECONDITION"
    NOT_FOUND = "NOT_FOUND"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"


class BatchError(RuntimeError):
    kind: FailureKind = FailureKind.VALIDATION


class BatchValidationError(BatchError):
    kind = FailureKind.VALIDATION


class PreconditionError(BatchError):
    kind = FailureKind.PRECONDITION


class BatchNotFoundError(BatchError):
    kind = FailureKind.NOT_FOUND


class InvalidBatchStateError(BatchError):
    kind = FailureKind.PRECONDITION


class WorkerConflictError(BatchError):
    kind = FailureKind.PRECONDITION


class InvariantViolationError(BatchError):
    kind = FailureKind.INVARIANT_VIOLATION


class TriggerRejectedError(BatchError):
    kind = FailureKind.TRIGGER_REJECTED

    def __init__(self, reason: str, *, transient: bool, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.transient = transient
        self.status_code = status_code


class DuplicateBatchError(BatchError):
    kind = FailureKind.DUPLICATE

    def __init__(self, message: str, *, existing_batch_id: str):
        super().__init__(message)
        self.existing_batch_id = existing_batch_id


class BatchCodeCollisionError(BatchError):
    kind = FailureKind.VALIDATION

    def __init__(self, message: str, *, batch_code: str):
        super().__init__(message)
        self.batch_code = batch_code
