from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from statbatch.batches.errors import FailureKind, InvariantViolationError
from statbatch.db.models import (
    TERMINAL_BATCH_STATUSES,
    BatchStatus,
    ComputationKind,
    DataSource,
    EmployeeResultStatus,
)


def progress_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return (processed * 200 + total) // (2 * total)


@dataclass(slots=True)
class BatchSnapshot:
    id: str
    batch_code: str
    tenant_id: str
    kind: ComputationKind
    scope_key: str
    period: date
    status: BatchStatus
    total_employees: int
    processed_employees: int
    failed_employees: int
    reason: str | None
    created_by: str | None
    trigger_attempts: int
    last_trigger_error: str | None
    worker_id: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(self.processed_employees, self.total_employees)

    @property
    def remaining_employees(self) -> int:
        return self.total_employees - self.processed_employees - self.failed_employees

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    @property
    def failure_kind(self) -> FailureKind | None:
        if self.status == BatchStatus.FAILED:
            return FailureKind.FATAL_WORKER_ERROR
        if self.status == BatchStatus.COMPLETED_WITH_WARNINGS:
            return FailureKind.PARTIAL_EMPLOYEE_FAILURE
        return None


def counter_problems(snapshot: BatchSnapshot) -> list[str]:
    problems: list[str] = []
    if snapshot.total_employees < 0 or snapshot.processed_employees < 0 or snapshot.failed_employees < 0:
        problems.append("negative employee counter")
    if snapshot.processed_employees + snapshot.failed_employees > snapshot.total_employees:
        problems.append(
            f"processed ({snapshot.processed_employees}) + failed ({snapshot.failed_employees}) "
            f"exceeds total ({snapshot.total_employees})"
        )
    if not 0 <= snapshot.progress_percentage <= 100:
        problems.append(f"progress percentage out of range: {snapshot.progress_percentage}")
    return problems


@dataclass(frozen=True, slots=True)
class ScopeCriteria:
    establishment_id: int | None = None
    financial_year: str | None = None
    employee_codes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EligibilityCriteria:
    tenant_id: str
    kind: ComputationKind
    establishment_id: int | None = None
    financial_year: str | None = None
    employee_codes: tuple[str, ...] = ()
    limit: int = 5000


@dataclass(frozen=True, slots=True)
class EligibleEmployee:
    employee_id: str
    employee_code: str | None = None


@dataclass(frozen=True, slots=True)
class EmployeeScope:
    scope_key: str
    employees: tuple[EligibleEmployee, ...]

    @property
    def size(self) -> int:
        return len(self.employees)

    @property
    def employee_ids(self) -> list[str]:
        return [employee.employee_id for employee in self.employees]


@dataclass(frozen=True, slots=True)
class BatchFilter:
    tenant_id: str | None = None
    kind: ComputationKind | None = None
    scope_key: str | None = None
    period: date | None = None
    statuses: frozenset[BatchStatus] | None = None
    batch_ids: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class BatchDraft:
    tenant_id: str
    kind: ComputationKind
    scope_key: str
    period: date
    batch_code: str
    employees: tuple[EligibleEmployee, ...]
    created_by: str | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class DuplicateWarning:
    existing: BatchSnapshot
    can_supersede: bool
    message: str

    @property
    def kind(self) -> FailureKind:
        return FailureKind.DUPLICATE


@dataclass(frozen=True, slots=True)
class TriggerAccepted:
    batch_id: str
    function_name: str
    accepted_at: datetime
    worker_reference: str | None = None
    attempt: int = 1


@dataclass(frozen=True, slots=True)
class EmployeeResult:
    employee_id: str
    success: bool
    amount: Decimal | None = None
    error_type: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class EmployeeResultSnapshot:
    employee_id: str
    employee_code: str | None
    status: EmployeeResultStatus
    amount: Decimal | None
    error_type: str | None
    error_message: str | None
    processed_at: datetime | None


class UpsertOutcome(str, Enum):
    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    SKIPPED_MANUAL = "SKIPPED_MANUAL"


@dataclass(frozen=True, slots=True)
class PayrollInputEntry:
    employee_id: str
    period: date
    component_code: str
    amount: Decimal
    source: DataSource = DataSource.SYSTEM_COMPUTED
    source_batch_id: str | None = None


@dataclass(slots=True)
class SyncSummary:
    batch_id: str
    batch_code: str
    period: date
    component_code: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_manual: int = 0
    skipped_failed: int = 0
    total_amount: Decimal = Decimal("0.00")
    skipped_manual_employee_ids: list[str] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return self.inserted + self.updated + self.unchanged


@dataclass(frozen=True, slots=True)
class BatchUpdate:
    batch_id: str
    previous: BatchSnapshot | None
    current: BatchSnapshot
    observed_at: datetime
    reached_terminal: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous is None or self.previous.status != self.current.status

    @property
    def progress_changed(self) -> bool:
        if self.previous is None:
            return True
        return (
            self.previous.processed_employees != self.current.processed_employees
            or self.previous.failed_employees != self.current.failed_employees
        )


@dataclass(frozen=True, slots=True)
class InvariantViolation:
    batch_id: str
    message: str
    previous: BatchSnapshot | None
    observed: BatchSnapshot
    detected_at: datetime

    def to_error(self) -> InvariantViolationError:
        return InvariantViolationError(f"Batch {self.batch_id}: {self.message}")


@dataclass(slots=True)
class PollerStats:
    refresh_calls: int = 0
    coalesced_ticks: int = 0
    skipped_ticks: int = 0
    refresh_failures: int = 0
    listener_failures: int = 0
    violations: int = 0
