from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from statbatch.batches.errors import (
    BatchCodeCollisionError,
    BatchNotFoundError,
    BatchValidationError,
    DuplicateBatchError,
    InvalidBatchStateError,
    WorkerConflictError,
)
from statbatch.batches.types import (
    BatchDraft,
    BatchFilter,
    BatchSnapshot,
    EligibilityCriteria,
    EligibleEmployee,
    EmployeeResult,
    EmployeeResultSnapshot,
    PayrollInputEntry,
    UpsertOutcome,
)
from statbatch.core.config import Settings
from statbatch.db.models import (
    ACTIVE_BATCH_STATUSES,
    BatchEmployee,
    BatchStatus,
    ComputationBatch,
    ComputationKind,
    DataSource,
    EmployeeEnrollment,
    EmployeeResultStatus,
    PayrollInput,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.QUEUED: {BatchStatus.RUNNING, BatchStatus.FAILED},
    BatchStatus.RUNNING: {BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_WARNINGS, BatchStatus.FAILED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.COMPLETED_WITH_WARNINGS: set(),
    BatchStatus.FAILED: set(),
}

ORDERINGS: dict[str, tuple[Any, ...]] = {
    "created_at_desc": (ComputationBatch.created_at.desc(), ComputationBatch.id.desc()),
    "created_at_asc": (ComputationBatch.created_at.asc(), ComputationBatch.id.asc()),
    "updated_at_desc": (ComputationBatch.updated_at.desc(), ComputationBatch.id.desc()),
    "period_desc": (ComputationBatch.period.desc(), ComputationBatch.created_at.desc(), ComputationBatch.id.desc()),
}

MONEY_QUANTUM = Decimal("0.01")


@dataclass(slots=True)
class BatchListResult:
    items: list[BatchSnapshot]
    next_offset: int | None


class BatchStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _enforce_transition(self, from_status: BatchStatus, to_status: BatchStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidBatchStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _normalize_worker_id(self, worker_id: str) -> str:
        normalized = worker_id.strip()
        if not normalized:
            raise BatchValidationError("worker_id cannot be blank")
        return normalized

    def _load_batch(self, session: Session, batch_id: str) -> ComputationBatch:
        batch = session.get(ComputationBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return batch

    def _natural_key_clause(self, tenant_id: str, kind: ComputationKind, scope_key: str, period: date) -> list[Any]:
        return [
            ComputationBatch.tenant_id == tenant_id,
            ComputationBatch.kind == kind,
            ComputationBatch.scope_key == scope_key,
            ComputationBatch.period == period,
        ]

    def get_batch(self, batch_id: str) -> BatchSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load_batch(session, batch_id))

    def _bounded_limit(self, limit: int | None) -> int:
        bounded = self._settings.default_page_size if limit is None else limit
        return max(1, min(bounded, self._settings.max_page_size))

    def list_batches(
        self,
        batch_filter: BatchFilter | None = None,
        order_by: str = "created_at_desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BatchSnapshot]:
        criteria = batch_filter or BatchFilter()
        if criteria.batch_ids is not None:
            if not criteria.batch_ids:
                return []
            # Bulk refreshes must see every requested id regardless of page size.
            fetch_limit = len(criteria.batch_ids) if limit is None else limit
        else:
            fetch_limit = self._bounded_limit(limit)
        return self._select_batches(criteria, order_by, fetch_limit, offset)

    def list_batch_page(
        self,
        batch_filter: BatchFilter | None = None,
        order_by: str = "created_at_desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> BatchListResult:
        bounded_limit = self._bounded_limit(limit)
        rows = self._select_batches(batch_filter or BatchFilter(), order_by, bounded_limit + 1, offset)
        items = rows[:bounded_limit]
        next_offset = offset + bounded_limit if len(rows) > bounded_limit else None
        return BatchListResult(items=items, next_offset=next_offset)

    def _select_batches(
        self, criteria: BatchFilter, order_by: str, limit: int, offset: int
    ) -> list[BatchSnapshot]:
        ordering = ORDERINGS.get(order_by)
        if ordering is None:
            raise BatchValidationError(f"Unsupported ordering: {order_by}. Allowed: {', '.join(sorted(ORDERINGS))}")
        if offset < 0:
            raise BatchValidationError("offset must be >= 0")

        stmt = select(ComputationBatch).order_by(*ordering)
        if criteria.tenant_id is not None:
            stmt = stmt.where(ComputationBatch.tenant_id == criteria.tenant_id)
        if criteria.kind is not None:
            stmt = stmt.where(ComputationBatch.kind == criteria.kind)
        if criteria.scope_key is not None:
            stmt = stmt.where(ComputationBatch.scope_key == criteria.scope_key)
        if criteria.period is not None:
            stmt = stmt.where(ComputationBatch.period == criteria.period)
        if criteria.statuses is not None:
            stmt = stmt.where(ComputationBatch.status.in_(list(criteria.statuses)))
        if criteria.batch_ids is not None:
            if not criteria.batch_ids:
                return []
            stmt = stmt.where(ComputationBatch.id.in_(list(criteria.batch_ids)))

        stmt = stmt.limit(limit).offset(offset)
        with self._session_factory() as session:
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def refresh_batches(self, batch_ids: Sequence[str]) -> list[BatchSnapshot]:
        return self.list_batches(BatchFilter(batch_ids=tuple(batch_ids)), order_by="created_at_asc")

    def find_active_batch(
        self, tenant_id: str, kind: ComputationKind, scope_key: str, period: date
    ) -> BatchSnapshot | None:
        with self._session_factory() as session:
            row = session.scalar(
                select(ComputationBatch)
                .where(
                    *self._natural_key_clause(tenant_id, kind, scope_key, period),
                    ComputationBatch.status.in_(list(ACTIVE_BATCH_STATUSES)),
                )
                .order_by(ComputationBatch.created_at.desc(), ComputationBatch.id.desc())
                .limit(1)
            )
            return None if row is None else self._to_snapshot(row)

    def find_latest_batch(
        self, tenant_id: str, kind: ComputationKind, scope_key: str, period: date
    ) -> BatchSnapshot | None:
        with self._session_factory() as session:
            row = session.scalar(
                select(ComputationBatch)
                .where(*self._natural_key_clause(tenant_id, kind, scope_key, period))
                .order_by(ComputationBatch.created_at.desc(), ComputationBatch.id.desc())
                .limit(1)
            )
            return None if row is None else self._to_snapshot(row)

    def get_eligible_employees(self, criteria: EligibilityCriteria) -> list[EligibleEmployee]:
        stmt = (
            select(EmployeeEnrollment.employee_id, EmployeeEnrollment.employee_code)
            .where(
                EmployeeEnrollment.tenant_id == criteria.tenant_id,
                EmployeeEnrollment.kind == criteria.kind,
                EmployeeEnrollment.is_active.is_(True),
            )
            .order_by(EmployeeEnrollment.employee_id.asc(), EmployeeEnrollment.id.asc())
        )
        if criteria.establishment_id is not None:
            stmt = stmt.where(EmployeeEnrollment.establishment_id == criteria.establishment_id)
        if criteria.financial_year is not None:
            stmt = stmt.where(EmployeeEnrollment.financial_year == criteria.financial_year)
        if criteria.employee_codes:
            stmt = stmt.where(EmployeeEnrollment.employee_code.in_(list(criteria.employee_codes)))

        employees: list[EligibleEmployee] = []
        seen: set[str] = set()
        with self._session_factory() as session:
            for employee_id, employee_code in session.execute(stmt):
                if employee_id in seen:
                    continue
                seen.add(employee_id)
                employees.append(EligibleEmployee(employee_id=employee_id, employee_code=employee_code))
                if len(employees) > criteria.limit:
                    raise BatchValidationError(
                        f"Scope has more than {criteria.limit} eligible employees; narrow the scope or raise the limit"
                    )
        return employees

    def create_batch_record(self, draft: BatchDraft) -> BatchSnapshot:
        if not draft.employees:
            raise BatchValidationError("no eligible employees")

        now = self._now()
        batch_id = str(uuid4())
        with self._session_factory() as session:
            batch = ComputationBatch(
                id=batch_id,
                batch_code=draft.batch_code,
                tenant_id=draft.tenant_id,
                kind=draft.kind,
                scope_key=draft.scope_key,
                period=draft.period,
                status=BatchStatus.QUEUED,
                total_employees=len(draft.employees),
                processed_employees=0,
                failed_employees=0,
                reason=draft.reason,
                created_by=draft.created_by,
                trigger_attempts=0,
                created_at=now,
                updated_at=now,
            )
            try:
                session.add(batch)
                # The parent row must exist before the frozen scope rows reference it.
                session.flush()
                session.add_all(
                    [
                        BatchEmployee(
                            batch_id=batch_id,
                            employee_id=employee.employee_id,
                            employee_code=employee.employee_code,
                            status=EmployeeResultStatus.PENDING,
                        )
                        for employee in draft.employees
                    ]
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                existing = session.scalar(
                    select(ComputationBatch.id).where(
                        *self._natural_key_clause(draft.tenant_id, draft.kind, draft.scope_key, draft.period),
                        ComputationBatch.status.in_(list(ACTIVE_BATCH_STATUSES)),
                    )
                )
                if existing is not None:
                    raise DuplicateBatchError(
                        f"An active batch already covers {draft.scope_key} for {draft.period.isoformat()}",
                        existing_batch_id=existing,
                    ) from exc
                code_taken = session.scalar(
                    select(ComputationBatch.id).where(
                        ComputationBatch.tenant_id == draft.tenant_id,
                        ComputationBatch.batch_code == draft.batch_code,
                    )
                )
                if code_taken is not None:
                    raise BatchCodeCollisionError(
                        f"Batch code already in use: {draft.batch_code}", batch_code=draft.batch_code
                    ) from exc
                raise
            session.refresh(batch)
            return self._to_snapshot(batch)

    def list_employee_results(
        self, batch_id: str, status: EmployeeResultStatus | None = None
    ) -> list[EmployeeResultSnapshot]:
        with self._session_factory() as session:
            self._load_batch(session, batch_id)
            stmt = (
                select(BatchEmployee)
                .where(BatchEmployee.batch_id == batch_id)
                .order_by(BatchEmployee.employee_id.asc(), BatchEmployee.id.asc())
            )
            if status is not None:
                stmt = stmt.where(BatchEmployee.status == status)
            return [self._to_result_snapshot(row) for row in session.scalars(stmt).all()]

    def record_trigger_attempt(self, batch_id: str, error: str | None = None) -> BatchSnapshot:
        with self._session_factory() as session:
            batch = self._load_batch(session, batch_id)
            batch.trigger_attempts = (batch.trigger_attempts or 0) + 1
            batch.last_trigger_error = error
            batch.updated_at = self._now()
            session.commit()
            session.refresh(batch)
            return self._to_snapshot(batch)

    def supersede_batch(self, batch_id: str, reason: str | None = None) -> BatchSnapshot:
        with self._session_factory() as session:
            batch = self._load_batch(session, batch_id)
            if batch.status != BatchStatus.QUEUED:
                raise InvalidBatchStateError(f"Only queued batches can be superseded, batch {batch_id} is {batch.status.value}")
            self._enforce_transition(batch.status, BatchStatus.FAILED)
            now = self._now()
            result = session.execute(
                update(ComputationBatch)
                .where(ComputationBatch.id == batch_id, ComputationBatch.status == BatchStatus.QUEUED)
                .values(
                    status=BatchStatus.FAILED,
                    error_code="SUPERSEDED",
                    error_message=reason or "Superseded by a newer batch for the same scope and period",
                    finished_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidBatchStateError(f"Batch {batch_id} changed state before it could be superseded")
            session.commit()
            session.refresh(batch)
            logger.info("batch superseded", extra={"batch_id": batch_id, "batch_code": batch.batch_code})
            return self._to_snapshot(batch)

    def start_batch(self, batch_id: str, worker_id: str) -> BatchSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            batch = self._load_batch(session, batch_id)
            if batch.status == BatchStatus.RUNNING:
                if batch.worker_id == normalized_worker_id:
                    return self._to_snapshot(batch)
                raise WorkerConflictError("Batch is already bound to a different worker")
            self._enforce_transition(batch.status, BatchStatus.RUNNING)

            now = self._now()
            result = session.execute(
                update(ComputationBatch)
                .where(ComputationBatch.id == batch_id, ComputationBatch.status == BatchStatus.QUEUED)
                .values(
                    status=BatchStatus.RUNNING,
                    worker_id=normalized_worker_id,
                    started_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise WorkerConflictError(f"Batch {batch_id} was claimed by another worker")
            session.commit()
            session.refresh(batch)
            return self._to_snapshot(batch)

    def record_employee_results(
        self, batch_id: str, worker_id: str, results: Sequence[EmployeeResult]
    ) -> BatchSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            batch = self._load_batch(session, batch_id)
            if batch.status != BatchStatus.RUNNING:
                raise InvalidBatchStateError(f"Batch {batch_id} is not running")
            if batch.worker_id != normalized_worker_id:
                raise WorkerConflictError("Only the worker that started the batch may report results")

            requested_ids = {result.employee_id for result in results}
            known_ids: set[str] = set()
            if requested_ids:
                known_ids = set(
                    session.scalars(
                        select(BatchEmployee.employee_id).where(
                            BatchEmployee.batch_id == batch_id,
                            BatchEmployee.employee_id.in_(list(requested_ids)),
                        )
                    ).all()
                )
            unknown = sorted(requested_ids - known_ids)
            if unknown:
                raise BatchValidationError(f"Employees are not part of batch {batch_id}: {', '.join(unknown)}")
            missing_amount = sorted(result.employee_id for result in results if result.success and result.amount is None)
            if missing_amount:
                raise BatchValidationError(f"Processed employees have no amount: {', '.join(missing_amount)}")

            now = self._now()
            processed = 0
            failed = 0
            for result in results:
                if result.success and result.amount is not None:
                    values: dict[str, Any] = {
                        "status": EmployeeResultStatus.PROCESSED,
                        "amount": Decimal(result.amount).quantize(MONEY_QUANTUM),
                        "processed_at": now,
                    }
                else:
                    values = {
                        "status": EmployeeResultStatus.FAILED,
                        "error_type": result.error_type or "COMPUTATION_ERROR",
                        "error_message": result.error_message,
                        "processed_at": now,
                    }
                settled = session.execute(
                    update(BatchEmployee)
                    .where(
                        BatchEmployee.batch_id == batch_id,
                        BatchEmployee.employee_id == result.employee_id,
                        BatchEmployee.status == EmployeeResultStatus.PENDING,
                    )
                    .values(**values)
                )
                if settled.rowcount == 0:
                    continue
                if result.success:
                    processed += 1
                else:
                    failed += 1

            counters = session.execute(
                update(ComputationBatch)
                .where(
                    ComputationBatch.id == batch_id,
                    ComputationBatch.status == BatchStatus.RUNNING,
                    ComputationBatch.worker_id == normalized_worker_id,
                )
                .values(
                    processed_employees=ComputationBatch.processed_employees + processed,
                    failed_employees=ComputationBatch.failed_employees + failed,
                    updated_at=now,
                )
            )
            if counters.rowcount != 1:
                session.rollback()
                raise InvalidBatchStateError(f"Batch {batch_id} left the running state while results were reported")

            session.refresh(batch)
            if batch.processed_employees + batch.failed_employees >= batch.total_employees:
                next_status = (
                    BatchStatus.COMPLETED if batch.failed_employees == 0 else BatchStatus.COMPLETED_WITH_WARNINGS
                )
                self._enforce_transition(batch.status, next_status)
                batch.status = next_status
                batch.finished_at = now
                batch.updated_at = now
            session.commit()
            session.refresh(batch)
            return self._to_snapshot(batch)

    def fail_batch(self, batch_id: str, worker_id: str, error_message: str | None = None) -> BatchSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            batch = self._load_batch(session, batch_id)
            if batch.status != BatchStatus.RUNNING:
                raise InvalidBatchStateError(f"Batch {batch_id} is not running")
            if batch.worker_id != normalized_worker_id:
                raise WorkerConflictError("Only the worker that started the batch may fail it")
            self._enforce_transition(batch.status, BatchStatus.FAILED)
            now = self._now()
            batch.status = BatchStatus.FAILED
            batch.error_code = "FATAL_WORKER_ERROR"
            batch.error_message = error_message
            batch.finished_at = now
            batch.updated_at = now
            session.commit()
            session.refresh(batch)
            return self._to_snapshot(batch)

    def list_stale_batches(self, cutoff: datetime) -> list[BatchSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ComputationBatch)
                .where(ComputationBatch.status == BatchStatus.RUNNING, ComputationBatch.updated_at < cutoff)
                .order_by(ComputationBatch.updated_at.asc(), ComputationBatch.id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def fail_stale_batches(self, cutoff: datetime) -> list[BatchSnapshot]:
        now = self._now()
        healed: list[BatchSnapshot] = []
        with self._session_factory() as session:
            stale = list(
                session.scalars(
                    select(ComputationBatch).where(
                        ComputationBatch.status == BatchStatus.RUNNING,
                        ComputationBatch.updated_at < cutoff,
                    )
                ).all()
            )
            for batch in stale:
                self._enforce_transition(batch.status, BatchStatus.FAILED)
                batch.status = BatchStatus.FAILED
                batch.error_code = "STALE_WORKER"
                batch.error_message = "Worker stopped reporting progress"
                batch.finished_at = now
                batch.updated_at = now
            if stale:
                session.commit()
            for batch in stale:
                healed.append(self._to_snapshot(batch))
        return healed

    def count_by_status(self, tenant_id: str | None = None) -> dict[BatchStatus, int]:
        stmt = select(ComputationBatch.status, func.count()).group_by(ComputationBatch.status)
        if tenant_id is not None:
            stmt = stmt.where(ComputationBatch.tenant_id == tenant_id)
        with self._session_factory() as session:
            counts = dict(session.execute(stmt).all())
        return {status: int(counts.get(status, 0)) for status in BatchStatus}

    def upsert_payroll_input(
        self,
        tenant_id: str,
        employee_id: str,
        period: date,
        component_code: str,
        amount: Decimal,
        source: DataSource = DataSource.SYSTEM_COMPUTED,
        source_batch_id: str | None = None,
    ) -> UpsertOutcome:
        entry = PayrollInputEntry(
            employee_id=employee_id,
            period=period,
            component_code=component_code,
            amount=amount,
            source=source,
            source_batch_id=source_batch_id,
        )
        return self.upsert_payroll_inputs(tenant_id, [entry])[0]

    def upsert_payroll_inputs(self, tenant_id: str, entries: Sequence[PayrollInputEntry]) -> list[UpsertOutcome]:
        if not entries:
            return []
        try:
            return self._upsert_payroll_inputs_once(tenant_id, entries)
        except IntegrityError:
            # A concurrent writer inserted one of the keys first; the second pass sees it as an update.
            logger.warning("payroll input upsert raced with another writer, retrying", extra={"tenant_id": tenant_id})
            return self._upsert_payroll_inputs_once(tenant_id, entries)

    def _upsert_payroll_inputs_once(
        self, tenant_id: str, entries: Sequence[PayrollInputEntry]
    ) -> list[UpsertOutcome]:
        now = self._now()
        outcomes: list[UpsertOutcome] = []
        with self._session_factory() as session:
            for entry in entries:
                amount = Decimal(entry.amount).quantize(MONEY_QUANTUM)
                row = session.scalar(
                    select(PayrollInput).where(
                        PayrollInput.tenant_id == tenant_id,
                        PayrollInput.employee_id == entry.employee_id,
                        PayrollInput.period == entry.period,
                        PayrollInput.component_code == entry.component_code,
                    )
                )
                if row is None:
                    session.add(
                        PayrollInput(
                            tenant_id=tenant_id,
                            employee_id=entry.employee_id,
                            period=entry.period,
                            component_code=entry.component_code,
                            amount=amount,
                            data_source=entry.source,
                            source_batch_id=entry.source_batch_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    session.flush()
                    outcomes.append(UpsertOutcome.INSERTED)
                    continue
                if row.data_source == DataSource.MANUAL and entry.source != DataSource.MANUAL:
                    outcomes.append(UpsertOutcome.SKIPPED_MANUAL)
                    continue
                if Decimal(row.amount) == amount and row.data_source == entry.source:
                    if row.source_batch_id != entry.source_batch_id:
                        row.source_batch_id = entry.source_batch_id
                        row.updated_at = now
                    outcomes.append(UpsertOutcome.UNCHANGED)
                    continue
                row.amount = amount
                row.data_source = entry.source
                row.source_batch_id = entry.source_batch_id
                row.updated_at = now
                outcomes.append(UpsertOutcome.UPDATED)
            session.commit()
        return outcomes

    def list_payroll_inputs(
        self,
        tenant_id: str,
        period: date | None = None,
        component_code: str | None = None,
    ) -> list[PayrollInputEntry]:
        stmt = (
            select(PayrollInput)
            .where(PayrollInput.tenant_id == tenant_id)
            .order_by(PayrollInput.period.asc(), PayrollInput.employee_id.asc(), PayrollInput.component_code.asc())
        )
        if period is not None:
            stmt = stmt.where(PayrollInput.period == period)
        if component_code is not None:
            stmt = stmt.where(PayrollInput.component_code == component_code)
        with self._session_factory() as session:
            return [
                PayrollInputEntry(
                    employee_id=row.employee_id,
                    period=row.period,
                    component_code=row.component_code,
                    amount=Decimal(row.amount),
                    source=row.data_source,
                    source_batch_id=row.source_batch_id,
                )
                for row in session.scalars(stmt).all()
            ]

    def _to_snapshot(self, batch: ComputationBatch) -> BatchSnapshot:
        created_at = self._coerce_utc(batch.created_at)
        updated_at = self._coerce_utc(batch.updated_at)
        assert created_at is not None and updated_at is not None
        return BatchSnapshot(
            id=batch.id,
            batch_code=batch.batch_code,
            tenant_id=batch.tenant_id,
            kind=batch.kind,
            scope_key=batch.scope_key,
            period=batch.period,
            status=batch.status,
            total_employees=batch.total_employees,
            processed_employees=batch.processed_employees,
            failed_employees=batch.failed_employees,
            reason=batch.reason,
            created_by=batch.created_by,
            trigger_attempts=batch.trigger_attempts or 0,
            last_trigger_error=batch.last_trigger_error,
            worker_id=batch.worker_id,
            error_code=batch.error_code,
            error_message=batch.error_message,
            created_at=created_at,
            updated_at=updated_at,
            started_at=self._coerce_utc(batch.started_at),
            finished_at=self._coerce_utc(batch.finished_at),
        )

    def _to_result_snapshot(self, row: BatchEmployee) -> EmployeeResultSnapshot:
        return EmployeeResultSnapshot(
            employee_id=row.employee_id,
            employee_code=row.employee_code,
            status=row.status,
            amount=None if row.amount is None else Decimal(row.amount),
            error_type=row.error_type,
            error_message=row.error_message,
            processed_at=self._coerce_utc(row.processed_at),
        )


def batch_snapshot_to_dict(snapshot: BatchSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["kind"] = snapshot.kind.value
    payload["status"] = snapshot.status.value
    payload["progress_percentage"] = snapshot.progress_percentage
    payload["remaining_employees"] = snapshot.remaining_employees
    payload["is_terminal"] = snapshot.is_terminal
    failure_kind = snapshot.failure_kind
    payload["failure_kind"] = None if failure_kind is None else failure_kind.value
    return payload


def employee_result_to_dict(snapshot: EmployeeResultSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["status"] = snapshot.status.value
    return payload
