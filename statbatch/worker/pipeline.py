from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Sequence

from statbatch.batches.errors import BatchError
from statbatch.batches.orchestrator import BatchOrchestrator
from statbatch.batches.store import BatchStore
from statbatch.batches.types import (
    BatchSnapshot,
    DuplicateWarning,
    EmployeeResult,
    EmployeeResultSnapshot,
    ScopeCriteria,
    TriggerAccepted,
)
from statbatch.core.config import get_settings
from statbatch.db.models import ComputationKind, EmployeeResultStatus
from statbatch.db.session import get_session_factory
from statbatch.worker.trigger import HttpWorkerTrigger

logger = logging.getLogger(__name__)

Calculator = Callable[[BatchSnapshot, EmployeeResultSnapshot], Decimal]


class EmployeeComputationError(RuntimeError):
    def __init__(self, message: str, error_type: str = "COMPUTATION_ERROR"):
        super().__init__(message)
        self.error_type = error_type


class LocalComputationWorker:
    def __init__(
        self,
        store: BatchStore,
        calculator: Calculator,
        *,
        worker_id: str = "local-worker",
        chunk_size: int = 50,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._store = store
        self._calculator = calculator
        self._worker_id = worker_id
        self._chunk_size = chunk_size

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def _compute(self, batch: BatchSnapshot, employee: EmployeeResultSnapshot) -> EmployeeResult:
        try:
            amount = self._calculator(batch, employee)
        except EmployeeComputationError as exc:
            return EmployeeResult(
                employee_id=employee.employee_id,
                success=False,
                error_type=exc.error_type,
                error_message=str(exc),
            )
        return EmployeeResult(employee_id=employee.employee_id, success=True, amount=Decimal(amount))

    def run(self, batch_id: str) -> BatchSnapshot:
        batch = self._store.start_batch(batch_id, self._worker_id)
        pending = self._store.list_employee_results(batch_id, EmployeeResultStatus.PENDING)
        logger.info(
            "local worker started batch",
            extra={"batch_id": batch_id, "batch_code": batch.batch_code, "pending": len(pending)},
        )

        for start in range(0, len(pending), self._chunk_size):
            chunk = pending[start : start + self._chunk_size]
            try:
                results = [self._compute(batch, employee) for employee in chunk]
                batch = self._store.record_employee_results(batch_id, self._worker_id, results)
            except Exception as exc:
                logger.exception("local worker aborted batch", extra={"batch_id": batch_id})
                self._abort(batch_id, exc)
                raise

        return batch

    def _abort(self, batch_id: str, exc: Exception) -> None:
        try:
            self._store.fail_batch(batch_id, self._worker_id, f"{type(exc).__name__}: {exc}")
        except BatchError:
            logger.warning(
                "aborted batch could not be marked failed",
                extra={"batch_id": batch_id, "worker_id": self._worker_id},
                exc_info=True,
            )


class ThreadedLocalTrigger:
    def __init__(self, worker: LocalComputationWorker):
        self._worker = worker
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def start_computation(
        self, batch_id: str, function_name: str, scope_summary: dict[str, Any]
    ) -> TriggerAccepted:
        thread = threading.Thread(
            target=self._run,
            args=(batch_id,),
            name=f"statbatch-local-{function_name}",
            daemon=True,
        )
        with self._lock:
            self._threads = [running for running in self._threads if running.is_alive()]
            self._threads.append(thread)
        thread.start()
        return TriggerAccepted(
            batch_id=batch_id,
            function_name=function_name,
            accepted_at=datetime.now(tz=timezone.utc),
            worker_reference=self._worker.worker_id,
        )

    def _run(self, batch_id: str) -> None:
        try:
            self._worker.run(batch_id)
        except Exception:
            logger.exception("local worker could not finish batch", extra={"batch_id": batch_id})

    def tracked_threads(self) -> int:
        with self._lock:
            return len(self._threads)

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)


def enqueue_batch(
    tenant_id: str,
    kind: ComputationKind | str,
    period: date | str,
    *,
    establishment_id: int | None = None,
    financial_year: str | None = None,
    employee_codes: Sequence[str] = (),
    created_by: str | None = None,
    reason: str | None = None,
    force: bool = False,
) -> str | DuplicateWarning:
    settings = get_settings()
    store = BatchStore(settings=settings, session_factory=get_session_factory())
    trigger = HttpWorkerTrigger(settings)
    try:
        result = BatchOrchestrator(settings=settings, store=store, trigger=trigger).create_batch(
            tenant_id,
            kind,
            period,
            ScopeCriteria(
                establishment_id=establishment_id,
                financial_year=financial_year,
                employee_codes=tuple(employee_codes),
            ),
            created_by=created_by,
            reason=reason,
            force=force,
        )
    finally:
        trigger.close()
    if isinstance(result, DuplicateWarning):
        return result
    return result.id


def run_local_worker_once(
    batch_id: str,
    calculator: Calculator,
    *,
    worker_id: str = "local-worker",
    chunk_size: int = 50,
) -> BatchSnapshot:
    store = BatchStore(settings=get_settings(), session_factory=get_session_factory())
    worker = LocalComputationWorker(store, calculator, worker_id=worker_id, chunk_size=chunk_size)
    return worker.run(batch_id)
