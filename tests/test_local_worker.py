from __future__ import annotations

import os
import threading
import time
from decimal import Decimal
from pathlib import Path

import pytest

import statbatch.db.session as db_session_module
from statbatch.batches.activity import ActivityCategory, ActivityLog
from statbatch.batches.orchestrator import BatchOrchestrator
from statbatch.batches.poller import ProgressPoller
from statbatch.batches.store import BatchStore
from statbatch.batches.types import BatchSnapshot, DuplicateWarning, EmployeeResultSnapshot, ScopeCriteria
from statbatch.core.config import get_settings
from statbatch.db.init_db import initialize_database
from statbatch.db.models import BatchStatus, ComputationKind, EmployeeEnrollment, EmployeeResultStatus
from statbatch.worker.pipeline import (
    EmployeeComputationError,
    LocalComputationWorker,
    ThreadedLocalTrigger,
    enqueue_batch,
    run_local_worker_once,
)


def setup_env(tmp_path: Path, *, auto_sync: bool = False, employees: int = 6) -> BatchStore:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STATBATCH_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("STATBATCH_DATABASE_URL", None)
    os.environ.pop("STATBATCH_WORKER_BASE_URL", None)
    os.environ["STATBATCH_AUTO_SYNC_COMPLETED"] = "true" if auto_sync else "false"
    os.environ["STATBATCH_FAILED_BATCH_BLOCKS_RECREATE"] = "false"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    with db_session_module.get_session_factory()() as session:
        session.add_all(
            [
                EmployeeEnrollment(
                    tenant_id="tenant-a",
                    kind=ComputationKind.ESIC,
                    employee_id=f"E{index}",
                    employee_code=f"C{index}",
                    establishment_id=7,
                    is_active=True,
                )
                for index in range(employees)
            ]
        )
        session.commit()
    return BatchStore(get_settings(), db_session_module.get_session_factory())


def esic_contribution(batch: BatchSnapshot, employee: EmployeeResultSnapshot) -> Decimal:
    if employee.employee_id == "E3":
        raise EmployeeComputationError("Gross wages above ESIC ceiling", error_type="NOT_COVERED")
    return Decimal("112.50")


def create_batch(store: BatchStore) -> str:
    result = enqueue_batch("tenant-a", ComputationKind.ESIC, "2025-04", establishment_id=7)
    assert isinstance(result, str)
    return result


def test_local_worker_processes_in_chunks(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch_id = create_batch(store)

    finished = run_local_worker_once(batch_id, esic_contribution, worker_id="local-1", chunk_size=4)

    assert finished.status == BatchStatus.COMPLETED_WITH_WARNINGS
    assert finished.processed_employees == 5
    assert finished.failed_employees == 1
    assert finished.worker_id == "local-1"
    failed = store.list_employee_results(batch_id, EmployeeResultStatus.FAILED)
    assert [(row.employee_id, row.error_type) for row in failed] == [("E3", "NOT_COVERED")]


def test_unexpected_calculator_error_fails_the_batch(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch_id = create_batch(store)

    def broken(batch: BatchSnapshot, employee: EmployeeResultSnapshot) -> Decimal:
        raise ValueError("rate table missing")

    worker = LocalComputationWorker(store, broken, worker_id="local-1", chunk_size=2)
    with pytest.raises(ValueError):
        worker.run(batch_id)

    failed = store.get_batch(batch_id)
    assert failed.status == BatchStatus.FAILED
    assert failed.error_code == "FATAL_WORKER_ERROR"
    assert failed.error_message == "ValueError: rate table missing"


def test_invalid_chunk_size_is_rejected(tmp_path: Path) -> None:
    store = setup_env(tmp_path)

    with pytest.raises(ValueError):
        LocalComputationWorker(store, esic_contribution, chunk_size=0)


def test_enqueue_batch_reports_duplicates(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch_id = create_batch(store)

    duplicate = enqueue_batch("tenant-a", "esic", "2025-04-15", establishment_id=7)

    assert isinstance(duplicate, DuplicateWarning)
    assert duplicate.existing.id == batch_id
    assert duplicate.can_supersede


def test_threaded_trigger_runs_batch_to_auto_sync(tmp_path: Path) -> None:
    store = setup_env(tmp_path, auto_sync=True)
    settings = get_settings()

    def full_contribution(batch: BatchSnapshot, employee: EmployeeResultSnapshot) -> Decimal:
        return Decimal("75.25")

    trigger = ThreadedLocalTrigger(LocalComputationWorker(store, full_contribution, worker_id="local-1", chunk_size=2))
    poller = ProgressPoller(store.refresh_batches, interval_seconds=0.02)
    activity = ActivityLog()
    poller.subscribe(activity)
    orchestrator = BatchOrchestrator(settings=settings, store=store, trigger=trigger, poller=poller)
    orchestrator.on_sync(activity.record_sync)

    try:
        batch = orchestrator.create_batch(
            "tenant-a", ComputationKind.ESIC, "2025-04", ScopeCriteria(establishment_id=7)
        )
        assert isinstance(batch, BatchSnapshot)
        accepted = orchestrator.trigger_worker(batch.id)
        assert accepted.worker_reference == "local-1"
        trigger.join(5)

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not any(
            entry.category == ActivityCategory.SYNC for entry in activity.entries()
        ):
            time.sleep(0.02)

        assert orchestrator.get_batch(batch.id).status == BatchStatus.COMPLETED
        assert batch.id not in poller.watched_ids()
        ledger = store.list_payroll_inputs("tenant-a")
        assert len(ledger) == 6
        assert {row.amount for row in ledger} == {Decimal("75.25")}
        assert {row.component_code for row in ledger} == {"ESIC_EMPLOYEE"}
    finally:
        orchestrator.close()
        poller.close()


def test_report_failure_fails_the_batch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path)
    batch_id = create_batch(store)

    def broken_report(*args: object, **kwargs: object) -> BatchSnapshot:
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "record_employee_results", broken_report)
    worker = LocalComputationWorker(store, esic_contribution, worker_id="local-1", chunk_size=4)
    with pytest.raises(RuntimeError):
        worker.run(batch_id)

    failed = store.get_batch(batch_id)
    assert failed.status == BatchStatus.FAILED
    assert failed.error_message == "RuntimeError: disk full"


def test_threaded_trigger_contains_worker_errors_and_prunes_threads(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = setup_env(tmp_path)
    escaped: list[object] = []
    monkeypatch.setattr(threading, "excepthook", escaped.append)

    def broken(batch: BatchSnapshot, employee: EmployeeResultSnapshot) -> Decimal:
        raise ValueError("rate table missing")

    trigger = ThreadedLocalTrigger(LocalComputationWorker(store, broken, worker_id="local-1", chunk_size=2))
    first = create_batch(store)
    trigger.start_computation(first, "esic-worker", {})
    trigger.join(5)

    assert escaped == []
    assert store.get_batch(first).status == BatchStatus.FAILED

    second = enqueue_batch("tenant-a", ComputationKind.ESIC, "2025-05", establishment_id=7)
    assert isinstance(second, str)
    trigger.start_computation(second, "esic-worker", {})
    assert trigger.tracked_threads() == 1
    trigger.join(5)

    assert escaped == []
    assert store.get_batch(second).status == BatchStatus.FAILED
