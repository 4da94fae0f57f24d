from __future__ import annotations

import os
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

import statbatch.db.session as db_session_module
from statbatch.batches.errors import (
    BatchCodeCollisionError,
    BatchNotFoundError,
    BatchValidationError,
    InvalidBatchStateError,
    WorkerConflictError,
)
from statbatch.batches.store import BatchStore
from statbatch.batches.types import (
    BatchDraft,
    BatchFilter,
    BatchSnapshot,
    EligibleEmployee,
    EmployeeResult,
    PayrollInputEntry,
    UpsertOutcome,
)
from statbatch.core.config import get_settings
from statbatch.db.init_db import initialize_database
from statbatch.db.models import BatchStatus, ComputationKind, DataSource, EmployeeResultStatus


def setup_env(tmp_path: Path) -> BatchStore:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STATBATCH_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("STATBATCH_DATABASE_URL", None)
    os.environ["STATBATCH_DEFAULT_PAGE_SIZE"] = "2"
    os.environ["STATBATCH_MAX_PAGE_SIZE"] = "3"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    store = BatchStore(get_settings(), db_session_module.get_session_factory())
    os.environ.pop("STATBATCH_DEFAULT_PAGE_SIZE", None)
    os.environ.pop("STATBATCH_MAX_PAGE_SIZE", None)
    return store


def create_batch(
    store: BatchStore,
    *,
    employees: int = 3,
    scope_key: str = "establishment:7",
    period: date = date(2025, 4, 1),
    kind: ComputationKind = ComputationKind.PF,
    tenant_id: str = "tenant-a",
) -> BatchSnapshot:
    return store.create_batch_record(
        BatchDraft(
            tenant_id=tenant_id,
            kind=kind,
            scope_key=scope_key,
            period=period,
            batch_code=f"PF-{period:%Y%m}-{scope_key[-1]}{employees:05d}",
            employees=tuple(EligibleEmployee(employee_id=f"E{index}") for index in range(employees)),
        )
    )


def test_worker_drives_batch_to_completion(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)

    running = store.start_batch(batch.id, "worker-a")
    assert running.status == BatchStatus.RUNNING
    assert running.worker_id == "worker-a"
    assert running.started_at is not None

    partial = store.record_employee_results(
        batch.id,
        "worker-a",
        [EmployeeResult(employee_id="E0", success=True, amount=Decimal("1800"))],
    )
    assert partial.status == BatchStatus.RUNNING
    assert partial.processed_employees == 1
    assert partial.progress_percentage == 33
    assert partial.remaining_employees == 2

    done = store.record_employee_results(
        batch.id,
        "worker-a",
        [
            EmployeeResult(employee_id="E1", success=True, amount=Decimal("1500.456")),
            EmployeeResult(employee_id="E2", success=True, amount=Decimal("0")),
        ],
    )
    assert done.status == BatchStatus.COMPLETED
    assert done.processed_employees == 3
    assert done.failed_employees == 0
    assert done.progress_percentage == 100
    assert done.finished_at is not None

    amounts = {row.employee_id: row.amount for row in store.list_employee_results(batch.id)}
    assert amounts == {"E0": Decimal("1800.00"), "E1": Decimal("1500.46"), "E2": Decimal("0.00")}


def test_partial_failures_complete_with_warnings(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)
    store.start_batch(batch.id, "worker-a")

    done = store.record_employee_results(
        batch.id,
        "worker-a",
        [
            EmployeeResult(employee_id="E0", success=True, amount=Decimal("10")),
            EmployeeResult(
                employee_id="E1", success=False, error_type="MISSING_SALARY", error_message="No salary structure"
            ),
            EmployeeResult(employee_id="E2", success=True, amount=Decimal("20")),
        ],
    )

    assert done.status == BatchStatus.COMPLETED_WITH_WARNINGS
    assert done.failed_employees == 1
    assert done.failure_kind is not None
    failed = store.list_employee_results(batch.id, EmployeeResultStatus.FAILED)
    assert [(row.employee_id, row.error_type, row.error_message) for row in failed] == [
        ("E1", "MISSING_SALARY", "No salary structure")
    ]


def test_start_is_idempotent_for_the_same_worker(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)

    first = store.start_batch(batch.id, "worker-a")
    again = store.start_batch(batch.id, " worker-a ")

    assert again.started_at == first.started_at
    with pytest.raises(WorkerConflictError):
        store.start_batch(batch.id, "worker-b")
    with pytest.raises(BatchValidationError):
        store.start_batch(batch.id, "  ")


def test_only_the_bound_worker_may_report(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)

    with pytest.raises(InvalidBatchStateError):
        store.record_employee_results(batch.id, "worker-a", [EmployeeResult(employee_id="E0", success=True, amount=Decimal("1"))])

    store.start_batch(batch.id, "worker-a")
    with pytest.raises(WorkerConflictError):
        store.record_employee_results(batch.id, "worker-b", [EmployeeResult(employee_id="E0", success=True, amount=Decimal("1"))])
    with pytest.raises(WorkerConflictError):
        store.fail_batch(batch.id, "worker-b", "boom")


def test_re_reported_employees_are_not_counted_twice(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)
    store.start_batch(batch.id, "worker-a")
    result = EmployeeResult(employee_id="E0", success=True, amount=Decimal("5"))

    store.record_employee_results(batch.id, "worker-a", [result])
    repeated = store.record_employee_results(
        batch.id,
        "worker-a",
        [result, EmployeeResult(employee_id="E0", success=False, error_type="LATE")],
    )

    assert repeated.processed_employees == 1
    assert repeated.failed_employees == 0
    row = store.list_employee_results(batch.id, EmployeeResultStatus.PROCESSED)[0]
    assert row.amount == Decimal("5.00")


def test_invalid_reports_leave_counters_untouched(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)
    store.start_batch(batch.id, "worker-a")

    with pytest.raises(BatchValidationError, match="not part of batch"):
        store.record_employee_results(
            batch.id,
            "worker-a",
            [
                EmployeeResult(employee_id="E0", success=True, amount=Decimal("1")),
                EmployeeResult(employee_id="E99", success=True, amount=Decimal("1")),
            ],
        )
    with pytest.raises(BatchValidationError, match="no amount"):
        store.record_employee_results(batch.id, "worker-a", [EmployeeResult(employee_id="E0", success=True)])

    current = store.get_batch(batch.id)
    assert current.processed_employees == 0
    assert current.failed_employees == 0


def test_terminal_batches_are_immutable(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store, employees=1)
    store.start_batch(batch.id, "worker-a")
    store.record_employee_results(batch.id, "worker-a", [EmployeeResult(employee_id="E0", success=True, amount=Decimal("1"))])

    with pytest.raises(InvalidBatchStateError):
        store.start_batch(batch.id, "worker-a")
    with pytest.raises(InvalidBatchStateError):
        store.fail_batch(batch.id, "worker-a", "late failure")
    with pytest.raises(InvalidBatchStateError):
        store.supersede_batch(batch.id)
    assert store.get_batch(batch.id).status == BatchStatus.COMPLETED


def test_fail_batch_marks_fatal_error(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)
    store.start_batch(batch.id, "worker-a")
    store.record_employee_results(batch.id, "worker-a", [EmployeeResult(employee_id="E0", success=True, amount=Decimal("1"))])

    failed = store.fail_batch(batch.id, "worker-a", "calculation service crashed")

    assert failed.status == BatchStatus.FAILED
    assert failed.error_code == "FATAL_WORKER_ERROR"
    assert failed.error_message == "calculation service crashed"
    assert failed.processed_employees == 1
    assert failed.is_terminal


def test_missing_batches_raise_not_found(tmp_path: Path) -> None:
    store = setup_env(tmp_path)

    with pytest.raises(BatchNotFoundError):
        store.get_batch("missing")
    with pytest.raises(BatchNotFoundError):
        store.list_employee_results("missing")
    with pytest.raises(BatchNotFoundError):
        store.start_batch("missing", "worker-a")


def test_trigger_attempts_are_counted(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    batch = create_batch(store)

    rejected = store.record_trigger_attempt(batch.id, error="worker unavailable")
    accepted = store.record_trigger_attempt(batch.id)

    assert rejected.trigger_attempts == 1
    assert rejected.last_trigger_error == "worker unavailable"
    assert accepted.trigger_attempts == 2
    assert accepted.last_trigger_error is None
    assert accepted.status == BatchStatus.QUEUED


def test_list_batches_filters_orders_and_bounds_pages(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    april = create_batch(store, scope_key="establishment:1", period=date(2025, 4, 1))
    may = create_batch(store, scope_key="establishment:2", period=date(2025, 5, 1))
    june = create_batch(store, scope_key="establishment:3", period=date(2025, 6, 1))
    other_tenant = create_batch(store, scope_key="establishment:4", tenant_id="tenant-b")
    store.start_batch(may.id, "worker-a")

    assert len(store.list_batches()) == 2
    assert len(store.list_batches(limit=50)) == 3
    assert [item.id for item in store.list_batches(BatchFilter(tenant_id="tenant-a"), order_by="period_desc", limit=3)] == [
        june.id,
        may.id,
        april.id,
    ]
    running = store.list_batches(BatchFilter(statuses=frozenset({BatchStatus.RUNNING})))
    assert [item.id for item in running] == [may.id]

    ids = (april.id, may.id, june.id, other_tenant.id)
    assert {item.id for item in store.refresh_batches(ids)} == set(ids)
    assert store.refresh_batches([]) == []

    with pytest.raises(BatchValidationError):
        store.list_batches(order_by="batch_code")
    with pytest.raises(BatchValidationError):
        store.list_batches(offset=-1)


def test_batch_page_reports_next_offset_at_the_page_size_cap(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    for index in range(1, 5):
        create_batch(store, scope_key=f"establishment:{index}")

    first = store.list_batch_page(limit=3)
    assert len(first.items) == 3
    assert first.next_offset == 3

    clamped = store.list_batch_page(limit=50)
    assert len(clamped.items) == 3
    assert clamped.next_offset == 3

    last = store.list_batch_page(limit=3, offset=3)
    assert len(last.items) == 1
    assert last.next_offset is None
    assert len({item.id for item in first.items + last.items}) == 4


def test_created_batch_freezes_scope_with_foreign_keys_enforced(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    with db_session_module.get_session_factory()() as session:
        assert session.execute(text("PRAGMA foreign_keys")).scalar() == 1

    batch = create_batch(store, employees=4)

    frozen = store.list_employee_results(batch.id)
    assert [row.employee_id for row in frozen] == ["E0", "E1", "E2", "E3"]
    assert {row.status for row in frozen} == {EmployeeResultStatus.PENDING}


def test_reused_batch_code_raises_collision(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    existing = create_batch(store)

    with pytest.raises(BatchCodeCollisionError) as exc_info:
        store.create_batch_record(
            BatchDraft(
                tenant_id="tenant-a",
                kind=ComputationKind.PF,
                scope_key="establishment:8",
                period=date(2025, 4, 1),
                batch_code=existing.batch_code,
                employees=(EligibleEmployee(employee_id="E1"),),
            )
        )

    assert exc_info.value.batch_code == existing.batch_code
    assert [item.id for item in store.list_batches()] == [existing.id]


def test_unrelated_integrity_errors_propagate_without_partial_rows(tmp_path: Path) -> None:
    store = setup_env(tmp_path)

    with pytest.raises(IntegrityError):
        store.create_batch_record(
            BatchDraft(
                tenant_id="tenant-a",
                kind=ComputationKind.PF,
                scope_key="establishment:7",
                period=date(2025, 4, 1),
                batch_code="PF-202504-DUPEMP",
                employees=(EligibleEmployee(employee_id="E1"), EligibleEmployee(employee_id="E1")),
            )
        )

    assert store.list_batches() == []


def test_count_by_status_reports_every_status(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    first = create_batch(store, scope_key="establishment:1")
    create_batch(store, scope_key="establishment:2")
    store.start_batch(first.id, "worker-a")

    counts = store.count_by_status()

    assert counts[BatchStatus.QUEUED] == 1
    assert counts[BatchStatus.RUNNING] == 1
    assert counts[BatchStatus.FAILED] == 0
    assert set(counts) == set(BatchStatus)


def test_payroll_input_upsert_outcomes(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    period = date(2025, 4, 1)

    assert store.upsert_payroll_input("tenant-a", "E1", period, "PF_EMPLOYEE", Decimal("1800")) == UpsertOutcome.INSERTED
    assert (
        store.upsert_payroll_input("tenant-a", "E1", period, "PF_EMPLOYEE", Decimal("1800.00"))
        == UpsertOutcome.UNCHANGED
    )
    assert store.upsert_payroll_input("tenant-a", "E1", period, "PF_EMPLOYEE", Decimal("1900")) == UpsertOutcome.UPDATED

    assert (
        store.upsert_payroll_input("tenant-a", "E2", period, "PF_EMPLOYEE", Decimal("2000"), source=DataSource.MANUAL)
        == UpsertOutcome.INSERTED
    )
    assert (
        store.upsert_payroll_input("tenant-a", "E2", period, "PF_EMPLOYEE", Decimal("1750"))
        == UpsertOutcome.SKIPPED_MANUAL
    )
    assert (
        store.upsert_payroll_input("tenant-a", "E2", period, "PF_EMPLOYEE", Decimal("2100"), source=DataSource.MANUAL)
        == UpsertOutcome.UPDATED
    )

    rows = store.list_payroll_inputs("tenant-a", period=period)
    assert rows == [
        PayrollInputEntry(
            employee_id="E1",
            period=period,
            component_code="PF_EMPLOYEE",
            amount=Decimal("1900.00"),
            source=DataSource.SYSTEM_COMPUTED,
        ),
        PayrollInputEntry(
            employee_id="E2",
            period=period,
            component_code="PF_EMPLOYEE",
            amount=Decimal("2100.00"),
            source=DataSource.MANUAL,
        ),
    ]
    assert store.list_payroll_inputs("tenant-b") == []
    assert store.upsert_payroll_inputs("tenant-a", []) == []
