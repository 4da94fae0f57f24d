from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

import statbatch.db.session as db_session_module
from statbatch.batches.errors import PreconditionError, TriggerRejectedError
from statbatch.batches.orchestrator import BatchOrchestrator
from statbatch.batches.poller import ProgressPoller
from statbatch.batches.store import BatchStore
from statbatch.batches.types import BatchSnapshot, ScopeCriteria, TriggerAccepted
from statbatch.core.config import Settings, get_settings
from statbatch.db.init_db import initialize_database
from statbatch.db.models import BatchStatus, ComputationKind, EmployeeEnrollment
from statbatch.worker.trigger import HttpWorkerTrigger


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_root": tmp_path / "state",
        "worker_base_url": "https://workers.example/functions/",
        "worker_access_token": "secret-token",
    }
    values.update(overrides)
    return Settings(**values)


def summary() -> dict[str, Any]:
    return {"batch_id": "batch-1", "kind": "pf", "period": "2025-04-01", "total_employees": 3}


def test_http_trigger_posts_job_to_worker_function(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"success": True, "job_id": "job-42"})

    trigger = HttpWorkerTrigger(make_settings(tmp_path), transport=httpx.MockTransport(handler))
    try:
        accepted = trigger.start_computation("batch-1", "wcm-pf-worker", summary())
    finally:
        trigger.close()

    assert accepted.batch_id == "batch-1"
    assert accepted.function_name == "wcm-pf-worker"
    assert accepted.worker_reference == "job-42"
    assert len(seen) == 1
    request = seen[0]
    assert str(request.url) == "https://workers.example/functions/wcm-pf-worker"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {"job": summary()}


@pytest.mark.parametrize(
    ("response", "transient", "status_code"),
    [
        (httpx.Response(503, text="overloaded"), True, 503),
        (httpx.Response(400, json={"error": "unknown function"}), False, 400),
        (httpx.Response(200, json={"success": False, "message": "tenant disabled"}), False, 200),
    ],
)
def test_http_trigger_classifies_worker_refusals(
    tmp_path: Path, response: httpx.Response, transient: bool, status_code: int
) -> None:
    trigger = HttpWorkerTrigger(make_settings(tmp_path), transport=httpx.MockTransport(lambda request: response))

    with pytest.raises(TriggerRejectedError) as excinfo:
        trigger.start_computation("batch-1", "wcm-pf-worker", summary())
    trigger.close()

    assert excinfo.value.transient is transient
    assert excinfo.value.status_code == status_code


def test_http_trigger_reports_refusal_detail(tmp_path: Path) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"detail": "period locked"}))
    trigger = HttpWorkerTrigger(make_settings(tmp_path), transport=transport)

    with pytest.raises(TriggerRejectedError, match="period locked"):
        trigger.start_computation("batch-1", "wcm-esic-worker", summary())
    trigger.close()


def test_http_trigger_timeouts_are_transient(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    trigger = HttpWorkerTrigger(make_settings(tmp_path), transport=httpx.MockTransport(handler))

    with pytest.raises(TriggerRejectedError) as excinfo:
        trigger.start_computation("batch-1", "wcm-it-worker", summary())
    trigger.close()

    assert excinfo.value.transient
    assert excinfo.value.status_code is None


def test_http_trigger_without_endpoint_is_rejected(tmp_path: Path) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    trigger = HttpWorkerTrigger(
        make_settings(tmp_path, worker_base_url=None), transport=httpx.MockTransport(handler)
    )

    with pytest.raises(TriggerRejectedError) as excinfo:
        trigger.start_computation("batch-1", "wcm-pf-worker", summary())
    trigger.close()

    assert not excinfo.value.transient
    assert calls == []


class ScriptedTrigger:
    def __init__(self, *outcomes: TriggerRejectedError | None) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def start_computation(self, batch_id: str, function_name: str, scope_summary: dict[str, Any]) -> TriggerAccepted:
        self.calls.append((batch_id, function_name, scope_summary))
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if outcome is not None:
            raise outcome
        return TriggerAccepted(
            batch_id=batch_id,
            function_name=function_name,
            accepted_at=datetime.now(tz=timezone.utc),
            worker_reference="ref-1",
        )


def setup_env(tmp_path: Path, trigger: ScriptedTrigger) -> BatchOrchestrator:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STATBATCH_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("STATBATCH_DATABASE_URL", None)
    os.environ["STATBATCH_AUTO_SYNC_COMPLETED"] = "false"
    os.environ["STATBATCH_FAILED_BATCH_BLOCKS_RECREATE"] = "false"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    settings = get_settings()
    store = BatchStore(settings, db_session_module.get_session_factory())
    poller = ProgressPoller(store.refresh_batches, interval_seconds=60)
    with db_session_module.get_session_factory()() as session:
        session.add_all(
            [
                EmployeeEnrollment(
                    tenant_id="tenant-a",
                    kind=ComputationKind.PF,
                    employee_id=f"E{index}",
                    establishment_id=7,
                    is_active=True,
                )
                for index in range(3)
            ]
        )
        session.commit()
    return BatchOrchestrator(settings=settings, store=store, trigger=trigger, poller=poller)


def create_pf_batch(orchestrator: BatchOrchestrator) -> BatchSnapshot:
    batch = orchestrator.create_batch("tenant-a", ComputationKind.PF, "2025-04", ScopeCriteria(establishment_id=7))
    assert isinstance(batch, BatchSnapshot)
    return batch


def test_accepted_trigger_is_recorded_and_watched(tmp_path: Path) -> None:
    trigger = ScriptedTrigger()
    orchestrator = setup_env(tmp_path, trigger)
    batch = create_pf_batch(orchestrator)
    orchestrator.poller.unwatch(batch.id)

    try:
        accepted = orchestrator.trigger_worker(batch.id)

        assert accepted.attempt == 1
        assert accepted.worker_reference == "ref-1"
        assert batch.id in orchestrator.poller.watched_ids()
        batch_id, function_name, scope_summary = trigger.calls[0]
        assert batch_id == batch.id
        assert function_name == "wcm-pf-worker"
        assert scope_summary["batch_code"] == batch.batch_code
        assert scope_summary["total_employees"] == 3
        assert orchestrator.get_batch(batch.id).status == BatchStatus.QUEUED
    finally:
        orchestrator.poller.close()


def test_rejected_trigger_leaves_batch_queued(tmp_path: Path) -> None:
    trigger = ScriptedTrigger(TriggerRejectedError("Worker failed with HTTP 503", transient=True, status_code=503))
    orchestrator = setup_env(tmp_path, trigger)
    batch = create_pf_batch(orchestrator)

    try:
        with pytest.raises(TriggerRejectedError):
            orchestrator.trigger_worker(batch.id)

        rejected = orchestrator.get_batch(batch.id)
        assert rejected.status == BatchStatus.QUEUED
        assert rejected.trigger_attempts == 1
        assert rejected.last_trigger_error == "Worker failed with HTTP 503"

        retried = orchestrator.trigger_worker(batch.id)
        assert retried.attempt == 2
        assert orchestrator.get_batch(batch.id).last_trigger_error is None
    finally:
        orchestrator.poller.close()


def test_only_queued_batches_can_be_triggered(tmp_path: Path) -> None:
    trigger = ScriptedTrigger()
    orchestrator = setup_env(tmp_path, trigger)
    batch = create_pf_batch(orchestrator)
    orchestrator.store.start_batch(batch.id, "worker-a")

    try:
        with pytest.raises(PreconditionError):
            orchestrator.trigger_worker(batch.id)
        assert trigger.calls == []
        assert orchestrator.get_batch(batch.id).trigger_attempts == 0
    finally:
        orchestrator.poller.close()
