from __future__ import annotations

import logging
from dataclasses import asdict, replace
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable
from uuid import uuid4

from statbatch.batches.adapters import ComputationAdapter, default_adapters, normalize_period
from statbatch.batches.errors import (
    BatchCodeCollisionError,
    BatchError,
    BatchValidationError,
    DuplicateBatchError,
    InvalidBatchStateError,
    PreconditionError,
    TriggerRejectedError,
)
from statbatch.batches.poller import PollerEvent, ProgressPoller
from statbatch.batches.store import BatchListResult, BatchStore
from statbatch.batches.types import (
    BatchDraft,
    BatchFilter,
    BatchSnapshot,
    BatchUpdate,
    DuplicateWarning,
    EmployeeResultSnapshot,
    ScopeCriteria,
    SyncSummary,
    TriggerAccepted,
)
from statbatch.core.config import Settings
from statbatch.db.models import (
    ACTIVE_BATCH_STATUSES,
    SYNCABLE_BATCH_STATUSES,
    BatchStatus,
    ComputationKind,
    EmployeeResultStatus,
)

if TYPE_CHECKING:
    from statbatch.worker.trigger import WorkerTrigger

logger = logging.getLogger(__name__)

BATCH_CODE_ATTEMPTS = 3


class BatchOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: BatchStore,
        trigger: WorkerTrigger,
        poller: ProgressPoller | None = None,
        adapters: dict[ComputationKind, ComputationAdapter] | None = None,
    ):
        self._settings = settings
        self._store = store
        self._trigger = trigger
        self._poller = poller
        self._adapters = adapters or default_adapters()
        self._sync_listeners: list[Callable[[SyncSummary], None]] = []
        self._unsubscribe: Callable[[], None] | None = None
        if poller is not None and settings.auto_sync_completed:
            self._unsubscribe = poller.subscribe(self._auto_sync)

    @property
    def store(self) -> BatchStore:
        return self._store

    @property
    def poller(self) -> ProgressPoller | None:
        return self._poller

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_sync(self, listener: Callable[[SyncSummary], None]) -> None:
        self._sync_listeners.append(listener)

    def _adapter(self, kind: ComputationKind | str) -> ComputationAdapter:
        try:
            normalized = ComputationKind(kind)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in ComputationKind)
            raise BatchValidationError(f"Unknown computation kind: {kind}. Allowed: {allowed}") from exc
        adapter = self._adapters.get(normalized)
        if adapter is None:
            raise BatchValidationError(f"No adapter registered for computation kind: {normalized.value}")
        return adapter

    def _batch_code(self, adapter: ComputationAdapter, period: date) -> str:
        return f"{adapter.code_prefix}-{period:%Y%m}-{uuid4().hex[:6].upper()}"

    def _duplicate(self, existing: BatchSnapshot) -> DuplicateWarning:
        can_supersede = existing.status == BatchStatus.QUEUED
        if existing.status in ACTIVE_BATCH_STATUSES:
            message = (
                f"Batch {existing.batch_code} is already {existing.status.value} for "
                f"{existing.scope_key} in {existing.period:%Y-%m}"
            )
        else:
            message = (
                f"Latest batch {existing.batch_code} for {existing.scope_key} in {existing.period:%Y-%m} "
                f"FAILED; confirm to recreate"
            )
            can_supersede = True
        logger.info(
            "duplicate batch detected",
            extra={
                "batch_id": existing.id,
                "batch_code": existing.batch_code,
                "status": existing.status.value,
                "can_supersede": can_supersede,
            },
        )
        return DuplicateWarning(existing=existing, can_supersede=can_supersede, message=message)

    def create_batch(
        self,
        tenant_id: str,
        kind: ComputationKind | str,
        period: date | datetime | str,
        criteria: ScopeCriteria,
        *,
        created_by: str | None = None,
        reason: str | None = None,
        force: bool = False,
    ) -> BatchSnapshot | DuplicateWarning:
        normalized_tenant = tenant_id.strip()
        if not normalized_tenant:
            raise BatchValidationError("tenant_id cannot be blank")
        adapter = self._adapter(kind)
        normalized_period = normalize_period(period)

        scope = adapter.resolve_scope(
            self._store,
            normalized_tenant,
            normalized_period,
            criteria,
            self._settings.eligibility_limit,
        )

        existing = self._store.find_active_batch(normalized_tenant, adapter.kind, scope.scope_key, normalized_period)
        if existing is not None:
            if not force or existing.status != BatchStatus.QUEUED:
                return self._duplicate(existing)
            try:
                self._store.supersede_batch(existing.id, reason=f"Superseded by operator request ({created_by or 'api'})")
            except InvalidBatchStateError:
                return self._duplicate(self._store.get_batch(existing.id))
            if self._poller is not None:
                self._poller.unwatch(existing.id)
        elif self._settings.failed_batch_blocks_recreate and not force:
            latest = self._store.find_latest_batch(normalized_tenant, adapter.kind, scope.scope_key, normalized_period)
            if latest is not None and latest.status == BatchStatus.FAILED:
                return self._duplicate(latest)

        for attempt in range(1, BATCH_CODE_ATTEMPTS + 1):
            draft = BatchDraft(
                tenant_id=normalized_tenant,
                kind=adapter.kind,
                scope_key=scope.scope_key,
                period=normalized_period,
                batch_code=self._batch_code(adapter, normalized_period),
                employees=scope.employees,
                created_by=created_by,
                reason=reason,
            )
            try:
                batch = self._store.create_batch_record(draft)
            except DuplicateBatchError as exc:
                return self._duplicate(self._store.get_batch(exc.existing_batch_id))
            except BatchCodeCollisionError as exc:
                logger.warning(
                    "batch code collision, regenerating",
                    extra={"attempt": attempt, "batch_code": exc.batch_code},
                )
                continue

            logger.info(
                "batch created",
                extra={
                    "batch_id": batch.id,
                    "batch_code": batch.batch_code,
                    "tenant_id": batch.tenant_id,
                    "kind": batch.kind.value,
                    "scope_key": batch.scope_key,
                    "period": batch.period.isoformat(),
                    "total_employees": batch.total_employees,
                },
            )
            self.watch(batch.id)
            return batch

        raise BatchError(f"Could not allocate a unique batch code after {BATCH_CODE_ATTEMPTS} attempts")

    def trigger_worker(self, batch_id: str) -> TriggerAccepted:
        batch = self._store.get_batch(batch_id)
        if batch.status != BatchStatus.QUEUED:
            raise PreconditionError(f"Only QUEUED batches can be triggered, batch {batch.batch_code} is {batch.status.value}")
        adapter = self._adapter(batch.kind)

        try:
            accepted = adapter.trigger_worker(self._trigger, batch)
        except TriggerRejectedError as exc:
            self._store.record_trigger_attempt(batch_id, error=exc.reason)
            logger.warning(
                "worker trigger rejected",
                extra={
                    "batch_id": batch_id,
                    "batch_code": batch.batch_code,
                    "transient": exc.transient,
                    "status_code": exc.status_code,
                    "reason": exc.reason,
                },
            )
            raise

        updated = self._store.record_trigger_attempt(batch_id)
        logger.info(
            "worker trigger accepted",
            extra={
                "batch_id": batch_id,
                "batch_code": batch.batch_code,
                "function": accepted.function_name,
                "attempt": updated.trigger_attempts,
            },
        )
        self.watch(batch_id)
        return replace(accepted, attempt=updated.trigger_attempts)

    def sync_batch_results(self, batch_id: str) -> SyncSummary:
        batch = self._store.get_batch(batch_id)
        if batch.status not in SYNCABLE_BATCH_STATUSES:
            raise PreconditionError(
                f"Batch {batch.batch_code} is {batch.status.value}; only completed batches can be synced"
            )
        summary = self._adapter(batch.kind).sync_results(self._store, batch)
        logger.info(
            "batch results synced",
            extra={
                "batch_id": batch.id,
                "batch_code": batch.batch_code,
                "inserted": summary.inserted,
                "updated": summary.updated,
                "unchanged": summary.unchanged,
                "skipped_manual": summary.skipped_manual,
                "skipped_failed": summary.skipped_failed,
            },
        )
        for listener in list(self._sync_listeners):
            listener(summary)
        return summary

    def get_batch(self, batch_id: str) -> BatchSnapshot:
        return self._store.get_batch(batch_id)

    def list_batches(
        self,
        batch_filter: BatchFilter | None = None,
        order_by: str = "created_at_desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BatchSnapshot]:
        return self._store.list_batches(batch_filter, order_by=order_by, limit=limit, offset=offset)

    def list_batch_page(
        self,
        batch_filter: BatchFilter | None = None,
        order_by: str = "created_at_desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> BatchListResult:
        return self._store.list_batch_page(batch_filter, order_by=order_by, limit=limit, offset=offset)

    def list_failed_employees(self, batch_id: str) -> list[EmployeeResultSnapshot]:
        return self._store.list_employee_results(batch_id, EmployeeResultStatus.FAILED)

    def list_employee_results(
        self, batch_id: str, status: EmployeeResultStatus | None = None
    ) -> list[EmployeeResultSnapshot]:
        return self._store.list_employee_results(batch_id, status)

    def watch(self, batch_id: str) -> bool:
        if self._poller is None:
            return False
        snapshot = self._store.get_batch(batch_id)
        if snapshot.is_terminal:
            return False
        return self._poller.watch(batch_id, snapshot)

    def resume_watching(self, tenant_id: str | None = None) -> int:
        if self._poller is None:
            return 0
        page_size = self._settings.max_page_size
        offset = 0
        resumed = 0
        while True:
            page = self._store.list_batches(
                BatchFilter(tenant_id=tenant_id, statuses=ACTIVE_BATCH_STATUSES),
                order_by="created_at_asc",
                limit=page_size,
                offset=offset,
            )
            for batch in page:
                if self._poller.watch(batch.id, batch):
                    resumed += 1
            if len(page) < page_size:
                break
            offset += page_size
        if resumed:
            logger.info("resumed watching active batches", extra={"count": resumed})
        return resumed

    def _auto_sync(self, event: PollerEvent) -> None:
        if not isinstance(event, BatchUpdate) or not event.reached_terminal:
            return
        current = event.current
        if current.status != BatchStatus.COMPLETED or current.failed_employees != 0:
            return
        logger.info("auto-syncing completed batch", extra={"batch_id": current.id, "batch_code": current.batch_code})
        self.sync_batch_results(current.id)


def sync_summary_to_dict(summary: SyncSummary) -> dict[str, Any]:
    payload = asdict(summary)
    payload["applied"] = summary.applied
    return payload
