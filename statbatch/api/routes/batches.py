from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from statbatch.api.schemas.batches import (
    ActivityEntryResponse,
    BatchListResponse,
    BatchResponse,
    CreateBatchRequest,
    DuplicateBatchResponse,
    EmployeeResultListResponse,
    EmployeeResultResponse,
    InvariantViolationResponse,
    SyncSummaryResponse,
    TriggerResponse,
    WatchResponse,
)
from statbatch.batches.activity import ActivityLog, activity_entry_to_dict
from statbatch.batches.errors import (
    BatchError,
    BatchNotFoundError,
    BatchValidationError,
    InvalidBatchStateError,
    PreconditionError,
    TriggerRejectedError,
    WorkerConflictError,
)
from statbatch.batches.orchestrator import BatchOrchestrator, sync_summary_to_dict
from statbatch.batches.store import batch_snapshot_to_dict, employee_result_to_dict
from statbatch.batches.types import BatchFilter, BatchSnapshot, DuplicateWarning, ScopeCriteria
from statbatch.db.models import BatchStatus, ComputationKind, EmployeeResultStatus

router = APIRouter(tags=["batches"])


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator


def get_activity_log(request: Request) -> ActivityLog:
    return request.app.state.activity_log


def to_http_exception(exc: BatchError) -> HTTPException:
    if isinstance(exc, BatchNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, BatchValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, TriggerRejectedError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"reason": exc.reason, "transient": exc.transient, "status_code": exc.status_code},
        )
    if isinstance(exc, (PreconditionError, InvalidBatchStateError, WorkerConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _batch_response(snapshot: BatchSnapshot) -> BatchResponse:
    return BatchResponse.model_validate(batch_snapshot_to_dict(snapshot))


@router.post("/batches", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(
    request: CreateBatchRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    try:
        result = orchestrator.create_batch(
            request.tenant_id,
            request.kind,
            request.period,
            ScopeCriteria(
                establishment_id=request.establishment_id,
                financial_year=request.financial_year,
                employee_codes=tuple(request.employee_codes),
            ),
            created_by=request.created_by,
            reason=request.reason,
            force=request.force,
        )
    except BatchError as exc:
        raise to_http_exception(exc) from exc

    if isinstance(result, DuplicateWarning):
        duplicate = DuplicateBatchResponse(
            message=result.message,
            can_supersede=result.can_supersede,
            existing=_batch_response(result.existing),
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=duplicate.model_dump(mode="json"))
    return _batch_response(result)


@router.get("/batches", response_model=BatchListResponse)
def list_batches(
    tenant_id: str | None = None,
    kind: ComputationKind | None = None,
    batch_status: list[BatchStatus] | None = Query(default=None, alias="status"),
    order_by: str = "created_at_desc",
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchListResponse:
    batch_filter = BatchFilter(
        tenant_id=tenant_id,
        kind=kind,
        statuses=frozenset(batch_status) if batch_status else None,
    )
    try:
        page = orchestrator.list_batch_page(batch_filter, order_by=order_by, limit=limit, offset=offset)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return BatchListResponse(items=[_batch_response(item) for item in page.items], next_offset=page.next_offset)


@router.get("/batches/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)) -> BatchResponse:
    try:
        snapshot = orchestrator.get_batch(batch_id)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return _batch_response(snapshot)


@router.post("/batches/{batch_id}/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_batch(batch_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)) -> TriggerResponse:
    try:
        accepted = orchestrator.trigger_worker(batch_id)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return TriggerResponse.model_validate(asdict(accepted))


@router.post("/batches/{batch_id}/sync", response_model=SyncSummaryResponse)
def sync_batch(batch_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)) -> SyncSummaryResponse:
    try:
        summary = orchestrator.sync_batch_results(batch_id)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return SyncSummaryResponse.model_validate(sync_summary_to_dict(summary))


@router.get("/batches/{batch_id}/failures", response_model=EmployeeResultListResponse)
def list_failed_employees(
    batch_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> EmployeeResultListResponse:
    try:
        rows = orchestrator.list_failed_employees(batch_id)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return EmployeeResultListResponse(
        batch_id=batch_id,
        items=[EmployeeResultResponse.model_validate(employee_result_to_dict(row)) for row in rows],
    )


@router.get("/batches/{batch_id}/results", response_model=EmployeeResultListResponse)
def list_employee_results(
    batch_id: str,
    result_status: EmployeeResultStatus | None = Query(default=None, alias="status"),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> EmployeeResultListResponse:
    try:
        rows = orchestrator.list_employee_results(batch_id, result_status)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return EmployeeResultListResponse(
        batch_id=batch_id,
        items=[EmployeeResultResponse.model_validate(employee_result_to_dict(row)) for row in rows],
    )


@router.get("/watch", response_model=WatchResponse)
def get_watch_state(
    activity_limit: int = Query(default=50, ge=1, le=500),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> WatchResponse:
    poller = orchestrator.poller
    if poller is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Progress poller is not configured")
    views = sorted(poller.views().values(), key=lambda view: (view.created_at, view.id), reverse=True)
    return WatchResponse(
        running=poller.is_running,
        interval_seconds=poller.interval_seconds,
        watched_ids=list(poller.watched_ids()),
        views=[_batch_response(view) for view in views],
        stats=asdict(poller.stats()),
        violations=[
            InvariantViolationResponse(batch_id=item.batch_id, message=item.message, detected_at=item.detected_at)
            for item in poller.violations()
        ],
        activity=[
            ActivityEntryResponse.model_validate(activity_entry_to_dict(entry))
            for entry in activity_log.entries(limit=activity_limit)
        ],
    )
