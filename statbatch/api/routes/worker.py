from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from statbatch.api.routes.batches import to_http_exception
from statbatch.api.schemas.batches import BatchResponse
from statbatch.api.schemas.worker import FailBatchRequest, ReportResultsRequest, StartBatchRequest
from statbatch.batches.errors import BatchError
from statbatch.batches.store import BatchStore, batch_snapshot_to_dict
from statbatch.batches.types import EmployeeResult

router = APIRouter(prefix="/worker", tags=["worker"])


def get_batch_store(request: Request) -> BatchStore:
    return request.app.state.store


@router.post("/batches/{batch_id}/start", response_model=BatchResponse)
def start_batch(
    batch_id: str,
    request: StartBatchRequest,
    store: BatchStore = Depends(get_batch_store),
) -> BatchResponse:
    try:
        snapshot = store.start_batch(batch_id, worker_id=request.worker_id)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return BatchResponse.model_validate(batch_snapshot_to_dict(snapshot))


@router.post("/batches/{batch_id}/results", response_model=BatchResponse)
def report_results(
    batch_id: str,
    request: ReportResultsRequest,
    store: BatchStore = Depends(get_batch_store),
) -> BatchResponse:
    results = [
        EmployeeResult(
            employee_id=item.employee_id,
            success=item.success,
            amount=item.amount,
            error_type=item.error_type,
            error_message=item.error_message,
        )
        for item in request.results
    ]
    try:
        snapshot = store.record_employee_results(batch_id, worker_id=request.worker_id, results=results)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return BatchResponse.model_validate(batch_snapshot_to_dict(snapshot))


@router.post("/batches/{batch_id}/fail", response_model=BatchResponse)
def fail_batch(
    batch_id: str,
    request: FailBatchRequest,
    store: BatchStore = Depends(get_batch_store),
) -> BatchResponse:
    try:
        snapshot = store.fail_batch(batch_id, worker_id=request.worker_id, error_message=request.error_message)
    except BatchError as exc:
        raise to_http_exception(exc) from exc
    return BatchResponse.model_validate(batch_snapshot_to_dict(snapshot))
