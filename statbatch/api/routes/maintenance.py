from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from statbatch.api.schemas.maintenance import BatchMetricsResponse, HealthCheckRequest, HealthReportResponse
from statbatch.batches.health import BatchHealthService, batch_metrics_to_dict, health_report_to_dict

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def get_health_service(request: Request) -> BatchHealthService:
    return request.app.state.health_service


@router.post("/health-check", response_model=HealthReportResponse)
def run_health_check(
    request: HealthCheckRequest,
    service: BatchHealthService = Depends(get_health_service),
) -> HealthReportResponse:
    report = service.run_health_check(auto_fix=request.auto_fix)
    return HealthReportResponse.model_validate(health_report_to_dict(report))


@router.get("/metrics", response_model=BatchMetricsResponse)
def get_batch_metrics(
    tenant_id: str | None = None,
    service: BatchHealthService = Depends(get_health_service),
) -> BatchMetricsResponse:
    metrics = service.get_metrics(tenant_id)
    return BatchMetricsResponse.model_validate(batch_metrics_to_dict(metrics))
