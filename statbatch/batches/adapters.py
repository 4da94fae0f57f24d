from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from statbatch.batches.errors import BatchValidationError
from statbatch.batches.types import (
    BatchSnapshot,
    EligibilityCriteria,
    EmployeeScope,
    PayrollInputEntry,
    ScopeCriteria,
    SyncSummary,
    TriggerAccepted,
    UpsertOutcome,
)
from statbatch.db.models import ComputationKind, DataSource, EmployeeResultStatus

if TYPE_CHECKING:
    from statbatch.batches.store import BatchStore
    from statbatch.worker.trigger import WorkerTrigger

_PERIOD_PATTERN = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?$")
_FINANCIAL_YEAR_PATTERN = re.compile(r"^FY(\d{4})-(\d{2})$")


def normalize_period(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return date(value.year, value.month, 1)
    if isinstance(value, date):
        return date(value.year, value.month, 1)
    match = _PERIOD_PATTERN.match(value.strip())
    if match is None:
        raise BatchValidationError(f"Malformed period: {value!r}, expected YYYY-MM or YYYY-MM-DD")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise BatchValidationError(f"Malformed period: {value!r}, month out of range")
    return date(year, month, 1)


def parse_financial_year(value: str) -> tuple[date, date]:
    match = _FINANCIAL_YEAR_PATTERN.match(value.strip())
    if match is None:
        raise BatchValidationError(f"Malformed financial year: {value!r}, expected FYyyyy-yy")
    start_year = int(match.group(1))
    if int(match.group(2)) != (start_year + 1) % 100:
        raise BatchValidationError(f"Malformed financial year: {value!r}, years are not consecutive")
    return date(start_year, 4, 1), date(start_year + 1, 3, 1)


def financial_year_for(period: date) -> str:
    start_year = period.year if period.month >= 4 else period.year - 1
    return f"FY{start_year}-{(start_year + 1) % 100:02d}"


class ComputationAdapter:
    kind: ComputationKind
    component_code: str
    worker_function: str
    code_prefix: str

    def validate(self, period: date, criteria: ScopeCriteria) -> None:
        raise NotImplementedError

    def scope_key(self, criteria: ScopeCriteria) -> str:
        raise NotImplementedError

    def eligibility(self, tenant_id: str, criteria: ScopeCriteria, limit: int) -> EligibilityCriteria:
        raise NotImplementedError

    def resolve_scope(
        self,
        store: BatchStore,
        tenant_id: str,
        period: date,
        criteria: ScopeCriteria,
        limit: int,
    ) -> EmployeeScope:
        self.validate(period, criteria)
        employees = store.get_eligible_employees(self.eligibility(tenant_id, criteria, limit))
        if not employees:
            raise BatchValidationError("no eligible employees")
        if criteria.employee_codes:
            found = {employee.employee_code for employee in employees}
            missing = sorted(code for code in set(criteria.employee_codes) if code not in found)
            if missing:
                raise BatchValidationError(f"Employee codes are not eligible: {', '.join(missing)}")
        return EmployeeScope(scope_key=self.scope_key(criteria), employees=tuple(employees))

    def scope_summary(self, batch: BatchSnapshot) -> dict[str, Any]:
        return {
            "batch_id": batch.id,
            "batch_code": batch.batch_code,
            "tenant_id": batch.tenant_id,
            "kind": batch.kind.value,
            "scope_key": batch.scope_key,
            "period": batch.period.isoformat(),
            "total_employees": batch.total_employees,
        }

    def trigger_worker(self, trigger: WorkerTrigger, batch: BatchSnapshot) -> TriggerAccepted:
        return trigger.start_computation(batch.id, self.worker_function, self.scope_summary(batch))

    def sync_results(self, store: BatchStore, batch: BatchSnapshot) -> SyncSummary:
        results = store.list_employee_results(batch.id)
        entries: list[PayrollInputEntry] = []
        skipped_failed = 0
        for result in results:
            if result.status != EmployeeResultStatus.PROCESSED or result.amount is None:
                skipped_failed += 1
                continue
            entries.append(
                PayrollInputEntry(
                    employee_id=result.employee_id,
                    period=batch.period,
                    component_code=self.component_code,
                    amount=result.amount,
                    source=DataSource.SYSTEM_COMPUTED,
                    source_batch_id=batch.id,
                )
            )

        outcomes = store.upsert_payroll_inputs(batch.tenant_id, entries)
        summary = SyncSummary(
            batch_id=batch.id,
            batch_code=batch.batch_code,
            period=batch.period,
            component_code=self.component_code,
            skipped_failed=skipped_failed,
        )
        total = Decimal("0.00")
        for entry, outcome in zip(entries, outcomes):
            if outcome == UpsertOutcome.INSERTED:
                summary.inserted += 1
            elif outcome == UpsertOutcome.UPDATED:
                summary.updated += 1
            elif outcome == UpsertOutcome.UNCHANGED:
                summary.unchanged += 1
            else:
                summary.skipped_manual += 1
                summary.skipped_manual_employee_ids.append(entry.employee_id)
                continue
            total += entry.amount
        summary.total_amount = total
        return summary


class EstablishmentAdapter(ComputationAdapter):
    allows_employee_codes = False

    def validate(self, period: date, criteria: ScopeCriteria) -> None:
        if criteria.establishment_id is None or criteria.establishment_id <= 0:
            raise BatchValidationError(f"{self.kind.value} batches require a positive establishment_id")
        if criteria.financial_year is not None:
            raise BatchValidationError(f"{self.kind.value} batches are scoped by establishment, not financial year")
        if criteria.employee_codes and not self.allows_employee_codes:
            raise BatchValidationError(f"{self.kind.value} batches do not accept an explicit employee list")
        if any(not code.strip() for code in criteria.employee_codes):
            raise BatchValidationError("employee codes cannot be blank")

    def scope_key(self, criteria: ScopeCriteria) -> str:
        return f"establishment:{criteria.establishment_id}"

    def eligibility(self, tenant_id: str, criteria: ScopeCriteria, limit: int) -> EligibilityCriteria:
        return EligibilityCriteria(
            tenant_id=tenant_id,
            kind=self.kind,
            establishment_id=criteria.establishment_id,
            employee_codes=tuple(code.strip() for code in criteria.employee_codes),
            limit=limit,
        )


class ProvidentFundAdapter(EstablishmentAdapter):
    kind = ComputationKind.PF
    component_code = "PF_EMPLOYEE"
    worker_function = "wcm-pf-worker"
    code_prefix = "PF"
    allows_employee_codes = True


class EsicAdapter(EstablishmentAdapter):
    kind = ComputationKind.ESIC
    component_code = "ESIC_EMPLOYEE"
    worker_function = "wcm-esic-worker"
    code_prefix = "ESIC"


class IncomeTaxAdapter(ComputationAdapter):
    kind = ComputationKind.INCOME_TAX
    component_code = "TDS"
    worker_function = "wcm-it-worker"
    code_prefix = "IT"

    def validate(self, period: date, criteria: ScopeCriteria) -> None:
        if not criteria.financial_year:
            raise BatchValidationError("income_tax batches require a financial_year")
        if criteria.establishment_id is not None or criteria.employee_codes:
            raise BatchValidationError("income_tax batches are scoped by financial year only")
        start, end = parse_financial_year(criteria.financial_year)
        if not start <= period <= end:
            raise BatchValidationError(
                f"Period {period.isoformat()} is outside financial year {criteria.financial_year.strip()}"
            )

    def scope_key(self, criteria: ScopeCriteria) -> str:
        assert criteria.financial_year is not None
        return f"financial_year:{criteria.financial_year.strip()}"

    def eligibility(self, tenant_id: str, criteria: ScopeCriteria, limit: int) -> EligibilityCriteria:
        assert criteria.financial_year is not None
        return EligibilityCriteria(
            tenant_id=tenant_id,
            kind=self.kind,
            financial_year=criteria.financial_year.strip(),
            limit=limit,
        )

    def scope_summary(self, batch: BatchSnapshot) -> dict[str, Any]:
        summary = super().scope_summary(batch)
        summary["financial_year"] = batch.scope_key.split(":", 1)[1]
        return summary


def default_adapters() -> dict[ComputationKind, ComputationAdapter]:
    adapters: list[ComputationAdapter] = [ProvidentFundAdapter(), EsicAdapter(), IncomeTaxAdapter()]
    return {adapter.kind: adapter for adapter in adapters}
