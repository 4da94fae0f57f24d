from __future__ import annotations

import argparse
import os
import time
from datetime import date
from pathlib import Path

from sqlalchemy import text

import statbatch.db.session as db_session_module
from statbatch.batches.poller import ProgressPoller
from statbatch.batches.store import BatchStore
from statbatch.batches.types import BatchDraft, EligibleEmployee
from statbatch.core.config import get_settings
from statbatch.db.init_db import initialize_database
from statbatch.db.models import ComputationKind


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark the bulk progress refresh of a large watch set")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--batches", type=int, default=2000, help="Number of active batches to watch")
    parser.add_argument("--employees-per-batch", type=int, default=50, help="Frozen scope size of each batch")
    parser.add_argument("--ticks", type=int, default=20, help="Number of refresh ticks to time")
    parser.add_argument("--explain", action="store_true", help="Print the active-scope lookup query plan")
    return parser.parse_args()


def configure_env(state_root: Path) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STATBATCH_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("STATBATCH_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module.reset_engine()


def seed_fixture(store: BatchStore, total_batches: int, employees_per_batch: int) -> list[str]:
    employees = tuple(EligibleEmployee(employee_id=f"E{index:06d}") for index in range(employees_per_batch))
    batch_ids: list[str] = []
    for index in range(total_batches):
        batch = store.create_batch_record(
            BatchDraft(
                tenant_id="bench-tenant",
                kind=ComputationKind.PF,
                scope_key=f"establishment:{index + 1}",
                period=date(2025, 4, 1),
                batch_code=f"PF-202504-{index:06d}",
                employees=employees,
            )
        )
        batch_ids.append(batch.id)
    return batch_ids


def benchmark(store: BatchStore, batch_ids: list[str], ticks: int) -> tuple[int, float]:
    # A long interval keeps the background loop idle; ticks are driven here.
    with ProgressPoller(store.refresh_batches, interval_seconds=3600) as poller:
        for batch_id in batch_ids:
            poller.watch(batch_id)

        start = time.perf_counter()
        for _ in range(ticks):
            poller.tick()
        elapsed = time.perf_counter() - start
        refresh_calls = poller.stats().refresh_calls
    return refresh_calls, elapsed


def maybe_print_explain() -> None:
    with db_session_module.get_session_factory()() as session:
        rows = session.execute(
            text(
                """
                EXPLAIN QUERY PLAN
                SELECT id
                FROM computation_batches
                WHERE tenant_id = 'bench-tenant'
                  AND kind = 'pf'
                  AND scope_key = 'establishment:1'
                  AND period = '2025-04-01'
                  AND status IN ('QUEUED', 'RUNNING')
                """
            )
        ).all()

    print("Query plan:")
    for row in rows:
        print(f"- {row[3]}")


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root))
    initialize_database()
    store = BatchStore(get_settings(), db_session_module.get_session_factory())
    batch_ids = seed_fixture(store, total_batches=args.batches, employees_per_batch=args.employees_per_batch)
    refresh_calls, elapsed = benchmark(store, batch_ids, ticks=args.ticks)
    per_tick = elapsed / max(1, refresh_calls)
    print(
        f"batches={len(batch_ids)} refresh_calls={refresh_calls} "
        f"elapsed_seconds={elapsed:.3f} per_tick_seconds={per_tick:.4f}"
    )
    if args.explain:
        maybe_print_explain()


if __name__ == "__main__":
    main()
