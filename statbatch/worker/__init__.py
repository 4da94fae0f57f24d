from statbatch.worker.pipeline import (
    EmployeeComputationError,
    LocalComputationWorker,
    ThreadedLocalTrigger,
    enqueue_batch,
    run_local_worker_once,
)
from statbatch.worker.trigger import HttpWorkerTrigger, WorkerTrigger

__all__ = [
    "EmployeeComputationError",
    "LocalComputationWorker",
    "ThreadedLocalTrigger",
    "enqueue_batch",
    "run_local_worker_once",
    "HttpWorkerTrigger",
    "WorkerTrigger",
]
