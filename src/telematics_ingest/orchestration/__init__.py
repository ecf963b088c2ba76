# telematics_ingest/orchestration/__init__.py
"""
Durable job queue and thread-based workers.

The orchestrator lives in `telematics_ingest.orchestration.orchestrator` and is
not re-exported here: it depends on the engines, and the engines depend on
the queue.
"""

from telematics_ingest.orchestration.queue import (
    QUEUE_EVENT_INGESTION,
    QUEUE_HISTORICAL_DATA_LOAD,
    QUEUE_MASTER_DATA_SYNC,
    JobOptions,
    JobQueue,
    QueueError,
)
from telematics_ingest.orchestration.worker import (
    JobContext,
    Processor,
    QueueWorker,
    WorkerOptions,
)

__all__: list[str] = [
    'QUEUE_EVENT_INGESTION',
    'QUEUE_HISTORICAL_DATA_LOAD',
    'QUEUE_MASTER_DATA_SYNC',
    'JobContext',
    'JobOptions',
    'JobQueue',
    'Processor',
    'QueueError',
    'QueueWorker',
    'WorkerOptions',
]
