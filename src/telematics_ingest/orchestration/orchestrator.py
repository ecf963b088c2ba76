# telematics_ingest/orchestration/orchestrator.py
"""
Job orchestrator: queues, workers, schedules and shutdown for one process.

Three queues, each served by its own QueueWorker with concurrency 1:

    master-data-sync      MasterDataSync.run()
    event-ingestion       EventIngestionLoop.run()
    historical-data-load  HistoricalBackfillEngine.run(job_id)

Schedules (APScheduler BackgroundScheduler, crontab syntax):

    master-data-sync   daily at 02:00  -> job id "scheduled-master-sync"
    event-ingestion    every minute    -> skipped while a run is waiting/active

Engines talk back through `handle_message`. A MasterDataSyncRequested from
ingestion enqueues "sync-on-demand"; one from a historical load enqueues
"sync-on-demand-historical". Fixed ids make repeated requests collapse into
the one job already queued.

Shutdown Sequence:
------------------
1. stop the scheduler
2. pause every worker (no new claims)
3. cancel in-flight jobs with reason SHUTDOWN
4. wait up to each queue's grace period for them to reach a checkpoint
5. close workers with a force timeout
6. close API clients and dispose the database engine

Usage:
------
    config = load_config()
    setup_logger(config=config.logging)
    orchestrator = JobOrchestrator(config, Database(config.database))
    orchestrator.run_forever()   # blocks until SIGINT/SIGTERM
"""

import logging
import signal
import threading
from collections.abc import Callable
from datetime import datetime
from types import FrameType
from typing import Any, Final

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from telematics_ingest.adapter import MixApiAdapter
from telematics_ingest.backfill import HistoricalBackfillEngine, HistoricalLoadService
from telematics_ingest.cancellation import CancelReason, JobInterrupted
from telematics_ingest.client import TelemetryClient
from telematics_ingest.common import utc_now
from telematics_ingest.config import IngestConfig, QueueConfig
from telematics_ingest.ingestion import EventIngestionLoop
from telematics_ingest.master_data import MasterDataSync
from telematics_ingest.messages import MasterDataSyncRequested
from telematics_ingest.monitoring import IngestionMonitor
from telematics_ingest.orchestration.queue import (
    QUEUE_EVENT_INGESTION,
    QUEUE_HISTORICAL_DATA_LOAD,
    QUEUE_MASTER_DATA_SYNC,
    JobOptions,
    JobQueue,
)
from telematics_ingest.orchestration.worker import (
    JobContext,
    Processor,
    QueueWorker,
    WorkerOptions,
)
from telematics_ingest.resilience import FailureRecorder, PacingGovernor
from telematics_ingest.storage import Database, QueueJob, TelemetryEventWriter

__all__: list[str] = [
    'QUEUE_EVENT_INGESTION',
    'QUEUE_HISTORICAL_DATA_LOAD',
    'QUEUE_MASTER_DATA_SYNC',
    'JobOrchestrator',
]

logger: logging.Logger = logging.getLogger(__name__)

# =============================================================================
# Queue and Job Names
# =============================================================================

JOB_SYNC_MASTER_DATA: Final[str] = 'sync-all-master-data'
JOB_INGEST_EVENTS: Final[str] = 'ingest-events'

SCHEDULED_MASTER_SYNC_JOB_ID: Final[str] = 'scheduled-master-sync'
ON_DEMAND_SYNC_JOB_IDS: Final[dict[str, str]] = {
    'ingestion': 'sync-on-demand',
    'historical': 'sync-on-demand-historical',
}

# Finished ingestion runs kept for history; one run per minute is ~1 day.
INGESTION_HISTORY_RETENTION: Final[int] = 1440


AdapterFactory = Callable[[], MixApiAdapter]


class JobOrchestrator:
    """
    Wires engines to queues and runs them until shutdown.

    Args:
        config: Full application configuration.
        database: Shared database; disposed on shutdown.
        adapter_factory: Builds one adapter per consumer. Defaults to a new
            TelemetryClient + MixApiAdapter per consumer, owned and closed by
            the orchestrator.
        scheduler: APScheduler instance; defaults to a BackgroundScheduler in
            the configured timezone.
        clock: UTC clock used for generated job ids.
    """

    def __init__(
        self,
        config: IngestConfig,
        database: Database,
        adapter_factory: AdapterFactory | None = None,
        scheduler: BackgroundScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config: IngestConfig = config
        self._database: Database = database
        self._clock: Callable[[], datetime] = clock
        # Set as soon as shutdown begins; ends client retry waits early.
        self._stopping: threading.Event = threading.Event()
        self._owned_clients: list[TelemetryClient] = []
        self._adapter_factory: AdapterFactory = adapter_factory or self._default_adapter
        self._scheduler: BackgroundScheduler = scheduler or BackgroundScheduler(
            timezone=config.scheduler.timezone
        )

        self._started: bool = False
        self._shutdown_lock: threading.Lock = threading.Lock()
        self._shutdown_requested: threading.Event = threading.Event()
        self._stopped: threading.Event = threading.Event()

        queue_configs: dict[str, QueueConfig] = self._queue_configs()
        self.queues: dict[str, JobQueue] = {
            name: JobQueue.from_config(database, name, queue_config)
            for name, queue_config in queue_configs.items()
        }

        writer = TelemetryEventWriter(chunk_size=config.ingestion.insert_chunk_size)
        self.master_data_sync = MasterDataSync(database, self._adapter_factory())
        self.ingestion_loop = EventIngestionLoop(
            database,
            self._adapter_factory(),
            PacingGovernor(config.pacing),
            FailureRecorder(config.recovery),
            config.ingestion,
            message_sink=self.handle_message,
            writer=writer,
        )
        self.backfill_engine = HistoricalBackfillEngine(
            database,
            self._adapter_factory(),
            PacingGovernor(config.pacing),
            FailureRecorder(config.recovery),
            config.backfill,
            message_sink=self.handle_message,
            writer=writer,
        )
        self.historical_loads = HistoricalLoadService(
            database,
            self.queues[QUEUE_HISTORICAL_DATA_LOAD],
            config.backfill,
            cancel_signal=self._cancel_historical_unit,
        )
        self.monitor = IngestionMonitor(
            database, self.queues, config.ingestion, config.recovery, clock=clock
        )

        processors: dict[str, Processor] = {
            QUEUE_MASTER_DATA_SYNC: self._process_master_data_sync,
            QUEUE_EVENT_INGESTION: self._process_event_ingestion,
            QUEUE_HISTORICAL_DATA_LOAD: self._process_historical_load,
        }
        self.workers: dict[str, QueueWorker] = {
            name: QueueWorker(
                self.queues[name],
                processors[name],
                WorkerOptions.from_config(queue_configs[name]),
            )
            for name in queue_configs
        }

    def _queue_configs(self) -> dict[str, QueueConfig]:
        queues = self._config.queues
        return {
            QUEUE_MASTER_DATA_SYNC: queues.master_data_sync,
            QUEUE_EVENT_INGESTION: queues.event_ingestion,
            QUEUE_HISTORICAL_DATA_LOAD: queues.historical_data_load,
        }

    def _default_adapter(self) -> MixApiAdapter:
        client = TelemetryClient(self._config.api, sleep=self._client_retry_sleep)
        self._owned_clients.append(client)
        return MixApiAdapter(self._config.api, client)

    def _client_retry_sleep(self, seconds: float) -> None:
        """
        Retry wait for owned clients.

        A Retry-After wait can be long and the job's CancellationToken is not
        reachable from inside the client, so the wait ends as soon as shutdown
        begins and the job is interrupted (requeued, not failed).
        """
        if self._stopping.wait(timeout=seconds):
            raise JobInterrupted('Shutdown during API retry wait')

    # =========================================================================
    # Processors
    # =========================================================================

    def _process_master_data_sync(self, context: JobContext) -> dict[str, Any]:
        return self.master_data_sync.run().model_dump(mode='json')

    def _process_event_ingestion(self, context: JobContext) -> dict[str, Any]:
        return self.ingestion_loop.run(context.cancel_token).model_dump(mode='json')

    def _process_historical_load(self, context: JobContext) -> dict[str, Any]:
        job_id: str = context.payload.get('job_id') or context.job_id
        status = self.backfill_engine.run(job_id, context.cancel_token)
        return status.model_dump(mode='json')

    def _cancel_historical_unit(self, job_id: str) -> bool:
        return self.workers[QUEUE_HISTORICAL_DATA_LOAD].cancel_job(job_id, CancelReason.USER)

    # =========================================================================
    # Enqueue Operations
    # =========================================================================

    def handle_message(self, message: MasterDataSyncRequested) -> QueueJob:
        """Route an engine message to the matching on-demand job."""
        job_id: str = ON_DEMAND_SYNC_JOB_IDS[message.origin]
        logger.info('Master data sync requested by %s: %s', message.origin, message.reason)
        return self.queues[QUEUE_MASTER_DATA_SYNC].enqueue(
            JOB_SYNC_MASTER_DATA,
            {'origin': message.origin, 'reason': message.reason},
            JobOptions(job_id=job_id, remove_on_complete=True, remove_on_fail=True),
        )

    def trigger_master_data_sync(self) -> QueueJob:
        """Enqueue a manual master-data sync."""
        job_id: str = f'manual-sync-{self._epoch_ms()}'
        return self.queues[QUEUE_MASTER_DATA_SYNC].enqueue(
            JOB_SYNC_MASTER_DATA,
            {'origin': 'manual'},
            JobOptions(job_id=job_id, remove_on_complete=True, remove_on_fail=False),
        )

    def enqueue_scheduled_master_data_sync(self) -> QueueJob:
        return self.queues[QUEUE_MASTER_DATA_SYNC].enqueue(
            JOB_SYNC_MASTER_DATA,
            {'origin': 'schedule'},
            JobOptions(
                job_id=SCHEDULED_MASTER_SYNC_JOB_ID,
                remove_on_complete=True,
                remove_on_fail=True,
            ),
        )

    def enqueue_scheduled_ingestion(self) -> QueueJob | None:
        """
        Enqueue an ingestion run unless one is already waiting or active.

        Returns:
            The new job, or None when the tick was skipped.
        """
        queue: JobQueue = self.queues[QUEUE_EVENT_INGESTION]
        if queue.has_pending():
            logger.debug('Ingestion run already queued or active; skipping tick')
            return None

        queue.trim_finished(keep=INGESTION_HISTORY_RETENTION)
        return queue.enqueue(
            JOB_INGEST_EVENTS,
            {'origin': 'schedule'},
            JobOptions(job_id=f'ingestion-{self._epoch_ms()}'),
        )

    def _epoch_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped.is_set()

    def start(self) -> None:
        """Create tables if configured, start workers, then the scheduler."""
        if self._started:
            raise RuntimeError('Orchestrator already started')
        self._started = True

        if self._config.database.create_tables:
            self._database.create_all()

        for worker in self.workers.values():
            worker.start()

        if self._config.scheduler.enabled:
            self._register_schedules()
            self._scheduler.start()
            logger.info(
                'Scheduler started (master data: %r, ingestion: %r, tz=%s)',
                self._config.scheduler.master_data_cron,
                self._config.scheduler.event_ingestion_cron,
                self._config.scheduler.timezone,
            )

        logger.info('Orchestrator started with queues: %s', ', '.join(self.queues))

    def _register_schedules(self) -> None:
        timezone: str = self._config.scheduler.timezone
        self._scheduler.add_job(
            self.enqueue_scheduled_master_data_sync,
            trigger=CronTrigger.from_crontab(
                self._config.scheduler.master_data_cron, timezone=timezone
            ),
            id=SCHEDULED_MASTER_SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.enqueue_scheduled_ingestion,
            trigger=CronTrigger.from_crontab(
                self._config.scheduler.event_ingestion_cron, timezone=timezone
            ),
            id='scheduled-event-ingestion',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def shutdown(self) -> None:
        """Stop everything in order. Safe to call more than once."""
        with self._shutdown_lock:
            if self._stopped.is_set():
                return

            logger.info('Shutting down orchestrator')
            self._stopping.set()

            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)

            for worker in self.workers.values():
                worker.pause()

            for worker in self.workers.values():
                worker.cancel_all(CancelReason.SHUTDOWN)

            queue_configs: dict[str, QueueConfig] = self._queue_configs()
            for name, worker in self.workers.items():
                grace: float = queue_configs[name].shutdown_grace_seconds
                if not worker.wait_until_idle(grace):
                    logger.warning(
                        'Queue %s still busy after %.0fs grace period', name, grace
                    )

            for name, worker in self.workers.items():
                if worker.is_running:
                    worker.close(queue_configs[name].close_timeout_seconds)

            for client in self._owned_clients:
                client.close()
            self._database.dispose()

            self._stopped.set()
            self._shutdown_requested.set()
            logger.info('Orchestrator stopped')

    def request_shutdown(self) -> None:
        """Ask run_forever() to shut down; safe from signal handlers."""
        self._shutdown_requested.set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to request_shutdown (main thread only)."""

        def _handle_signal(signum: int, frame: FrameType | None) -> None:
            logger.info('Received %s; shutting down', signal.Signals(signum).name)
            self.request_shutdown()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

    def run_forever(self, install_signals: bool = True) -> None:
        """Start (if needed), block until shutdown is requested, then stop."""
        if install_signals:
            self.install_signal_handlers()
        if not self._started:
            self.start()
        try:
            while not self._shutdown_requested.wait(timeout=1.0):
                pass
        finally:
            self.shutdown()
