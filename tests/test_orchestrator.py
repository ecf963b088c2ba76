"""
Tests for JobOrchestrator.

Most tests build an orchestrator without starting it and drive the enqueue
operations and processors directly. One test starts the workers against a
file-backed database to check the lifecycle end to end.
"""
# pyright: reportPrivateUsage=false

import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any
from unittest.mock import Mock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from telematics_ingest.cancellation import CancellationToken, JobInterrupted
from telematics_ingest.config import IngestConfig, SchedulerConfig
from telematics_ingest.messages import MasterDataSyncRequested
from telematics_ingest.models import EventsPage, MixDriver
from telematics_ingest.orchestration import JobContext
from telematics_ingest.orchestration.orchestrator import (
    QUEUE_EVENT_INGESTION,
    QUEUE_HISTORICAL_DATA_LOAD,
    QUEUE_MASTER_DATA_SYNC,
    JobOrchestrator,
)
from telematics_ingest.storage import Database, QueueJob, QueueJobState

from tests.doubles import FIXED_NOW, FakeAdapter, FakeClock


@pytest.fixture
def make_orchestrator(
    ingest_config: IngestConfig, fake_adapter: FakeAdapter, clock: FakeClock
) -> Callable[..., JobOrchestrator]:
    """Provide a factory for unstarted orchestrators using the fake adapter."""

    def _make(
        database: Database, config: IngestConfig | None = None, **kwargs: Any
    ) -> JobOrchestrator:
        return JobOrchestrator(
            config or ingest_config,
            database,
            adapter_factory=lambda: fake_adapter,  # pyright: ignore[reportArgumentType, reportReturnType]
            clock=clock.utc,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(
    make_orchestrator: Callable[..., JobOrchestrator], database: Database
) -> JobOrchestrator:
    return make_orchestrator(database)


def _context(job: QueueJob) -> JobContext:
    return JobContext(job=job, cancel_token=CancellationToken())


class TestEnqueueOperations:
    """Tests for the job ids and flags the orchestrator enqueues with."""

    def test_ingestion_message_enqueues_on_demand_sync(
        self, orchestrator: JobOrchestrator
    ) -> None:
        """Should collapse repeated ingestion requests into one job."""
        message = MasterDataSyncRequested(origin='ingestion', reason='unknown drivers')

        first = orchestrator.handle_message(message)
        second = orchestrator.handle_message(message)

        assert first.id == 'sync-on-demand'
        assert second.id == first.id
        assert first.remove_on_complete
        assert first.remove_on_fail
        assert orchestrator.queues[QUEUE_MASTER_DATA_SYNC].counts()['waiting'] == 1

    def test_historical_message_uses_own_id(self, orchestrator: JobOrchestrator) -> None:
        """Should not collapse a historical request into the ingestion one."""
        orchestrator.handle_message(MasterDataSyncRequested(origin='ingestion'))

        job = orchestrator.handle_message(MasterDataSyncRequested(origin='historical'))

        assert job.id == 'sync-on-demand-historical'
        assert orchestrator.queues[QUEUE_MASTER_DATA_SYNC].counts()['waiting'] == 2  # noqa: PLR2004

    def test_manual_sync_keeps_failures(self, orchestrator: JobOrchestrator) -> None:
        """Should use a timestamped id and keep the job if it fails."""
        job = orchestrator.trigger_master_data_sync()

        assert job.id == 'manual-sync-1759320000000'
        assert job.payload == {'origin': 'manual'}
        assert job.remove_on_complete
        assert not job.remove_on_fail

    def test_scheduled_master_sync(self, orchestrator: JobOrchestrator) -> None:
        """Should enqueue under the fixed scheduled id."""
        job = orchestrator.enqueue_scheduled_master_data_sync()

        assert job.id == 'scheduled-master-sync'
        assert job.remove_on_complete
        assert job.remove_on_fail
        assert job.max_attempts == 3  # noqa: PLR2004

    def test_scheduled_ingestion_skips_while_pending(
        self, orchestrator: JobOrchestrator, clock: FakeClock
    ) -> None:
        """Should skip a tick while the previous run is still queued."""
        first = orchestrator.enqueue_scheduled_ingestion()
        clock.advance(60)
        second = orchestrator.enqueue_scheduled_ingestion()

        assert first is not None
        assert first.id == 'ingestion-1759320000000'
        assert second is None

    def test_scheduled_ingestion_after_previous_finished(
        self, orchestrator: JobOrchestrator, clock: FakeClock
    ) -> None:
        """Should enqueue a fresh run once the previous one finished."""
        queue = orchestrator.queues[QUEUE_EVENT_INGESTION]
        first = orchestrator.enqueue_scheduled_ingestion()
        assert first is not None
        queue.claim('worker-test', 60)
        queue.complete(first.id, 'worker-test')
        clock.advance(60)

        second = orchestrator.enqueue_scheduled_ingestion()

        assert second is not None
        assert second.id == 'ingestion-1759320060000'


class TestProcessors:
    """Tests for the processors bound to each queue."""

    def test_master_data_processor(
        self,
        orchestrator: JobOrchestrator,
        fake_adapter: FakeAdapter,
        sample_drivers: list[MixDriver],
    ) -> None:
        """Should run the sync and return its counts."""
        fake_adapter.drivers = sample_drivers
        job = orchestrator.trigger_master_data_sync()

        result = orchestrator._process_master_data_sync(_context(job))

        assert result['drivers'] == 2  # noqa: PLR2004
        assert result['failures'] == {}

    def test_ingestion_processor_requests_sync(
        self,
        orchestrator: JobOrchestrator,
        fake_adapter: FakeAdapter,
        make_page: Callable[..., EventsPage],
    ) -> None:
        """Should run ingestion and enqueue a sync for unknown references."""
        fake_adapter.pages = [make_page([1, 2], FIXED_NOW, has_more_items=False)]
        job = orchestrator.enqueue_scheduled_ingestion()
        assert job is not None

        result = orchestrator._process_event_ingestion(_context(job))

        assert result['events_inserted'] == 2  # noqa: PLR2004
        assert orchestrator.queues[QUEUE_MASTER_DATA_SYNC].get_job('sync-on-demand')

    def test_historical_processor_runs_load(
        self, orchestrator: JobOrchestrator, fake_adapter: FakeAdapter
    ) -> None:
        """Should process the load named in the payload and request a sync."""
        job_id = orchestrator.historical_loads.start(
            FIXED_NOW - timedelta(hours=1), FIXED_NOW
        )
        job = orchestrator.queues[QUEUE_HISTORICAL_DATA_LOAD].get_job(job_id)
        assert job is not None

        result = orchestrator._process_historical_load(_context(job))

        assert result['status'] == 'completed'
        assert len(fake_adapter.window_calls) == 1
        assert orchestrator.queues[QUEUE_MASTER_DATA_SYNC].get_job(
            'sync-on-demand-historical'
        )

    def test_cancel_signal_without_running_unit(
        self, orchestrator: JobOrchestrator
    ) -> None:
        """Should report False when the load is not running in this process."""
        assert orchestrator._cancel_historical_unit('historical-0') is False


class TestSchedules:
    """Tests for scheduler registration."""

    def test_registers_both_schedules(
        self,
        make_orchestrator: Callable[..., JobOrchestrator],
        database: Database,
        ingest_config: IngestConfig,
    ) -> None:
        """Should add the master-data and ingestion cron jobs."""
        scheduler = Mock(spec=BackgroundScheduler)
        orchestrator = make_orchestrator(database, scheduler=scheduler)

        orchestrator._register_schedules()

        registered = {call.kwargs['id'] for call in scheduler.add_job.call_args_list}
        assert registered == {'scheduled-master-sync', 'scheduled-event-ingestion'}
        assert ingest_config.scheduler.master_data_cron == '0 2 * * *'


class TestLifecycle:
    """Tests for start and shutdown."""

    def test_start_process_and_shutdown(
        self,
        make_orchestrator: Callable[..., JobOrchestrator],
        file_database: Database,
        fake_adapter: FakeAdapter,
        make_page: Callable[..., EventsPage],
    ) -> None:
        """Should process queued work on worker threads and stop cleanly."""
        fake_adapter.pages = [make_page([1], FIXED_NOW, has_more_items=False)]
        orchestrator = make_orchestrator(file_database)
        orchestrator.start()
        try:
            assert orchestrator.is_running
            with pytest.raises(RuntimeError, match='already started'):
                orchestrator.start()

            job = orchestrator.enqueue_scheduled_ingestion()
            assert job is not None
            queue = orchestrator.queues[QUEUE_EVENT_INGESTION]
            deadline = time.monotonic() + 10.0
            while time.monotonic() < deadline:
                stored = queue.get_job(job.id)
                if stored is not None and stored.state == QueueJobState.COMPLETED:
                    break
                time.sleep(0.05)
            stored = queue.get_job(job.id)
            assert stored is not None
            assert stored.state == QueueJobState.COMPLETED
        finally:
            orchestrator.shutdown()

        assert not orchestrator.is_running
        assert all(not worker.is_running for worker in orchestrator.workers.values())
        orchestrator.shutdown()

    def test_shutdown_without_start(
        self, make_orchestrator: Callable[..., JobOrchestrator], database: Database
    ) -> None:
        """Should be safe to shut down an orchestrator that never started."""
        orchestrator = make_orchestrator(database)

        orchestrator.shutdown()
        orchestrator.shutdown()

        assert not orchestrator.is_running

    def test_client_retry_wait_ends_on_shutdown(
        self, ingest_config: IngestConfig, database: Database
    ) -> None:
        """Should give owned clients a retry wait that shutdown interrupts."""
        orchestrator = JobOrchestrator(ingest_config, database)
        assert orchestrator._owned_clients
        for client in orchestrator._owned_clients:
            assert client._sleep == orchestrator._client_retry_sleep
        orchestrator._client_retry_sleep(0.0)

        orchestrator.shutdown()

        started = time.monotonic()
        with pytest.raises(JobInterrupted):
            orchestrator._client_retry_sleep(30.0)
        assert time.monotonic() - started < 5.0  # noqa: PLR2004

    def test_scheduler_disabled(
        self,
        make_orchestrator: Callable[..., JobOrchestrator],
        file_database: Database,
        ingest_config: IngestConfig,
    ) -> None:
        """Should not start the scheduler when scheduling is disabled."""
        scheduler = Mock(spec=BackgroundScheduler)
        scheduler.running = False
        config = ingest_config.model_copy(update={'scheduler': SchedulerConfig(enabled=False)})
        orchestrator = make_orchestrator(file_database, config=config, scheduler=scheduler)

        orchestrator.start()
        orchestrator.shutdown()

        scheduler.start.assert_not_called()
        scheduler.add_job.assert_not_called()

    def test_request_shutdown_ends_run_forever(
        self, make_orchestrator: Callable[..., JobOrchestrator], file_database: Database
    ) -> None:
        """Should return from run_forever once shutdown is requested."""
        orchestrator = make_orchestrator(file_database)
        orchestrator.request_shutdown()

        orchestrator.run_forever(install_signals=False)

        assert not orchestrator.is_running
