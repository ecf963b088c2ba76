# telematics_ingest/__init__.py
"""
Telematics Ingest - MiX Integrate event ingestion into a relational store.

The package keeps a local database in step with a MiX Telematics
organisation through three kinds of work, each on its own durable queue:

1. **Continuous ingestion** (`event-ingestion`)
   - Drains the created-since event feed from a stored since-token cursor
   - Lands each page and advances the cursor in one transaction
   - Paced by PacingGovernor, protected by FailureRecorder's circuit breaker

2. **Historical backfill** (`historical-data-load`)
   - Loads a past date range hour by hour with a resumable checkpoint
   - Started, inspected and cancelled through HistoricalLoadService

3. **Master data sync** (`master-data-sync`)
   - Refreshes drivers, vehicles and event types
   - Scheduled daily, and requested on demand when events reference unknown ids

Quick Start - Worker Process:
    >>> from telematics_ingest import Database, JobOrchestrator, load_config, setup_logger
    >>>
    >>> config = load_config('config/telematics_config.yaml')
    >>> setup_logger(config=config.logging)
    >>> JobOrchestrator(config, Database(config.database)).run_forever()

Quick Start - Command Line:
    $ telematics-ingest run-worker
    $ telematics-ingest backfill start 2025-09-01 2025-09-08
    $ telematics-ingest status

For more information, see DESIGN.md.
"""

__version__ = '0.1.0'

from telematics_ingest.adapter import MixApiAdapter
from telematics_ingest.backfill import (
    BackfillError,
    HistoricalBackfillEngine,
    HistoricalLoadService,
    HistoricalLoadStatus,
)
from telematics_ingest.client import (
    APIError,
    AuthenticationError,
    RateLimitError,
    TelemetryClient,
    TransientAPIError,
)
from telematics_ingest.common import setup_logger
from telematics_ingest.config import IngestConfig, load_config
from telematics_ingest.ingestion import EventIngestionLoop, IngestionRunSummary
from telematics_ingest.master_data import MasterDataSync, MasterDataSyncResult
from telematics_ingest.monitoring import IngestionMonitor
from telematics_ingest.orchestration.orchestrator import JobOrchestrator
from telematics_ingest.resilience import FailureRecorder, PacingGovernor
from telematics_ingest.storage import Database

__all__: list[str] = [
    'APIError',
    'AuthenticationError',
    'BackfillError',
    'Database',
    'EventIngestionLoop',
    'FailureRecorder',
    'HistoricalBackfillEngine',
    'HistoricalLoadService',
    'HistoricalLoadStatus',
    'IngestConfig',
    'IngestionMonitor',
    'IngestionRunSummary',
    'JobOrchestrator',
    'MasterDataSync',
    'MasterDataSyncResult',
    'MixApiAdapter',
    'PacingGovernor',
    'RateLimitError',
    'TelemetryClient',
    'TransientAPIError',
    '__version__',
    'load_config',
    'setup_logger',
]
