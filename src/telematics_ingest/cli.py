# telematics_ingest/cli.py
"""
Command-line entry point.

Commands:
    run-worker                   run queues and schedules until SIGINT/SIGTERM
    sync-master-data [--now]     enqueue (or run inline) a master-data sync
    status                       ingestion status as JSON
    metrics [--days N]           event volume metrics as JSON
    history [--limit N]          recent ingestion runs as JSON
    backfill start START END     start a historical load (ISO-8601 dates)
    backfill status JOB_ID       progress of one historical load
    backfill list [--limit N]    recent historical loads
    backfill cancel JOB_ID       cancel a pending or running load

Every command accepts `--config PATH` (default config/telematics_config.yaml).
Commands other than run-worker build the same orchestrator without starting
it, so they only touch the database (and the API for `sync-master-data --now`).

Exit codes: 0 on success, 1 on an operational error, 2 on usage errors.
"""

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import yaml
from pydantic import BaseModel

from telematics_ingest.backfill import BackfillError
from telematics_ingest.common import as_utc, setup_logger
from telematics_ingest.config import DEFAULT_CONFIG_PATH, IngestConfig, load_config
from telematics_ingest.master_data import MasterDataSyncError
from telematics_ingest.orchestration.orchestrator import JobOrchestrator
from telematics_ingest.storage import Database

__all__: list[str] = ['build_parser', 'main']

logger: logging.Logger = logging.getLogger(__name__)

EXIT_OK: int = 0
EXIT_ERROR: int = 1


def _iso_datetime(value: str) -> datetime:
    """argparse type for ISO-8601 dates; naive values are taken as UTC."""
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError as error:
        raise argparse.ArgumentTypeError(f'not an ISO-8601 date: {value!r}') from error


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'must be >= 1, got {number}')
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='telematics-ingest',
        description='MiX telemetry ingestion service',
    )
    parser.add_argument(
        '--config',
        default=str(DEFAULT_CONFIG_PATH),
        help='Path to the YAML configuration file',
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('run-worker', help='Run workers and schedules until stopped')

    sync_parser = subparsers.add_parser('sync-master-data', help='Sync master data')
    sync_parser.add_argument(
        '--now',
        action='store_true',
        help='Run the sync in this process instead of enqueueing it',
    )

    subparsers.add_parser('status', help='Show ingestion status')

    metrics_parser = subparsers.add_parser('metrics', help='Show event metrics')
    metrics_parser.add_argument('--days', type=_positive_int, default=7)

    history_parser = subparsers.add_parser('history', help='Show ingestion run history')
    history_parser.add_argument('--limit', type=_positive_int, default=20)

    backfill_parser = subparsers.add_parser('backfill', help='Historical loads')
    backfill_commands = backfill_parser.add_subparsers(
        dest='backfill_command', help='Backfill commands'
    )
    backfill_commands.required = True

    start_parser = backfill_commands.add_parser('start', help='Start a historical load')
    start_parser.add_argument('start_date', type=_iso_datetime)
    start_parser.add_argument('end_date', type=_iso_datetime)

    status_parser = backfill_commands.add_parser('status', help='Show load progress')
    status_parser.add_argument('job_id')

    list_parser = backfill_commands.add_parser('list', help='List recent loads')
    list_parser.add_argument('--limit', type=_positive_int, default=10)

    cancel_parser = backfill_commands.add_parser('cancel', help='Cancel a load')
    cancel_parser.add_argument('job_id')

    return parser


def _emit(payload: BaseModel | Sequence[BaseModel] | dict[str, Any]) -> None:
    """Print a model, list of models or dict as indented JSON."""
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump(mode='json')
    elif isinstance(payload, dict):
        data = payload
    else:
        data = [item.model_dump(mode='json') for item in payload]
    print(json.dumps(data, indent=2, default=str))


def _dispatch(args: argparse.Namespace, orchestrator: JobOrchestrator) -> int:
    """Run one non-worker command against an unstarted orchestrator."""
    if args.command == 'status':
        _emit(orchestrator.monitor.get_status())
    elif args.command == 'metrics':
        _emit(orchestrator.monitor.get_metrics(days=args.days))
    elif args.command == 'history':
        _emit(orchestrator.monitor.get_history(limit=args.limit))
    elif args.command == 'sync-master-data':
        if args.now:
            _emit(orchestrator.master_data_sync.run())
        else:
            job = orchestrator.trigger_master_data_sync()
            _emit({'job_id': job.id, 'queue': job.queue_name, 'state': job.state})
    elif args.command == 'backfill':
        loads = orchestrator.historical_loads
        if args.backfill_command == 'start':
            job_id: str = loads.start(args.start_date, args.end_date)
            _emit(loads.get_status(job_id))
        elif args.backfill_command == 'status':
            _emit(loads.get_status(args.job_id))
        elif args.backfill_command == 'list':
            _emit(loads.list_recent(limit=args.limit))
        elif args.backfill_command == 'cancel':
            _emit(loads.cancel(args.job_id))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    # Bootstrap logging so config loading problems are visible.
    setup_logger()
    try:
        config: IngestConfig = load_config(args.config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as error:
        print(f'error: {error}', file=sys.stderr)
        return EXIT_ERROR
    setup_logger(config=config.logging)

    database = Database(config.database)
    orchestrator = JobOrchestrator(config, database)

    if args.command == 'run-worker':
        orchestrator.run_forever()
        return EXIT_OK

    if config.database.create_tables:
        database.create_all()

    try:
        return _dispatch(args, orchestrator)
    except (BackfillError, MasterDataSyncError) as error:
        logger.error('%s failed: %s', args.command, error)
        print(f'error: {error}', file=sys.stderr)
        return EXIT_ERROR
    finally:
        orchestrator.shutdown()


if __name__ == '__main__':
    sys.exit(main())
