# telematics_ingest/ingestion.py
"""
Continuous since-token ingestion loop.

One run drains the MiX created-since feed from the stored cursor until the API
reports no more items, landing each page and advancing the cursor in a single
transaction:

    load cursor (self-heal expired/corrupt tokens to NEW)
    loop:
        cancellation check
        circuit breaker check        (may block through the cooldown)
        pacing governor wait         (3s / 30s / exponential after errors)
        fetch page                   (retry with backoff, record failures)
        dedupe + insert events  --+
        advance cursor          --+  one transaction
        record success, request master-data sync for unknown references
    while has_more_items

Design Decisions:
-----------------
- The loop instance is long-lived and reused by every scheduled run, so the
  governor remembers whether the previous run ended drained or in error and
  spaces the first request of the next run accordingly.

- When every attempt for a page fails, the cursor is not moved. The next run
  retries the same token, and the pacing governor backs off. The one
  exception is a token that has aged past the expiry margin, which is reset to
  NEW because the API would reject it anyway. Setting
  `skip_unrecoverable_token` restores the older behaviour of skipping one
  second ahead, which trades a possible small gap for progress.

- Master-data sync is requested at most once per run, through the injected
  message sink.

Usage:
------
    loop = EventIngestionLoop(database, adapter, governor, recorder, config.ingestion)
    summary = loop.run(cancel_token)
"""

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from telematics_ingest.adapter import MixApiAdapter
from telematics_ingest.cancellation import CancellationToken
from telematics_ingest.client import APIError
from telematics_ingest.common import utc_now
from telematics_ingest.config import IngestionConfig
from telematics_ingest.master_data import MissingReferences, find_missing_references
from telematics_ingest.messages import (
    MasterDataSyncRequested,
    MessageSink,
    log_only_sink,
)
from telematics_ingest.models import NEW_TOKEN, EventsPage, SinceToken, SinceTokenParseError
from telematics_ingest.resilience import FailureRecorder, PacingGovernor
from telematics_ingest.storage import (
    CursorRepository,
    Database,
    TelemetryEventWriter,
    WriteResult,
)

__all__: list[str] = ['EventIngestionLoop', 'IngestionRunSummary']

logger: logging.Logger = logging.getLogger(__name__)


class IngestionRunSummary(BaseModel):
    """
    Outcome of one ingestion run.

    Attributes:
        process_name: Cursor key used by the run.
        starting_token: Token the run started from (after any self-heal).
        final_token: Token stored in the cursor when the run ended.
        pages_fetched: Pages successfully fetched and persisted.
        events_received: Events returned by the API across all pages.
        events_inserted: New rows written.
        duplicates_skipped: Events dropped by in-batch or stored-id dedupe.
        failed_attempts: Fetch attempts that raised APIError.
        token_reset: Whether the cursor was reset to NEW during the run.
        cancelled: Whether the run stopped because of user cancellation.
        gave_up: Whether the run ended because a page exhausted its retries.
        error_message: Last fetch error when gave_up is set.
    """

    model_config = ConfigDict(extra='forbid')

    process_name: str
    starting_token: str
    final_token: str
    pages_fetched: int = 0
    events_received: int = 0
    events_inserted: int = 0
    duplicates_skipped: int = 0
    failed_attempts: int = 0
    token_reset: bool = False
    cancelled: bool = False
    gave_up: bool = False
    error_message: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


class EventIngestionLoop:
    """
    Drains the since-token feed into telemetry_events.

    Args:
        database: Target database holding the cursor and event tables.
        adapter: MiX API adapter.
        governor: Pacing governor owned by this loop.
        recorder: Failure recorder / circuit breaker owned by this loop.
        config: Process name, retry count, chunk size and skip policy.
        message_sink: Receives MasterDataSyncRequested messages.
        writer: Event writer; defaults to one using config.insert_chunk_size.
        wall_clock: UTC clock for cursor timestamps and token age.
    """

    def __init__(
        self,
        database: Database,
        adapter: MixApiAdapter,
        governor: PacingGovernor,
        recorder: FailureRecorder,
        config: IngestionConfig,
        message_sink: MessageSink = log_only_sink,
        writer: TelemetryEventWriter | None = None,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database: Database = database
        self._adapter: MixApiAdapter = adapter
        self._governor: PacingGovernor = governor
        self._recorder: FailureRecorder = recorder
        self._config: IngestionConfig = config
        self._message_sink: MessageSink = message_sink
        self._writer: TelemetryEventWriter = writer or TelemetryEventWriter(
            chunk_size=config.insert_chunk_size
        )
        self._wall_clock: Callable[[], datetime] = wall_clock

        # Outcome of the most recent request, carried across runs for pacing.
        self._has_more_items: bool = True
        self._last_attempt_failed: bool = False

    @property
    def process_name(self) -> str:
        return self._config.process_name

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, cancel_token: CancellationToken | None = None) -> IngestionRunSummary:
        """
        Ingest pages until the feed is drained, retries are exhausted or the
        run is cancelled.

        Args:
            cancel_token: Cooperative cancellation; a fresh token if omitted.

        Returns:
            IngestionRunSummary for the run.

        Raises:
            JobInterrupted: If the token is cancelled for worker shutdown.
        """
        token: CancellationToken = cancel_token or CancellationToken()
        current_token, was_reset = self._load_cursor()

        summary = IngestionRunSummary(
            process_name=self.process_name,
            starting_token=current_token.encode(),
            final_token=current_token.encode(),
            token_reset=was_reset,
            started_at=self._wall_clock(),
        )
        logger.info(
            'Starting event ingestion for %r from token %s',
            self.process_name,
            current_token,
        )

        sync_requested: bool = False
        while True:
            if token.is_cancelled:
                token.raise_if_shutdown()
                summary.cancelled = True
                logger.warning('Event ingestion cancelled at token %s', current_token)
                break

            self._recorder.check_circuit_breaker(sleep=token.sleep)
            self._governor.wait_before_next(
                has_more_items=self._has_more_items,
                had_error=self._last_attempt_failed,
                sleep=token.sleep,
            )
            if token.is_cancelled:
                continue

            page: EventsPage | None = self._fetch_with_retries(current_token, token, summary)
            if page is None:
                if token.is_cancelled:
                    continue
                self._last_attempt_failed = True
                summary.gave_up = True
                current_token = self._handle_exhausted_token(current_token, summary)
                break

            self._last_attempt_failed = False
            self._has_more_items = page.has_more_items

            write_result: WriteResult = self._persist_page(page)
            self._recorder.record_success()
            current_token = page.next_since_token

            summary.pages_fetched += 1
            summary.events_received += write_result.received
            summary.events_inserted += write_result.inserted
            summary.duplicates_skipped += write_result.duplicates

            logger.info(
                'Page %d: %d events received, %d inserted, has_more=%s, next token %s',
                summary.pages_fetched,
                write_result.received,
                write_result.inserted,
                page.has_more_items,
                current_token,
            )

            if not sync_requested and page.events:
                sync_requested = self._request_missing_reference_sync(page)

            if not page.has_more_items:
                break

        summary.final_token = current_token.encode()
        summary.finished_at = self._wall_clock()
        logger.info(
            'Event ingestion finished: pages=%d inserted=%d duplicates=%d final_token=%s',
            summary.pages_fetched,
            summary.events_inserted,
            summary.duplicates_skipped,
            summary.final_token,
        )
        return summary

    # -------------------------------------------------------------------------
    # Cursor Handling
    # -------------------------------------------------------------------------

    def _load_cursor(self) -> tuple[SinceToken, bool]:
        """
        Read the stored token, resetting it to NEW if corrupt or expired.

        Returns:
            The token to start from and whether a reset was persisted.
        """
        with self._database.session_scope() as session:
            cursor = CursorRepository(session).get_or_create(self.process_name)
            raw_token: str = cursor.last_successful_since_token

            try:
                token: SinceToken = SinceToken.decode(raw_token)
            except SinceTokenParseError as parse_error:
                logger.warning(
                    'Stored token for %r is invalid (%s); resetting to NEW',
                    self.process_name,
                    parse_error,
                )
                cursor.last_successful_since_token = NEW_TOKEN
                return SinceToken.NEW, True

            if token.is_older_than(self._recorder.token_max_age(), self._wall_clock()):
                logger.warning(
                    'Stored token %s for %r is past the expiry margin; resetting to NEW',
                    raw_token,
                    self.process_name,
                )
                cursor.last_successful_since_token = NEW_TOKEN
                return SinceToken.NEW, True

            return token, False

    def _handle_exhausted_token(
        self, current_token: SinceToken, summary: IngestionRunSummary
    ) -> SinceToken:
        """Decide where the cursor goes after a page failed every attempt."""
        raw_current: str = current_token.encode()
        next_raw: str = self._recorder.generate_next_token(raw_current)

        if next_raw == NEW_TOKEN and not current_token.is_new:
            self._store_token(NEW_TOKEN)
            summary.token_reset = True
            logger.warning(
                'Token %s expired after failed attempts; cursor reset to NEW', raw_current
            )
            return SinceToken.NEW

        if self._config.skip_unrecoverable_token and next_raw != raw_current:
            self._store_token(next_raw)
            logger.warning(
                'Skipping unrecoverable token %s; cursor advanced to %s',
                raw_current,
                next_raw,
            )
            return SinceToken.decode(next_raw)

        logger.error(
            'Token %s failed %d attempts; cursor left in place for the next run',
            raw_current,
            self._config.retry_attempts,
        )
        return current_token

    def _store_token(self, raw_token: str) -> None:
        with self._database.session_scope() as session:
            CursorRepository(session).save_token(
                self.process_name, raw_token, run_at=self._wall_clock()
            )

    # -------------------------------------------------------------------------
    # Fetch & Persist
    # -------------------------------------------------------------------------

    def _fetch_with_retries(
        self,
        current_token: SinceToken,
        cancel_token: CancellationToken,
        summary: IngestionRunSummary,
    ) -> EventsPage | None:
        """Fetch one page, retrying APIError with backoff. None if all failed."""
        attempts: int = self._config.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._adapter.get_events_since(current_token)
            except APIError as api_error:
                summary.failed_attempts += 1
                summary.error_message = str(api_error)
                logger.warning(
                    'Fetch attempt %d/%d failed for token %s: %s',
                    attempt,
                    attempts,
                    current_token,
                    api_error,
                )
                self._recorder.record_failed_token(
                    current_token.encode(), api_error, sleep=cancel_token.sleep
                )
                if attempt >= attempts or cancel_token.is_cancelled:
                    break
                self._recorder.wait_with_backoff(attempt, sleep=cancel_token.sleep)
                self._governor.wait_before_next(
                    has_more_items=self._has_more_items,
                    had_error=True,
                    sleep=cancel_token.sleep,
                )
                if cancel_token.is_cancelled:
                    break
        return None

    def _persist_page(self, page: EventsPage) -> WriteResult:
        """Insert the page's new events and advance the cursor atomically."""
        with self._database.session_scope() as session:
            write_result: WriteResult = self._writer.write(session, page.events)
            CursorRepository(session).save_token(
                self.process_name,
                page.next_since_token.encode(),
                run_at=self._wall_clock(),
            )
        return write_result

    def _request_missing_reference_sync(self, page: EventsPage) -> bool:
        with self._database.session_scope() as session:
            missing: MissingReferences = find_missing_references(session, page.events)

        if not missing.has_missing:
            return False

        logger.info(
            'Unknown references in events (drivers=%d vehicles=%d event_types=%d); '
            'requesting master data sync',
            len(missing.driver_ids),
            len(missing.vehicle_ids),
            len(missing.event_type_ids),
        )
        self._message_sink(
            MasterDataSyncRequested(
                origin='ingestion',
                reason='events reference unknown master data',
                missing_driver_ids=missing.driver_ids,
                missing_vehicle_ids=missing.vehicle_ids,
                missing_event_type_ids=missing.event_type_ids,
            )
        )
        return True
