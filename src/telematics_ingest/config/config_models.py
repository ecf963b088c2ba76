# telematics_ingest/config/config_models.py
"""
Configuration models for the telematics ingestion worker.

This module provides the Pydantic models for the YAML configuration file that
controls the MiX Integrate API connection, the database, the resilience layer
(pacing and circuit breaker), the ingestion and backfill engines, the job
queues and their schedules, and logging.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- Every section except `api` has complete defaults, so a minimal config file
  only needs API credentials and a database URL. The defaults mirror the
  API's published contract (3s/30s pacing, 7-day token validity).

- SecretStr is used for passwords and client secrets to prevent accidental
  exposure in logs, repr(), or error messages.

Usage:
------
    import yaml
    from telematics_ingest.config.config_models import IngestConfig

    with open('config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = IngestConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'ApiConfig',
    'BackfillConfig',
    'DatabaseConfig',
    'IngestConfig',
    'IngestionConfig',
    'LogLevelName',
    'LoggingConfig',
    'PacingConfig',
    'QueueConfig',
    'QueuesConfig',
    'RecoveryConfig',
    'SchedulerConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Avoids importing logging into the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}


def _validate_http_url(url: str, field_name: str) -> str:
    """Require an http(s) scheme and strip the trailing slash."""
    if not url:
        raise ValueError(f'{field_name} cannot be empty')

    if not url.startswith(('http://', 'https://')):
        raise ValueError(
            f"{field_name} must start with 'http://' or 'https://', got: {url!r}"
        )

    return url.rstrip('/')


# =============================================================================
# External API Configuration
# =============================================================================


class ApiConfig(BaseModel):
    """Connection and authentication settings for the MiX Integrate API.

    Authentication uses the OAuth2 resource-owner password grant against the
    identity server. The `basic_auth_token` is the pre-encoded
    base64(client_id:client_secret) sent as the Basic Authorization header on
    token requests; `username`/`password` identify the integration user.

    SSL/TLS Handling:
        verify_ssl supports three modes:
          - True: Standard verification (default, use in production)
          - False: Disabled verification (insecure, use only when necessary)
          - Path string: Custom CA bundle path (preferred for proxy environments)
        use_truststore=True overrides verify_ssl with an SSLContext built from
        the operating system trust store.

    Attributes:
        base_url: Integrate API root, e.g. https://integrate.us.mixtelematics.com.
        identity_url: Identity server root, e.g. https://identity.us.mixtelematics.com.
        organisation_id: MiX organisation (group) id used in every data request.
        username: Integration user name.
        password: Integration user password (masked).
        basic_auth_token: base64(client_id:client_secret) for token requests (masked).
        scope: OAuth scopes requested at login.
        entity_type: Entity type the event feeds are grouped by.
        events_page_quantity: Maximum events requested per since-token page.
        request_timeout: [connect, read] timeout in seconds.
        max_retries: Transport-level attempts for 429/5xx/timeouts (1-10).
        retry_backoff_factor: Multiplier for transport-level exponential backoff.
        verify_ssl: SSL verification mode.
        use_truststore: Build the SSLContext from the OS trust store.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(
        default='https://integrate.us.mixtelematics.com',
        description='Integrate API root URL with scheme, without trailing slash',
    )
    identity_url: str = Field(
        default='https://identity.us.mixtelematics.com',
        description='Identity server root URL with scheme, without trailing slash',
    )
    organisation_id: int = Field(
        gt=0,
        description='MiX organisation/group id used in every data request',
    )
    username: str = Field(min_length=1)
    password: SecretStr
    basic_auth_token: SecretStr = Field(
        description='base64(client_id:client_secret) for the identity server',
    )
    scope: str = Field(default='offline_access MiX.Integrate')
    entity_type: Literal['Asset', 'Driver'] = 'Asset'
    events_page_quantity: int = Field(default=1000, ge=1, le=1000)
    request_timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff_factor: float = Field(default=1.0, gt=0.0, le=60.0)
    verify_ssl: bool | str = True
    use_truststore: bool = False

    @field_validator('base_url', 'identity_url')
    @classmethod
    def validate_url(cls, url: str) -> str:
        """Validate scheme and normalize trailing slash."""
        return _validate_http_url(url, 'url')

    @field_validator('password', 'basic_auth_token')
    @classmethod
    def validate_secret_not_empty(cls, secret: SecretStr) -> SecretStr:
        """Ensure secrets are not empty or whitespace-only.

        Raises:
            ValueError: If the secret is empty or contains only whitespace.
        """
        secret_value: str = secret.get_secret_value()
        if not secret_value or not secret_value.strip():
            raise ValueError('secret values cannot be empty or whitespace-only')
        return secret

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers.

        Raises:
            ValueError: If either timeout value is non-positive.
        """
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Validate that a CA bundle path points at an existing file.

        Raises:
            ValueError: If string path does not exist or is not a file.
        """
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """SQLAlchemy engine settings.

    Attributes:
        url: SQLAlchemy database URL. PostgreSQL in production
            (postgresql+psycopg://...), SQLite for local runs and tests.
        echo: Log every SQL statement (very verbose).
        pool_pre_ping: Test pooled connections before use; survives DB restarts.
        create_tables: Create missing tables at startup. Disable when the
            schema is managed by migrations.
    """

    model_config = ConfigDict(extra='forbid')

    url: str = Field(default='sqlite:///telematics_ingest.db', min_length=1)
    echo: bool = False
    pool_pre_ping: bool = True
    create_tables: bool = True


# =============================================================================
# Resilience Configuration
# =============================================================================


class PacingConfig(BaseModel):
    """Inter-request spacing mandated by the external API.

    The API allows roughly 20 requests per minute while more data is
    available, and requires a 30 second pause once a feed reports it is
    drained. Error backoff is `min(2 ** consecutive_errors * base, max)`.
    """

    model_config = ConfigDict(extra='forbid')

    more_items_interval_seconds: float = Field(default=3.0, ge=0.0)
    drained_interval_seconds: float = Field(default=30.0, ge=0.0)
    error_base_delay_seconds: float = Field(default=1.0, gt=0.0)
    error_max_delay_seconds: float = Field(default=60.0, gt=0.0)


class RecoveryConfig(BaseModel):
    """Circuit breaker, retry backoff and since-token expiry settings.

    Attributes:
        max_consecutive_failures: Failures that open the breaker.
        circuit_breaker_timeout_seconds: Cooldown while the breaker is open.
        retry_base_delay_seconds: Base of the per-request retry backoff.
        retry_max_delay_seconds: Cap of the per-request retry backoff.
        token_max_age_days: Tokens older than this are replaced by NEW. The API
            expires tokens at 7 days; the default keeps one day of margin.
        failed_token_capacity: Maximum entries in the failure table.
        failed_token_ttl_seconds: Failure records older than this are evicted.
    """

    model_config = ConfigDict(extra='forbid')

    max_consecutive_failures: int = Field(default=5, ge=1)
    circuit_breaker_timeout_seconds: float = Field(default=120.0, ge=0.0)
    retry_base_delay_seconds: float = Field(default=1.0, gt=0.0)
    retry_max_delay_seconds: float = Field(default=30.0, gt=0.0)
    token_max_age_days: float = Field(default=6.0, gt=0.0, lt=7.0)
    failed_token_capacity: int = Field(default=500, ge=1)
    failed_token_ttl_seconds: float = Field(default=86_400.0, gt=0.0)


# =============================================================================
# Engine Configuration
# =============================================================================


class IngestionConfig(BaseModel):
    """Continuous ingestion loop settings.

    Attributes:
        process_name: Cursor row key.
        retry_attempts: Fetch attempts per page before the run gives up.
        insert_chunk_size: Rows per INSERT statement.
        skip_unrecoverable_token: When every attempt for a token fails, advance
            the cursor by one second instead of retrying the same token on the
            next run. Trades a possible gap for progress; off by default.
    """

    model_config = ConfigDict(extra='forbid')

    process_name: str = Field(default='event_ingestion', min_length=1)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    insert_chunk_size: int = Field(default=200, ge=1, le=5000)
    skip_unrecoverable_token: bool = False


class BackfillConfig(BaseModel):
    """Historical backfill settings.

    Attributes:
        max_range_days: Longest window a single backfill may cover.
        hour_retry_attempts: Fetch attempts per hour window.
        skip_failed_hours: Skip an hour whose fetch keeps failing instead of
            failing the job.
    """

    model_config = ConfigDict(extra='forbid')

    max_range_days: int = Field(default=90, ge=1)
    hour_retry_attempts: int = Field(default=3, ge=1, le=10)
    skip_failed_hours: bool = False


# =============================================================================
# Queue and Scheduler Configuration
# =============================================================================


class QueueConfig(BaseModel):
    """Worker and retry options for one named queue.

    Attributes:
        concurrency: Jobs processed at once by this queue's worker.
        lock_duration_seconds: Lease on an active job; renewed while running.
        stalled_interval_seconds: How often expired leases are checked.
        max_stalled_count: Stalls tolerated before the job is failed.
        attempts: Total attempts per job (1 disables automatic retry).
        backoff_delay_seconds: Base of the exponential retry delay.
        shutdown_grace_seconds: Wait for in-flight work on shutdown.
        close_timeout_seconds: Force-close deadline after the grace period.
        poll_interval_seconds: Idle poll interval for new jobs.
    """

    model_config = ConfigDict(extra='forbid')

    concurrency: int = Field(default=1, ge=1, le=32)
    lock_duration_seconds: float = Field(default=60.0, gt=0.0)
    stalled_interval_seconds: float = Field(default=30.0, gt=0.0)
    max_stalled_count: int = Field(default=1, ge=0)
    attempts: int = Field(default=1, ge=1, le=20)
    backoff_delay_seconds: float = Field(default=5.0, ge=0.0)
    shutdown_grace_seconds: float = Field(default=5.0, ge=0.0)
    close_timeout_seconds: float = Field(default=30.0, ge=0.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)


class QueuesConfig(BaseModel):
    """Options for the three named queues."""

    model_config = ConfigDict(extra='forbid')

    master_data_sync: QueueConfig = Field(
        default_factory=lambda: QueueConfig(
            lock_duration_seconds=300.0,
            stalled_interval_seconds=30.0,
            max_stalled_count=1,
            attempts=3,
            backoff_delay_seconds=5.0,
        )
    )
    event_ingestion: QueueConfig = Field(
        default_factory=lambda: QueueConfig(
            lock_duration_seconds=60.0,
            stalled_interval_seconds=30.0,
            max_stalled_count=2,
            attempts=2,
            backoff_delay_seconds=10.0,
        )
    )
    historical_data_load: QueueConfig = Field(
        default_factory=lambda: QueueConfig(
            lock_duration_seconds=4 * 60 * 60.0,
            stalled_interval_seconds=60.0,
            max_stalled_count=3,
            attempts=1,
            shutdown_grace_seconds=10.0,
        )
    )

    @model_validator(mode='after')
    def ensure_single_writer_queues(self) -> Self:
        """Ingestion and backfill must run one job at a time.

        Raises:
            ValueError: If either queue is configured with concurrency above 1.
        """
        if self.event_ingestion.concurrency != 1:
            raise ValueError('event_ingestion.concurrency must be 1 (single cursor writer)')
        if self.historical_data_load.concurrency != 1:
            raise ValueError(
                'historical_data_load.concurrency must be 1 (single active backfill)'
            )
        return self


class SchedulerConfig(BaseModel):
    """Cron schedules for repeatable jobs (standard 5-field crontab syntax)."""

    model_config = ConfigDict(extra='forbid')

    enabled: bool = True
    master_data_cron: str = '0 2 * * *'
    event_ingestion_cron: str = '* * * * *'
    timezone: str = 'UTC'

    @field_validator('master_data_cron', 'event_ingestion_cron')
    @classmethod
    def validate_cron_field_count(cls, expression: str) -> str:
        """Reject expressions that are not 5-field crontab strings.

        Raises:
            ValueError: If the expression does not have exactly 5 fields.
        """
        field_count: int = len(expression.split())
        if field_count != 5:  # noqa: PLR2004
            raise ValueError(
                f'cron expression must have 5 fields, got {field_count}: {expression!r}'
            )
        return expression


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Supports dual-destination logging: console (always enabled) and optional
    file output. Console output is typically set to INFO for operational
    visibility, while file output captures DEBUG-level detail for debugging.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
            Accepts level name or numeric value.
        file_level: Minimum log level for file output. Defaults to DEBUG if
            file_path is provided.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Default file_level to DEBUG and reject a level without a path.

        Raises:
            ValueError: If file_level is set but file_path is missing.
        """
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class IngestConfig(BaseModel):
    """Root configuration model for the telematics ingestion worker.

    Aggregates all configuration sections. Only `api` is required; the other
    sections fall back to defaults that match the external API's contract.

    Attributes:
        api: MiX Integrate connection and credentials.
        database: SQLAlchemy engine settings.
        pacing: Pacing governor intervals.
        recovery: Circuit breaker, retry backoff and token expiry.
        ingestion: Continuous ingestion loop settings.
        backfill: Historical backfill settings.
        queues: Worker options per named queue.
        scheduler: Cron schedules for repeatable jobs.
        logging: Console and file logging.
    """

    model_config = ConfigDict(extra='forbid')

    api: ApiConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pacing: PacingConfig = Field(default_factory=PacingConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    queues: QueuesConfig = Field(default_factory=QueuesConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
