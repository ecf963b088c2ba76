"""
Configuration Package for telematics_ingest.

Exposes the configuration models and the loader function.
"""

from telematics_ingest.config.config_models import (
    ApiConfig,
    BackfillConfig,
    DatabaseConfig,
    IngestConfig,
    IngestionConfig,
    LoggingConfig,
    PacingConfig,
    QueueConfig,
    QueuesConfig,
    RecoveryConfig,
    SchedulerConfig,
)
from telematics_ingest.config.loader import DEFAULT_CONFIG_PATH, load_config

__all__: list[str] = [
    'DEFAULT_CONFIG_PATH',
    'ApiConfig',
    'BackfillConfig',
    'DatabaseConfig',
    'IngestConfig',
    'IngestionConfig',
    'LoggingConfig',
    'PacingConfig',
    'QueueConfig',
    'QueuesConfig',
    'RecoveryConfig',
    'SchedulerConfig',
    'load_config',
]
