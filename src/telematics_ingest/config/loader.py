# telematics_ingest/config/loader.py
"""
Configuration Loading Logic.

Bridges the YAML file on disk and the typed models in `config_models.py`.

Responsibilities:
    1.  File I/O: Locating and reading the configuration file.
    2.  Parsing: Converting YAML text into Python dictionaries.
    3.  Validation: Instantiating the `IngestConfig` model to enforce types.
    4.  Error Handling: Logging low-level I/O, parsing and validation errors
        with context before raising.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from telematics_ingest.config.config_models import IngestConfig

__all__: list[str] = ['DEFAULT_CONFIG_PATH', 'load_config']

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Path = Path('config/telematics_config.yaml')


def load_config(config_path: Path | str | None = None) -> IngestConfig:
    """Load and validate the ingestion configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file (relative or absolute).
            If None, defaults to 'config/telematics_config.yaml' relative to
            the current working directory.

    Returns:
        Validated IngestConfig instance.

    Raises:
        FileNotFoundError: If config file does not exist at the specified path.
        yaml.YAMLError: If YAML file is malformed or cannot be parsed.
        ValueError: If the file is empty or fails Pydantic validation.

    Example:
        >>> config = load_config('config/telematics_config.yaml')
        >>> config.api.organisation_id
        1662701282895036416
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        logger.debug('No config path provided, using default: %s', DEFAULT_CONFIG_PATH)
    else:
        config_path = Path(config_path)

    logger.info('Loading ingestion configuration from: %s', config_path)

    if not config_path.exists():
        error_message: str = f'Configuration file not found: {config_path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with Path.open(config_path, encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration file must contain a mapping, '
            f'got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    try:
        validated_config: IngestConfig = IngestConfig(**raw_config_data)
    except ValueError as error:
        error_message = f'Configuration validation failed: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info('Configuration loaded and validated successfully')
    return validated_config
