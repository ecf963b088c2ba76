# telematics_ingest/common/logger.py
"""
Logging configuration for the telematics_ingest package.

Provides centralized logging setup so the worker process, the CLI and the
library modules share one format and one set of handlers. Modules never
configure logging themselves; they only create module-level loggers with
logging.getLogger(__name__) and inherit from the package logger configured here.
"""

import logging
import sys
from pathlib import Path

from telematics_ingest.config import LoggingConfig

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: str = 'telematics_ingest'


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Set up logging for the telematics_ingest package.

    The function is idempotent: calling it again clears and rebuilds the
    handlers, which matters for the CLI where a config file may be loaded
    after a bootstrap call with defaults.

    Args:
        logging_level: Console level to use when NO config object is provided.
            Defaults to logging.INFO.
        config: Optional validated logging configuration. If provided:
                - Console logging uses config.console_level
                - File logging is enabled if config.file_path is set
                - The 'logging_level' argument is ignored.

    Returns:
        The package-level logger ('telematics_ingest').

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)

        >>> config = load_config()
        >>> setup_logger(config=config.logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)

    # Clear existing handlers so repeated calls do not duplicate output
    package_logger.handlers.clear()

    log_format: logging.Formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    # --- 1. Console Handler ---
    if logging_level is None:
        logging_level = logging.INFO
    if config:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level

    # stderr keeps stdout clean for the JSON the CLI prints.
    console_handler: logging.Handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # --- 2. File Handler (Config Only) ---
    file_level: int | None = config.get_file_level_int() if config else None

    if config and config.file_path and file_level is not None:
        log_file_path: Path = config.file_path
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler: logging.FileHandler = logging.FileHandler(
            filename=str(log_file_path),
            mode='a',
            encoding='utf-8',
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(file_level)
        package_logger.addHandler(file_handler)

        # logging.info might not reach the console if console_level is WARNING
        if console_level <= logging.INFO:
            print(f'Logging to file: {log_file_path}', file=sys.stderr)
    else:
        file_level = None

    # --- 3. Package Logger Level ---
    # The logger must be as verbose as its most verbose handler.
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    # Worker threads log through the same handlers; keep records out of root.
    package_logger.propagate = False

    return package_logger
