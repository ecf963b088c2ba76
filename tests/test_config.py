"""Tests for the configuration models and YAML loader."""

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from telematics_ingest.config import (
    ApiConfig,
    IngestConfig,
    LoggingConfig,
    QueueConfig,
    QueuesConfig,
    SchedulerConfig,
    load_config,
)

MINIMAL_API: dict[str, Any] = {
    'organisation_id': 1234567890,
    'username': 'integration.user',
    'password': 'secret-password',
    'basic_auth_token': 'Y2xpZW50OnNlY3JldA==',
}


def _write_yaml(path: Path, data: Any) -> Path:
    path.write_text(yaml.safe_dump(data), encoding='utf-8')
    return path


class TestLoadConfig:
    """Tests for load_config()."""

    def test_minimal_file_uses_defaults(self, tmp_path: Path) -> None:
        """Should fill every section except api from defaults."""
        config_path = _write_yaml(tmp_path / 'config.yaml', {'api': MINIMAL_API})

        config = load_config(config_path)

        assert config.api.organisation_id == 1234567890  # noqa: PLR2004
        assert config.api.base_url == 'https://integrate.us.mixtelematics.com'
        assert config.pacing.drained_interval_seconds == 30.0  # noqa: PLR2004
        assert config.recovery.token_max_age_days == 6.0  # noqa: PLR2004
        assert config.queues.historical_data_load.attempts == 1
        assert config.scheduler.event_ingestion_cron == '* * * * *'

    def test_loads_shipped_example(self) -> None:
        """Should validate the example config shipped with the project."""
        example = Path(__file__).parent.parent / 'config' / 'telematics_config.yaml'

        config = load_config(example)

        assert config.database.url.startswith('sqlite:///')
        assert config.logging.file_path == Path('logs/telematics_ingest.log')

    def test_accepts_string_path(self, tmp_path: Path) -> None:
        """Should accept a str path as well as a Path."""
        config_path = _write_yaml(tmp_path / 'config.yaml', {'api': MINIMAL_API})

        assert isinstance(load_config(str(config_path)), IngestConfig)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Should raise FileNotFoundError for a missing file."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / 'absent.yaml')

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        """Should raise yaml.YAMLError for unparseable content."""
        config_path = tmp_path / 'config.yaml'
        config_path.write_text('api: [unclosed', encoding='utf-8')

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_non_mapping_content(self, tmp_path: Path) -> None:
        """Should reject a file whose top level is not a mapping."""
        config_path = _write_yaml(tmp_path / 'config.yaml', ['not', 'a', 'mapping'])

        with pytest.raises(ValueError, match='mapping'):
            load_config(config_path)

    def test_validation_failure(self, tmp_path: Path) -> None:
        """Should wrap validation errors in ValueError."""
        config_path = _write_yaml(
            tmp_path / 'config.yaml', {'api': MINIMAL_API, 'unknown_section': {}}
        )

        with pytest.raises(ValueError, match='Configuration validation failed'):
            load_config(config_path)


class TestApiConfig:
    """Tests for ApiConfig validators."""

    def test_strips_trailing_slash(self) -> None:
        """Should normalize URLs without a trailing slash."""
        config = ApiConfig(**{**MINIMAL_API, 'base_url': 'https://integrate.example.com/'})

        assert config.base_url == 'https://integrate.example.com'

    def test_rejects_url_without_scheme(self) -> None:
        """Should require an http(s) scheme."""
        with pytest.raises(ValidationError, match='must start with'):
            ApiConfig(**{**MINIMAL_API, 'identity_url': 'identity.example.com'})

    def test_rejects_blank_secret(self) -> None:
        """Should reject whitespace-only secrets."""
        with pytest.raises(ValidationError, match='whitespace'):
            ApiConfig(**{**MINIMAL_API, 'password': '   '})

    def test_secrets_are_masked(self) -> None:
        """Should not expose secrets in repr."""
        config = ApiConfig(**MINIMAL_API)

        assert 'secret-password' not in repr(config)
        assert config.password.get_secret_value() == 'secret-password'

    def test_rejects_non_positive_timeout(self) -> None:
        """Should require positive connect and read timeouts."""
        with pytest.raises(ValidationError, match='connect_timeout'):
            ApiConfig(**{**MINIMAL_API, 'request_timeout': (0, 30)})

    def test_rejects_missing_ca_bundle(self, tmp_path: Path) -> None:
        """Should reject a verify_ssl path that does not exist."""
        with pytest.raises(ValidationError, match='not found'):
            ApiConfig(**{**MINIMAL_API, 'verify_ssl': str(tmp_path / 'ca.pem')})


class TestQueueAndSchedulerConfig:
    """Tests for queue and scheduler validators."""

    @pytest.mark.parametrize('queue_name', ['event_ingestion', 'historical_data_load'])
    def test_single_writer_queues(self, queue_name: str) -> None:
        """Should refuse concurrency above 1 on cursor and backfill queues."""
        with pytest.raises(ValidationError, match='concurrency must be 1'):
            QueuesConfig(**{queue_name: QueueConfig(concurrency=2)})

    def test_master_data_concurrency_allowed(self) -> None:
        """Should allow parallel master-data workers."""
        queues = QueuesConfig(master_data_sync=QueueConfig(concurrency=2))

        assert queues.master_data_sync.concurrency == 2  # noqa: PLR2004

    def test_rejects_short_cron(self) -> None:
        """Should require 5-field crontab expressions."""
        with pytest.raises(ValidationError, match='5 fields'):
            SchedulerConfig(master_data_cron='0 2 * *')


class TestLoggingConfig:
    """Tests for LoggingConfig validators."""

    def test_appends_log_extension(self) -> None:
        """Should add .log and default the file level to DEBUG."""
        config = LoggingConfig(file_path='logs/ingest')  # pyright: ignore[reportArgumentType]

        assert config.file_path == Path('logs/ingest.log')
        assert config.get_file_level_int() == 10  # noqa: PLR2004

    def test_file_level_requires_path(self) -> None:
        """Should reject a file level without a file path."""
        with pytest.raises(ValidationError, match='file_path is missing'):
            LoggingConfig(file_level='INFO')

    def test_rejects_unknown_numeric_level(self) -> None:
        """Should only accept standard numeric levels."""
        with pytest.raises(ValidationError, match='Numeric log level'):
            LoggingConfig(console_level=15)

    def test_console_level_int(self) -> None:
        """Should translate level names to numbers."""
        assert LoggingConfig(console_level='WARNING').get_console_level_int() == 30  # noqa: PLR2004
