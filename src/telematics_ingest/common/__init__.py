# telematics_ingest/common/__init__.py

from telematics_ingest.common.logger import PACKAGE_LOGGER_NAME, setup_logger
from telematics_ingest.common.time_utils import as_utc, utc_now
from telematics_ingest.common.truststore_context import build_truststore_ssl_context

__all__: list[str] = [
    'PACKAGE_LOGGER_NAME',
    'as_utc',
    'build_truststore_ssl_context',
    'setup_logger',
    'utc_now',
]
