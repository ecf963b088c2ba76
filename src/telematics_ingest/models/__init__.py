# telematics_ingest/models/__init__.py
"""Request envelopes, the since-token value type and MiX response models."""

from telematics_ingest.models.mix_models import (
    EventsPage,
    MixDriver,
    MixEvent,
    MixEventType,
    MixPosition,
    MixVehicle,
)
from telematics_ingest.models.shared_request_models import (
    APIResponse,
    HTTPMethod,
    RateLimitInfo,
    RequestSpec,
)
from telematics_ingest.models.since_token import (
    NEW_TOKEN,
    SinceToken,
    SinceTokenParseError,
)

__all__: list[str] = [
    'NEW_TOKEN',
    'APIResponse',
    'EventsPage',
    'HTTPMethod',
    'MixDriver',
    'MixEvent',
    'MixEventType',
    'MixPosition',
    'MixVehicle',
    'RateLimitInfo',
    'RequestSpec',
    'SinceToken',
    'SinceTokenParseError',
]
