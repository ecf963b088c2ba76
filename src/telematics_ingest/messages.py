# telematics_ingest/messages.py
"""
Messages engines send to the orchestrator.

Engines never enqueue jobs themselves. They emit a message through an injected
sink and the orchestrator decides what to schedule, which keeps the engines
free of queue wiring and easy to run standalone from the CLI.
"""

import logging
from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = [
    'MasterDataSyncRequested',
    'MessageOrigin',
    'MessageSink',
    'log_only_sink',
]

logger: logging.Logger = logging.getLogger(__name__)

MessageOrigin = Literal['ingestion', 'historical']


class MasterDataSyncRequested(BaseModel):
    """
    Ask for a master-data sync.

    Attributes:
        origin: Engine that asked. Determines the job id used for the sync.
        reason: Human-readable context for logs.
        missing_driver_ids: Driver ids seen in events but not stored.
        missing_vehicle_ids: Vehicle ids seen in events but not stored.
        missing_event_type_ids: Event type ids seen in events but not stored.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    origin: MessageOrigin
    reason: str = ''
    missing_driver_ids: frozenset[int] = Field(default_factory=frozenset)
    missing_vehicle_ids: frozenset[int] = Field(default_factory=frozenset)
    missing_event_type_ids: frozenset[int] = Field(default_factory=frozenset)


MessageSink = Callable[[MasterDataSyncRequested], None]


def log_only_sink(message: MasterDataSyncRequested) -> None:
    """Default sink for engines run outside the orchestrator."""
    logger.info(
        'Master data sync requested by %s (no orchestrator attached): %s',
        message.origin,
        message.reason,
    )
