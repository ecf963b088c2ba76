# telematics_ingest/resilience/__init__.py
"""Pacing governor and failure recorder / circuit breaker."""

from telematics_ingest.resilience.pacing import PacingGovernor, PacingStats
from telematics_ingest.resilience.recovery import (
    CircuitBreakerState,
    FailureRecord,
    FailureRecorder,
    RecoveryStats,
)

__all__: list[str] = [
    'CircuitBreakerState',
    'FailureRecord',
    'FailureRecorder',
    'PacingGovernor',
    'PacingStats',
    'RecoveryStats',
]
