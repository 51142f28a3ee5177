"""
Track Fusion

Windowed aggregation of raw provider reports and their merge into one
authoritative track per entity, plus duplicate suppression.
"""

from .aggregator import FusionAggregator
from .config import DedupConfig, FusionConfig, GateThresholds
from .dedup import Deduplicator
from .engine import FusionEngine, FusionResult

__all__ = [
    "FusionAggregator",
    "FusionConfig",
    "DedupConfig",
    "GateThresholds",
    "Deduplicator",
    "FusionEngine",
    "FusionResult",
]
