"""Transcript handling: noise filtering and sentence aggregation into deliverable segments."""
from .aggregator import AggregatorState, DeliveryReason, SentenceAggregator, TranscriptSegment
from .filters import is_usable_chunk, rejection_reason

__all__ = [
    "AggregatorState",
    "DeliveryReason",
    "SentenceAggregator",
    "TranscriptSegment",
    "is_usable_chunk",
    "rejection_reason",
]
