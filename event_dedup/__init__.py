from .models.config import DedupConfig
from .models.dedup import (
    BatchResult,
    ConflictStrategy,
    DuplicatePair,
    EventFingerprint,
    MergeDecision,
    MergeResult,
    MergeStrategy,
    ProcessingMode,
    SimilarityResult,
)
from .models.events import Event, EventField, EventStatus
from .processing.fingerprint import FingerprintBuilder
from .processing.merge import EventMerger, MergeValidationError
from .processing.orchestrator import DeduplicationOrchestrator
from .processing.similarity import SimilarityCalculator
from .storage.merge_history import MergeHistoryStore

__all__ = [
    "DedupConfig",
    "Event",
    "EventField",
    "EventStatus",
    "EventFingerprint",
    "SimilarityResult",
    "MergeDecision",
    "MergeResult",
    "BatchResult",
    "DuplicatePair",
    "ConflictStrategy",
    "MergeStrategy",
    "ProcessingMode",
    "FingerprintBuilder",
    "SimilarityCalculator",
    "EventMerger",
    "MergeValidationError",
    "DeduplicationOrchestrator",
    "MergeHistoryStore",
]
