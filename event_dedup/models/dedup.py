"""
Derived, ephemeral records produced while deduplicating events.

Nothing in this module is persisted as a first-class record: fingerprints and
similarity results live in caches, merge decisions are applied or discarded by
the caller, and batch summaries are returned to whoever started the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from event_dedup.models.events import Event, EventField


class ConflictStrategy(str, Enum):
    """Per-field rule deciding which value survives a merge."""

    PRIMARY_WINS = "primary_wins"
    LATEST_WINS = "latest_wins"
    MOST_COMPLETE = "most_complete"
    HIGHEST_QUALITY = "highest_quality"
    MERGE_VALUES = "merge_values"
    MANUAL_REVIEW = "manual_review"


class MergeStrategy(str, Enum):
    """Decision-level strategy applied on top of the per-field rules."""

    ENHANCE_PRIMARY = "enhance_primary"
    KEEP_PRIMARY = "keep_primary"
    QUALITY_BASED = "quality_based"
    TEMPORAL_PRIORITY = "temporal_priority"


class ProcessingMode(str, Enum):
    REALTIME = "realtime"
    BATCH = "batch"
    INCREMENTAL = "incremental"
    FULL_SCAN = "full_scan"


class PriceKind(str, Enum):
    FREE = "free"
    UNKNOWN = "unknown"
    PAID = "paid"


@dataclass(frozen=True)
class PriceSignature:
    """Tri-state price summary: free, unknown, or a paid price bucket."""

    kind: PriceKind
    bucket: Optional[int] = None

    @property
    def is_known(self) -> bool:
        return self.kind != PriceKind.UNKNOWN


@dataclass(frozen=True)
class EventFingerprint:
    """Normalized, comparison-ready projection of an event"""

    event_id: str
    title_tokens: Tuple[str, ...]
    title_normalized: str
    venue_normalized: str
    date_bucket: Optional[int]
    coordinates: Optional[Tuple[float, float]]
    price_signature: PriceSignature
    category: str


@dataclass(frozen=True)
class SimilarityResult:
    """Per-field similarity breakdown; a field is None when absent on either side"""

    title: Optional[float]
    venue: Optional[float]
    time: Optional[float]
    location: Optional[float]
    price: Optional[float]
    overall: float
    reasoning: str = ""

    def field_scores(self) -> Dict[str, Optional[float]]:
        return {
            "title": self.title,
            "venue": self.venue,
            "time": self.time,
            "location": self.location,
            "price": self.price,
        }

    def compared_fields(self) -> List[str]:
        return [name for name, score in self.field_scores().items() if score is not None]


@dataclass(frozen=True)
class FieldResolution:
    """Outcome of resolving one field during a merge"""

    field: EventField
    primary_value: Any
    duplicate_values: List[Any]
    selected_value: Any
    strategy: ConflictStrategy
    confidence: float
    needs_review: bool = False


@dataclass(frozen=True)
class MergeDecision:
    """Reviewable proposal to fold duplicates into a primary event"""

    primary_event_id: str
    duplicate_event_ids: List[str]
    strategy: MergeStrategy
    confidence: float
    preview: Event
    primary_event: Event
    reasons: List[str]
    field_resolutions: List[FieldResolution]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def manual_review_fields(self) -> List[EventField]:
        return [resolution.field for resolution in self.field_resolutions if resolution.needs_review]


@dataclass(frozen=True)
class MergeValidation:
    is_valid: bool
    errors: List[str]
    warnings: List[str]


@dataclass(frozen=True)
class FieldChange:
    """Audit entry for one field whose value changed during a merge"""

    field: EventField
    old_value: Any
    new_value: Any
    strategy: ConflictStrategy
    confidence: float


@dataclass(frozen=True)
class MergeResult:
    merged_event: Event
    changes: List[FieldChange]
    decision: MergeDecision
    quality_improvement: float = 0.0
    history_id: Optional[str] = None


@dataclass(frozen=True)
class DuplicatePair:
    """Unordered pair of events judged duplicates by a full scan"""

    event_id_a: str
    event_id_b: str
    similarity: SimilarityResult

    @property
    def key(self) -> str:
        return pair_key(self.event_id_a, self.event_id_b)


@dataclass(frozen=True)
class ProcessingError:
    event_id: str
    error: str


@dataclass(frozen=True)
class EventProcessingResult:
    """Outcome of processing one event in realtime, batch or incremental mode"""

    event_id: str
    matches: Dict[str, SimilarityResult]
    decision: Optional[MergeDecision]
    skipped: bool = False

    @property
    def duplicates(self) -> List[str]:
        return self.decision.duplicate_event_ids if self.decision else []


@dataclass(frozen=True)
class PerformanceMetrics:
    mode: ProcessingMode
    processing_time_seconds: float
    events_processed: int
    duplicates_found: int
    merges_completed: int
    fingerprint_cache_hit_rate: float
    similarity_cache_hit_rate: float


@dataclass(frozen=True)
class BatchResult:
    """Summary of one processing run; errors never abort the run"""

    mode: ProcessingMode
    processed_count: int
    duplicates_found: int
    merges_completed: int
    errors: List[ProcessingError]
    decisions: List[MergeDecision]
    duplicate_pairs: List[DuplicatePair]
    metrics: PerformanceMetrics
    cancelled: bool = False


def pair_key(first: str, second: str) -> str:
    """Canonical key for an unordered pair of identifiers."""
    low, high = sorted((first, second))
    return f"{low}|{high}"
