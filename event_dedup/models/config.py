from __future__ import annotations

import math
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from event_dedup.models.dedup import ConflictStrategy
from event_dedup.models.events import EventField


class FingerprintConfig(BaseModel):
    """How raw events are projected into comparable fingerprints."""

    time_bucket_minutes: int = Field(60, ge=1, description="Start-time bucket granularity in minutes")
    coordinate_decimals: int = Field(3, ge=0, le=6, description="Decimal places kept on coordinates (3 ~ 100m)")
    price_bucket_bounds: List[float] = Field(
        default_factory=lambda: [10.0, 25.0, 50.0, 100.0, 250.0],
        description="Ascending upper bounds for price buckets",
    )

    @model_validator(mode="after")
    def _check_price_bounds(self) -> "FingerprintConfig":
        if self.price_bucket_bounds != sorted(self.price_bucket_bounds):
            raise ValueError("price_bucket_bounds must be ascending")
        return self


class SimilarityThresholds(BaseModel):
    """Overall duplicate threshold plus per-field floors (None means no floor)."""

    overall: float = Field(0.80, ge=0.0, le=1.0, description="Minimum overall score for a duplicate")
    title: Optional[float] = Field(0.60, ge=0.0, le=1.0, description="Title floor")
    venue: Optional[float] = Field(None, ge=0.0, le=1.0, description="Venue floor")
    time: Optional[float] = Field(0.50, ge=0.0, le=1.0, description="Start-time floor")
    location: Optional[float] = Field(0.20, ge=0.0, le=1.0, description="Location floor")
    price: Optional[float] = Field(None, ge=0.0, le=1.0, description="Price floor")

    def floors(self) -> Dict[str, float]:
        values = {
            "title": self.title,
            "venue": self.venue,
            "time": self.time,
            "location": self.location,
            "price": self.price,
        }
        return {name: floor for name, floor in values.items() if floor is not None}


class SimilarityWeights(BaseModel):
    """Fixed weights of the overall similarity score; must sum to 1."""

    title: float = Field(0.35, ge=0.0, le=1.0)
    venue: float = Field(0.25, ge=0.0, le=1.0)
    location: float = Field(0.20, ge=0.0, le=1.0)
    time: float = Field(0.15, ge=0.0, le=1.0)
    price: float = Field(0.05, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_sum(self) -> "SimilarityWeights":
        total = self.title + self.venue + self.location + self.time + self.price
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"similarity weights must sum to 1, got {total:.6f}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {
            "title": self.title,
            "venue": self.venue,
            "location": self.location,
            "time": self.time,
            "price": self.price,
        }


class SimilarityConfig(BaseModel):
    """Similarity engine configuration."""

    thresholds: SimilarityThresholds = Field(default_factory=SimilarityThresholds)
    weights: SimilarityWeights = Field(default_factory=SimilarityWeights)
    time_window_hours: float = Field(6.0, gt=0, description="Start times further apart never match")
    location_full_score_meters: float = Field(100.0, ge=0, description="Distance treated as the same spot")
    location_max_radius_meters: float = Field(2000.0, gt=0, description="Distance at which location score hits 0")

    @model_validator(mode="after")
    def _check_radius(self) -> "SimilarityConfig":
        if self.location_full_score_meters >= self.location_max_radius_meters:
            raise ValueError("location_full_score_meters must be below location_max_radius_meters")
        return self


class CacheConfig(BaseModel):
    """Fingerprint and similarity cache limits."""

    enabled: bool = Field(True, description="Consult caches before recomputing")
    ttl_seconds: float = Field(3600.0, gt=0, description="Entry time-to-live")
    max_entries: int = Field(10_000, ge=1, description="Entries kept before LRU eviction")


class ClusterConfig(BaseModel):
    """Candidate clustering used to shrink the comparison space."""

    enabled: bool = Field(True, description="Restrict realtime candidates to the event's cluster")
    similarity_threshold: float = Field(0.60, ge=0.0, le=1.0, description="Looser threshold for cluster membership")
    max_cluster_size: int = Field(100, ge=2, description="Maximum events per cluster")
    min_cluster_size: int = Field(5, ge=1, description="Clusters below this size are merged on rebalance")
    rebalance_every: int = Field(1000, ge=1, description="Operations between cluster rebalances")


class ProcessingConfig(BaseModel):
    """Per-mode throughput settings."""

    batch_size: int = Field(100, ge=1, description="Events per batch chunk")
    max_concurrency: int = Field(4, ge=1, description="In-flight operations per chunk")
    max_candidates: int = Field(50, ge=1, description="Candidates compared per realtime event")
    max_attempts: int = Field(3, ge=1, description="Incremental queue attempts before giving up")


class QualityConfig(BaseModel):
    """Merge decision validation settings."""

    minimum_confidence: float = Field(0.70, ge=0.0, le=1.0, description="Warn below this merge confidence")
    required_fields: List[EventField] = Field(
        default_factory=lambda: [EventField.TITLE, EventField.START_TIME, EventField.CATEGORY],
        description="Fields that must be present on a merged event",
    )


class MergeConfig(BaseModel):
    """Construction-time overrides of the per-field merge rule table."""

    field_strategies: Dict[EventField, ConflictStrategy] = Field(default_factory=dict)
    field_weights: Dict[EventField, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_weights(self) -> "MergeConfig":
        for field, weight in self.field_weights.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for {field.value} must be within [0, 1]")
        return self


class SourceConfig(BaseModel):
    """Trust placed in each listing source when contributors disagree."""

    reliability: Dict[str, float] = Field(
        default_factory=lambda: {
            "manual": 0.98,
            "primary": 0.95,
            "google_places": 0.92,
            "eventbrite": 0.88,
            "ticketmaster": 0.85,
            "foursquare": 0.85,
            "yelp": 0.80,
            "meetup": 0.78,
            "facebook": 0.72,
        },
        description="Reliability in [0, 1] per source name",
    )
    unknown_reliability: float = Field(0.5, ge=0.0, le=1.0, description="Rank of sources missing from the table")
    field_preferences: Dict[EventField, List[str]] = Field(
        default_factory=lambda: {
            EventField.START_TIME: ["ticketmaster", "eventbrite"],
            EventField.LATITUDE: ["google_places", "foursquare"],
            EventField.LONGITUDE: ["google_places", "foursquare"],
            EventField.TICKET_URL: ["ticketmaster", "eventbrite"],
        },
        description="Sources preferred for a field, most preferred first",
    )

    @model_validator(mode="after")
    def _check_reliability(self) -> "SourceConfig":
        for source, reliability in self.reliability.items():
            if not 0.0 <= reliability <= 1.0:
                raise ValueError(f"reliability for source {source!r} must be within [0, 1]")
        return self


class DedupConfig(BaseModel):
    """Main deduplication engine configuration."""

    fingerprint: FingerprintConfig = Field(default_factory=FingerprintConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    sources: SourceConfig = Field(default_factory=SourceConfig)

    @model_validator(mode="after")
    def _check_cluster_threshold(self) -> "DedupConfig":
        # Clustering must be looser than merging, otherwise clusters hide real duplicates.
        if self.cluster.similarity_threshold > self.similarity.thresholds.overall:
            raise ValueError(
                "cluster.similarity_threshold "
                f"({self.cluster.similarity_threshold}) must not exceed the duplicate threshold "
                f"({self.similarity.thresholds.overall})"
            )
        return self
