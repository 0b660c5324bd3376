"""
Fingerprint construction: the normalized, comparison-ready projection of an event.

Building a fingerprint never fails. Missing or malformed fields degrade to neutral
values (empty strings, ``None`` buckets, an unknown price) so the similarity engine
can treat them as absent instead of as mismatches.
"""

import bisect
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

from ..models.config import FingerprintConfig
from ..models.dedup import EventFingerprint, PriceKind, PriceSignature
from ..models.events import Event
from ..utils.validation import ensure_utc

logger = logging.getLogger(__name__)

GENERIC_VENUE_WORDS = frozenset({
    "the", "at", "venue", "hall", "center", "centre",
    "theatre", "theater", "club", "bar", "pub",
})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, turn punctuation into spaces and collapse whitespace"""
    if not text or not isinstance(text, str):
        return ""
    normalized = re.sub(r"[^\w\s]|_", " ", text.lower())
    return re.sub(r"\s+", " ", normalized).strip()


def normalize_venue(venue: Optional[str]) -> str:
    """Normalize a venue name and drop generic words such as 'the' or 'club'"""
    tokens = [token for token in normalize_text(venue).split() if token not in GENERIC_VENUE_WORDS]
    return " ".join(tokens)


class FingerprintBuilder:
    """Builds deterministic fingerprints from events"""

    def __init__(self, config: Optional[FingerprintConfig] = None):
        self.config = config or FingerprintConfig()
        self.logger = logging.getLogger(f"{__name__}.FingerprintBuilder")

    def build_fingerprint(self, event: Event) -> EventFingerprint:
        title_normalized = normalize_text(event.title)
        return EventFingerprint(
            event_id=event.id,
            title_tokens=tuple(title_normalized.split()),
            title_normalized=title_normalized,
            venue_normalized=normalize_venue(event.venue_name),
            date_bucket=self._date_bucket(event.start_time),
            coordinates=self._coordinates(event.latitude, event.longitude),
            price_signature=self._price_signature(event),
            category=normalize_text(event.category),
        )

    def _date_bucket(self, start_time: Optional[datetime]) -> Optional[int]:
        if start_time is None:
            return None
        minutes = int((ensure_utc(start_time) - _EPOCH).total_seconds() // 60)
        granularity = self.config.time_bucket_minutes
        return (minutes // granularity) * granularity

    def _coordinates(self, latitude: Optional[float], longitude: Optional[float]) -> Optional[Tuple[float, float]]:
        if latitude is None or longitude is None:
            return None
        decimals = self.config.coordinate_decimals
        return (round(float(latitude), decimals), round(float(longitude), decimals))

    def _price_signature(self, event: Event) -> PriceSignature:
        known_prices = [price for price in (event.price_min, event.price_max) if price is not None]
        if event.is_free or (known_prices and all(price == 0 for price in known_prices)):
            return PriceSignature(PriceKind.FREE)
        if not known_prices:
            return PriceSignature(PriceKind.UNKNOWN)

        price = event.price_min if event.price_min is not None else event.price_max
        bucket = bisect.bisect_right(self.config.price_bucket_bounds, price)
        return PriceSignature(PriceKind.PAID, bucket)
