"""
Similarity engine: scores a pair of fingerprints field by field.

Fields missing on either side are left out and the remaining weights are
renormalized, so sparse listings are judged only on what they share.
"""

import difflib
import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.config import SimilarityConfig
from ..models.dedup import EventFingerprint, PriceKind, PriceSignature, SimilarityResult

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0
SUBSTRING_FLOOR = 0.8
FUZZY_VENUE_CAP = 0.95


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def haversine_distance(first: Tuple[float, float], second: Tuple[float, float]) -> float:
    """Great-circle distance in meters between two (latitude, longitude) pairs."""
    lat1, lon1 = map(math.radians, first)
    lat2, lon2 = map(math.radians, second)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def fuzzy_text_similarity(text1: str, text2: str, tokens1: Sequence[str], tokens2: Sequence[str]) -> float:
    """
    Word-order tolerant fuzzy similarity of two normalized strings.

    Takes the best of a sequence ratio on the raw and token-sorted strings, the
    token Jaccard overlap, and a floor for one string containing the other. The
    pair is put in a canonical order first so the score is symmetric.
    """
    if not text1 or not text2:
        return 0.0
    if text1 == text2 or sorted(tokens1) == sorted(tokens2):
        return 1.0

    (text1, tokens1), (text2, tokens2) = sorted(((text1, tuple(tokens1)), (text2, tuple(tokens2))))

    score = difflib.SequenceMatcher(None, text1, text2).ratio()
    sorted1 = " ".join(sorted(tokens1))
    sorted2 = " ".join(sorted(tokens2))
    score = max(score, difflib.SequenceMatcher(None, sorted1, sorted2).ratio())

    words1 = set(tokens1)
    words2 = set(tokens2)
    if words1 and words2:
        score = max(score, len(words1 & words2) / len(words1 | words2))

    if text1 in text2 or text2 in text1:
        score = max(score, SUBSTRING_FLOOR)

    return _clamp(score)


class SimilarityCalculator:
    """Scores how likely two fingerprints describe the same event occurrence"""

    def __init__(self, config: Optional[SimilarityConfig] = None):
        self.config = config or SimilarityConfig()
        self.logger = logging.getLogger(f"{__name__}.SimilarityCalculator")

    def compare(self, fp1: EventFingerprint, fp2: EventFingerprint) -> SimilarityResult:
        """Compare two fingerprints; fields missing on either side are left out of the overall score"""
        scores: Dict[str, Optional[float]] = {
            "title": self._title_similarity(fp1, fp2),
            "venue": self._venue_similarity(fp1, fp2),
            "time": self._time_similarity(fp1, fp2),
            "location": self._location_similarity(fp1, fp2),
            "price": self._price_similarity(fp1.price_signature, fp2.price_signature),
        }
        overall = self._weighted_overall(scores)

        self.logger.debug(
            f"Compared {fp1.event_id} / {fp2.event_id}: overall={overall:.3f} "
            + " ".join(f"{name}={score:.2f}" for name, score in scores.items() if score is not None)
        )

        return SimilarityResult(
            title=scores["title"],
            venue=scores["venue"],
            time=scores["time"],
            location=scores["location"],
            price=scores["price"],
            overall=overall,
            reasoning=self._generate_reasoning(scores),
        )

    def is_duplicate(self, result: SimilarityResult) -> bool:
        return not self.rejection_reasons(result)

    def rejection_reasons(self, result: SimilarityResult) -> List[str]:
        """Why a result does not qualify as a duplicate; empty when it does"""
        reasons = []
        threshold = self.config.thresholds.overall
        if result.overall < threshold:
            reasons.append(f"overall score {result.overall:.2f} below threshold {threshold:.2f}")

        scores = result.field_scores()
        for name, floor in self.config.thresholds.floors().items():
            score = scores[name]
            if score is not None and score < floor:
                reasons.append(f"{name} score {score:.2f} below floor {floor:.2f}")
        return reasons

    def _weighted_overall(self, scores: Dict[str, Optional[float]]) -> float:
        weights = self.config.weights.as_dict()
        present = {name: score for name, score in scores.items() if score is not None}
        total_weight = sum(weights[name] for name in present)
        if not present or total_weight <= 0:
            return 0.0
        weighted = sum(score * weights[name] for name, score in present.items())
        return _clamp(weighted / total_weight)

    def _title_similarity(self, fp1: EventFingerprint, fp2: EventFingerprint) -> Optional[float]:
        if not fp1.title_tokens or not fp2.title_tokens:
            return None
        return fuzzy_text_similarity(fp1.title_normalized, fp2.title_normalized, fp1.title_tokens, fp2.title_tokens)

    def _venue_similarity(self, fp1: EventFingerprint, fp2: EventFingerprint) -> Optional[float]:
        if not fp1.venue_normalized or not fp2.venue_normalized:
            return None
        tokens1 = fp1.venue_normalized.split()
        tokens2 = fp2.venue_normalized.split()
        if fp1.venue_normalized == fp2.venue_normalized or set(tokens1) == set(tokens2):
            return 1.0
        # An exact venue always outranks a fuzzy one
        return min(FUZZY_VENUE_CAP, fuzzy_text_similarity(fp1.venue_normalized, fp2.venue_normalized, tokens1, tokens2))

    def _time_similarity(self, fp1: EventFingerprint, fp2: EventFingerprint) -> Optional[float]:
        if fp1.date_bucket is None or fp2.date_bucket is None:
            return None
        window_minutes = self.config.time_window_hours * 60
        distance = abs(fp1.date_bucket - fp2.date_bucket)
        return _clamp(1.0 - distance / window_minutes)

    def _location_similarity(self, fp1: EventFingerprint, fp2: EventFingerprint) -> Optional[float]:
        if fp1.coordinates is None or fp2.coordinates is None:
            return None
        distance = haversine_distance(fp1.coordinates, fp2.coordinates)
        full = self.config.location_full_score_meters
        maximum = self.config.location_max_radius_meters
        if distance <= full:
            return 1.0
        if distance >= maximum:
            return 0.0
        return _clamp(1.0 - (distance - full) / (maximum - full))

    def _price_similarity(self, sig1: PriceSignature, sig2: PriceSignature) -> Optional[float]:
        if not sig1.is_known or not sig2.is_known:
            return None
        if sig1 == sig2:
            return 1.0
        if sig1.kind == PriceKind.PAID and sig2.kind == PriceKind.PAID and abs(sig1.bucket - sig2.bucket) == 1:
            return 0.5
        return 0.0

    def _generate_reasoning(self, scores: Dict[str, Optional[float]]) -> str:
        """Generate human-readable reasoning for a similarity score"""
        reasons = []

        title = scores["title"]
        if title is not None:
            if title > 0.8:
                reasons.append("titles are very similar")
            elif title > 0.5:
                reasons.append("titles have some similarity")

        venue = scores["venue"]
        if venue == 1.0:
            reasons.append("venues match")
        elif venue is not None and venue > 0.6:
            reasons.append("venues are similar")

        time = scores["time"]
        if time is not None and time > 0.6:
            reasons.append("start at around the same time")

        location = scores["location"]
        if location is not None:
            if location > 0.8:
                reasons.append("are at the same location")
            elif location == 0.0:
                reasons.append("are far apart")

        if scores["price"] == 1.0:
            reasons.append("have matching prices")

        missing = [name for name, score in scores.items() if score is None]
        if missing:
            reasons.append(f"could not compare {', '.join(missing)}")

        if not reasons:
            return "events have minimal similarity"
        return f"events {', '.join(reasons)}"
