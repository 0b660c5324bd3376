"""
Per-field merge rules.

Every ``EventField`` has exactly one rule. The table is checked at import so a
field added to the event model without a rule fails immediately.
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from ..models.dedup import ConflictStrategy
from ..models.events import EventField
from ..utils.validation import (
    is_boolean,
    is_non_empty_string,
    is_non_negative_number,
    is_valid_currency,
    is_valid_latitude,
    is_valid_longitude,
    is_valid_timezone,
    is_valid_url,
)

Validator = Callable[[Any], bool]


@dataclass(frozen=True)
class FieldRule:
    """How one field is resolved when events disagree"""
    strategy: ConflictStrategy
    weight: float
    validator: Optional[Validator] = None

    def validate(self, value: Any) -> Optional[bool]:
        """True/False from the validator, or None when the field has none"""
        if self.validator is None:
            return None
        return bool(self.validator(value))


_PRIMARY = ConflictStrategy.PRIMARY_WINS
_LATEST = ConflictStrategy.LATEST_WINS
_COMPLETE = ConflictStrategy.MOST_COMPLETE
_QUALITY = ConflictStrategy.HIGHEST_QUALITY
_MERGE = ConflictStrategy.MERGE_VALUES
_REVIEW = ConflictStrategy.MANUAL_REVIEW

DEFAULT_FIELD_RULES: Dict[EventField, FieldRule] = {
    EventField.ID: FieldRule(_PRIMARY, 1.0),
    EventField.EXTERNAL_ID: FieldRule(_PRIMARY, 1.0),
    EventField.SOURCE: FieldRule(_PRIMARY, 1.0),
    EventField.TITLE: FieldRule(_COMPLETE, 0.9, is_non_empty_string),
    EventField.DESCRIPTION: FieldRule(_MERGE, 0.8),
    EventField.CATEGORY: FieldRule(_PRIMARY, 0.8),
    EventField.SUBCATEGORY: FieldRule(_COMPLETE, 0.7),
    EventField.TAGS: FieldRule(_MERGE, 0.6),
    EventField.START_TIME: FieldRule(_LATEST, 0.95),
    EventField.END_TIME: FieldRule(_LATEST, 0.85),
    EventField.TIMEZONE: FieldRule(_COMPLETE, 0.7, is_valid_timezone),
    EventField.VENUE_NAME: FieldRule(_COMPLETE, 0.85),
    EventField.ADDRESS: FieldRule(_COMPLETE, 0.8),
    EventField.CITY: FieldRule(_COMPLETE, 0.7),
    EventField.LATITUDE: FieldRule(_QUALITY, 0.9, is_valid_latitude),
    EventField.LONGITUDE: FieldRule(_QUALITY, 0.9, is_valid_longitude),
    EventField.PRICE_MIN: FieldRule(_COMPLETE, 0.8, is_non_negative_number),
    EventField.PRICE_MAX: FieldRule(_COMPLETE, 0.8, is_non_negative_number),
    EventField.CURRENCY: FieldRule(_COMPLETE, 0.7, is_valid_currency),
    EventField.IS_FREE: FieldRule(_QUALITY, 0.8, is_boolean),
    EventField.IMAGE_URL: FieldRule(_QUALITY, 0.7, is_valid_url),
    EventField.WEBSITE_URL: FieldRule(_QUALITY, 0.8, is_valid_url),
    EventField.TICKET_URL: FieldRule(_QUALITY, 0.9, is_valid_url),
    EventField.VIDEO_URL: FieldRule(_QUALITY, 0.7, is_valid_url),
    EventField.STATUS: FieldRule(_REVIEW, 0.9),
    EventField.IS_FEATURED: FieldRule(_MERGE, 0.7),
    EventField.VIEW_COUNT: FieldRule(_MERGE, 0.5, is_non_negative_number),
    EventField.MERGED_EVENT_IDS: FieldRule(_MERGE, 1.0),
    EventField.CREATED_AT: FieldRule(_PRIMARY, 1.0),
    EventField.UPDATED_AT: FieldRule(_LATEST, 0.9),
}

# Identity fields keep the primary's value under every decision-level strategy
IDENTITY_FIELDS = frozenset({
    EventField.ID,
    EventField.EXTERNAL_ID,
    EventField.SOURCE,
    EventField.CREATED_AT,
    EventField.MERGED_EVENT_IDS,
})

# Double weight in the overall merge confidence
IMPORTANT_FIELDS = frozenset({
    EventField.TITLE,
    EventField.START_TIME,
    EventField.VENUE_NAME,
    EventField.LATITUDE,
    EventField.LONGITUDE,
})

# Relative weight of each field in an event's completeness score
COMPLETENESS_WEIGHTS: Dict[EventField, int] = {
    EventField.TITLE: 10,
    EventField.START_TIME: 10,
    EventField.VENUE_NAME: 9,
    EventField.DESCRIPTION: 8,
    EventField.TICKET_URL: 8,
    EventField.PRICE_MIN: 7,
    EventField.PRICE_MAX: 7,
    EventField.LATITUDE: 7,
    EventField.LONGITUDE: 7,
    EventField.END_TIME: 6,
    EventField.CATEGORY: 6,
    EventField.WEBSITE_URL: 5,
    EventField.IMAGE_URL: 4,
    EventField.TAGS: 3,
}

_missing_rules = set(EventField) - set(DEFAULT_FIELD_RULES)
if _missing_rules:
    raise RuntimeError(f"Merge rule table is missing fields: {sorted(field.value for field in _missing_rules)}")


def build_field_rules(
    overrides: Optional[Mapping[EventField, FieldRule]] = None,
    strategies: Optional[Mapping[EventField, ConflictStrategy]] = None,
    weights: Optional[Mapping[EventField, float]] = None,
) -> Dict[EventField, FieldRule]:
    """
    Return a total rule table with overrides applied on top of the defaults.

    Args:
        overrides: Whole rules replacing the default for a field
        strategies: Strategy-only replacements (validator and weight kept)
        weights: Weight-only replacements

    Raises:
        ValueError: an override names something outside the field registry or a weight is out of range
    """
    rules = dict(DEFAULT_FIELD_RULES)
    for source in (overrides, strategies, weights):
        for field in (source or {}):
            if not isinstance(field, EventField):
                raise ValueError(f"Unknown event field in merge rule override: {field!r}")

    rules.update(overrides or {})
    for field, strategy in (strategies or {}).items():
        rules[field] = replace(rules[field], strategy=ConflictStrategy(strategy))
    for field, weight in (weights or {}).items():
        if not 0.0 <= weight <= 1.0:
            raise ValueError(f"Weight for {field.value} must be within [0, 1], got {weight}")
        rules[field] = replace(rules[field], weight=weight)
    return rules
