"""
Merge engine: folds duplicate events into a primary event.

A merge happens in two steps. ``create_merge_decision`` resolves every field with
its declared rule and produces a reviewable ``MergeDecision`` holding a preview of
the merged event. ``execute_merge`` validates that decision and applies it,
returning the merged event together with a per-field change log.
"""

import copy
import dataclasses
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..models.config import DedupConfig
from ..models.dedup import (
    ConflictStrategy,
    FieldChange,
    FieldResolution,
    MergeDecision,
    MergeResult,
    MergeStrategy,
    MergeValidation,
)
from ..models.events import Event, EventField
from ..storage.merge_history import MergeHistoryStore
from ..utils.validation import ensure_utc
from .field_rules import (
    COMPLETENESS_WEIGHTS,
    IDENTITY_FIELDS,
    IMPORTANT_FIELDS,
    FieldRule,
    build_field_rules,
)

logger = logging.getLogger(__name__)

STRATEGY_CONFIDENCE = {
    ConflictStrategy.PRIMARY_WINS: 0.9,
    ConflictStrategy.LATEST_WINS: 0.8,
    ConflictStrategy.MOST_COMPLETE: 0.85,
    ConflictStrategy.MERGE_VALUES: 0.7,
    ConflictStrategy.MANUAL_REVIEW: 0.0,
}

HIGH_CONFIDENCE = 0.8
IMPORTANT_FIELD_WEIGHT = 2.0


class MergeValidationError(ValueError):
    """Raised when executing a merge decision that failed validation"""

    def __init__(self, validation: MergeValidation):
        self.validation = validation
        super().__init__("Invalid merge decision: " + "; ".join(validation.errors))


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _non_null_density(mapping: Mapping) -> Tuple[int, float]:
    non_null = sum(1 for item in mapping.values() if item is not None)
    return non_null, (non_null / len(mapping) if mapping else 0.0)


def assess_completeness(value: Any) -> float:
    """Completeness of a value in [0, 1]; punctuation adds nothing to a string"""
    if is_empty(value):
        return 0.0
    if isinstance(value, str):
        return _clamp(len(re.sub(r"\W", "", value)) / 100)
    if isinstance(value, (list, tuple, set)):
        return _clamp(len(value) / 10)
    if isinstance(value, dict):
        non_null, _ = _non_null_density(value)
        return _clamp(non_null / 5)
    return 0.8


def assess_quality(value: Any, rule: Optional[FieldRule] = None) -> float:
    """
    Quality score of a value in [0, 1].

    Length tiers and structure raise the score from a 0.5 base. A passing field
    validator adds 0.3 and a failing one cuts the score to a fifth, so a valid
    value always outranks an invalid one.
    """
    if is_empty(value):
        return 0.0

    score = 0.5
    if isinstance(value, str):
        length = len(value.strip())
        if length > 10:
            score += 0.2
        if length > 50:
            score += 0.2
        if length > 200:
            score += 0.1
    elif isinstance(value, (list, tuple, set)):
        score += min(0.3, 0.1 * len(value))
    elif isinstance(value, dict):
        _, density = _non_null_density(value)
        score += 0.3 * density

    valid = rule.validate(value) if rule else None
    if valid is True:
        score += 0.3
    elif valid is False:
        score *= 0.2
    return _clamp(score)


def event_completeness(event: Event) -> float:
    """Weighted share of the key listing fields that carry a value"""
    total = sum(COMPLETENESS_WEIGHTS.values())
    filled = 0
    for field, weight in COMPLETENESS_WEIGHTS.items():
        value = event.get_field(field)
        if isinstance(value, str):
            value = value.strip()
        if not is_empty(value):
            filled += weight
    return filled / total


class EventMerger:
    """Creates, validates and executes merge decisions"""

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        field_rules: Optional[Mapping[EventField, FieldRule]] = None,
    ):
        self.config = config or DedupConfig()
        self.rules = build_field_rules(
            overrides=field_rules,
            strategies=self.config.merge.field_strategies,
            weights=self.config.merge.field_weights,
        )
        self.logger = logging.getLogger(f"{__name__}.EventMerger")

    def create_merge_decision(
        self,
        primary: Event,
        duplicates: Sequence[Event],
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> MergeDecision:
        """Resolve every field across the primary and its duplicates into a reviewable decision"""
        unique: Dict[str, Event] = {}
        for duplicate in duplicates:
            if duplicate.id != primary.id and duplicate.id not in unique:
                unique[duplicate.id] = duplicate
        if not unique:
            raise ValueError(f"No duplicates to merge into event {primary.id}")

        # Ties left after source trust favour the primary, then the lexically smallest duplicate id
        ordered_duplicates = [unique[event_id] for event_id in sorted(unique)]
        contributors = [primary] + ordered_duplicates

        resolutions: List[FieldResolution] = []
        updates: Dict[str, Any] = {}
        for field in EventField:
            resolution = self._resolve_field(field, primary, ordered_duplicates, contributors, strategy)
            if resolution is None:
                continue
            resolutions.append(resolution)
            updates[field.value] = resolution.selected_value

        preview = primary.model_copy(update=copy.deepcopy(updates), deep=True)
        confidence = self._overall_confidence(resolutions)

        decision = MergeDecision(
            primary_event_id=primary.id,
            duplicate_event_ids=list(unique),
            strategy=strategy,
            confidence=confidence,
            preview=preview,
            primary_event=primary.model_copy(deep=True),
            reasons=self._generate_reasons(primary, ordered_duplicates, strategy, resolutions),
            field_resolutions=resolutions,
        )
        self.logger.debug(
            f"Merge decision for {primary.id} with {len(unique)} duplicate(s): confidence={confidence:.3f}"
        )
        return decision

    def validate_merge_decision(self, decision: MergeDecision) -> MergeValidation:
        errors: List[str] = []
        warnings: List[str] = []

        if not decision.duplicate_event_ids:
            errors.append("Merge decision has no duplicate events")
        if decision.primary_event_id in decision.duplicate_event_ids:
            errors.append(f"Primary event {decision.primary_event_id} is listed as its own duplicate")

        for field in self.config.quality.required_fields:
            if is_empty(decision.preview.get_field(field)):
                errors.append(f"Missing required field: {field.value}")

        minimum = self.config.quality.minimum_confidence
        if decision.confidence < minimum:
            warnings.append(f"Merge confidence {decision.confidence:.2f} is below minimum {minimum:.2f}")

        review_fields = decision.manual_review_fields
        if review_fields:
            warnings.append(
                "Fields require manual review: " + ", ".join(field.value for field in review_fields)
            )

        for warning in warnings:
            self.logger.warning(f"Merge into {decision.primary_event_id}: {warning}")

        return MergeValidation(is_valid=not errors, errors=errors, warnings=warnings)

    def execute_merge(
        self,
        decision: MergeDecision,
        history: Optional[MergeHistoryStore] = None,
        merged_by: str = "system",
    ) -> MergeResult:
        """
        Apply a merge decision.

        Args:
            decision: Decision produced by ``create_merge_decision``
            history: Optional audit store the result is recorded in
            merged_by: Who or what performed the merge, for the audit trail

        Returns:
            The merged event and one change entry per field whose value changed

        Raises:
            MergeValidationError: the decision failed validation
        """
        validation = self.validate_merge_decision(decision)
        if not validation.is_valid:
            self.logger.error(
                f"Refusing to execute merge into {decision.primary_event_id}: {'; '.join(validation.errors)}"
            )
            raise MergeValidationError(validation)

        merged_event = decision.preview.model_copy(deep=True)
        resolutions = {resolution.field: resolution for resolution in decision.field_resolutions}

        changes: List[FieldChange] = []
        for field in EventField:
            old_value = decision.primary_event.get_field(field)
            new_value = merged_event.get_field(field)
            if old_value == new_value:
                continue
            resolution = resolutions.get(field)
            changes.append(FieldChange(
                field=field,
                old_value=old_value,
                new_value=new_value,
                strategy=resolution.strategy if resolution else self.rules[field].strategy,
                confidence=resolution.confidence if resolution else 0.0,
            ))

        improvement = event_completeness(merged_event) - event_completeness(decision.primary_event)
        result = MergeResult(
            merged_event=merged_event,
            changes=changes,
            decision=decision,
            quality_improvement=improvement,
        )
        if history is not None:
            history_id = history.record_merge(result, merged_by=merged_by)
            result = dataclasses.replace(result, history_id=history_id)

        self.logger.info(
            f"Merged {len(decision.duplicate_event_ids)} duplicate(s) into {decision.primary_event_id} "
            f"({len(changes)} field change(s), confidence {decision.confidence:.2f}, "
            f"completeness {improvement:+.2f})"
        )
        return result

    def assess_quality(self, field: EventField, value: Any) -> float:
        return assess_quality(value, self.rules[field])

    def _effective_strategy(self, field: EventField, strategy: MergeStrategy) -> ConflictStrategy:
        rule_strategy = self.rules[field].strategy
        if field in IDENTITY_FIELDS or strategy == MergeStrategy.ENHANCE_PRIMARY:
            return rule_strategy
        if strategy == MergeStrategy.KEEP_PRIMARY:
            return ConflictStrategy.PRIMARY_WINS
        if strategy == MergeStrategy.QUALITY_BASED:
            if rule_strategy == ConflictStrategy.MOST_COMPLETE:
                return ConflictStrategy.HIGHEST_QUALITY
            return rule_strategy
        return ConflictStrategy.LATEST_WINS

    def _resolve_field(
        self,
        field: EventField,
        primary: Event,
        duplicates: List[Event],
        contributors: List[Event],
        merge_strategy: MergeStrategy,
    ) -> Optional[FieldResolution]:
        rule = self.rules[field]
        strategy = self._effective_strategy(field, merge_strategy)
        candidates = [
            (event, event.get_field(field)) for event in contributors if not is_empty(event.get_field(field))
        ]
        lineage = field == EventField.MERGED_EVENT_IDS and strategy == ConflictStrategy.MERGE_VALUES
        if not candidates and not lineage:
            return None

        needs_review = False
        contributor: Optional[Event] = None
        if strategy == ConflictStrategy.PRIMARY_WINS:
            contributor, selected = candidates[0]
            strategy_confidence = STRATEGY_CONFIDENCE[strategy]
        elif strategy == ConflictStrategy.LATEST_WINS:
            contributor, selected = self._best_candidate(
                field, candidates, lambda event, value: ensure_utc(event.updated_at or event.created_at)
            )
            strategy_confidence = STRATEGY_CONFIDENCE[strategy]
        elif strategy == ConflictStrategy.MOST_COMPLETE:
            contributor, selected = self._best_candidate(
                field, candidates, lambda event, value: assess_completeness(value)
            )
            strategy_confidence = STRATEGY_CONFIDENCE[strategy]
        elif strategy == ConflictStrategy.HIGHEST_QUALITY:
            contributor, selected = self._best_candidate(
                field, candidates, lambda event, value: assess_quality(value, rule)
            )
            strategy_confidence = assess_quality(selected, rule)
        elif strategy == ConflictStrategy.MERGE_VALUES:
            selected = self._merge_values(field, primary, duplicates, candidates)
            strategy_confidence = STRATEGY_CONFIDENCE[strategy]
        else:
            # Provisionally keep the primary's value and flag real disagreements
            selected = candidates[0][1]
            distinct = []
            for _, value in candidates:
                if value not in distinct:
                    distinct.append(value)
            needs_review = len(distinct) > 1
            strategy_confidence = 0.0

        confidence = strategy_confidence * rule.weight
        if contributor is not None:
            confidence *= self.source_reliability(contributor.source, default=1.0)
        if rule.validate(selected) is False:
            confidence *= 0.5

        return FieldResolution(
            field=field,
            primary_value=primary.get_field(field),
            duplicate_values=[event.get_field(field) for event in duplicates],
            selected_value=selected,
            strategy=strategy,
            confidence=_clamp(confidence),
            needs_review=needs_review,
        )

    def source_reliability(self, source: Optional[str], default: Optional[float] = None) -> float:
        """Configured reliability of a source; unlisted sources get ``default`` or the unknown rank"""
        sources = self.config.sources
        fallback = sources.unknown_reliability if default is None else default
        return sources.reliability.get(source, fallback) if source else fallback

    def _source_rank(self, field: EventField, event: Event) -> Tuple[int, float]:
        preferences = self.config.sources.field_preferences.get(field, [])
        preference = len(preferences) - preferences.index(event.source) if event.source in preferences else 0
        return preference, self.source_reliability(event.source)

    def _best_candidate(
        self,
        field: EventField,
        candidates: List[Tuple[Event, Any]],
        score: Callable[[Event, Any], Any],
    ) -> Tuple[Event, Any]:
        """Highest scoring candidate; equal scores go to the more trusted source, then the earlier candidate"""
        best_event, best_value = candidates[0]
        best_key = (score(best_event, best_value), self._source_rank(field, best_event))
        for event, value in candidates[1:]:
            key = (score(event, value), self._source_rank(field, event))
            if key > best_key:
                best_event, best_value, best_key = event, value, key
        return best_event, best_value

    def _merge_values(
        self,
        field: EventField,
        primary: Event,
        duplicates: List[Event],
        candidates: List[Tuple[Event, Any]],
    ) -> Any:
        if field == EventField.TAGS:
            tags: List[str] = []
            for _, values in candidates:
                for tag in values:
                    normalized = str(tag).strip().lower()
                    if normalized and normalized not in tags:
                        tags.append(normalized)
            return tags

        if field == EventField.VIEW_COUNT:
            # Views of already folded duplicates are part of the primary's count
            already_merged = set(primary.merged_event_ids)
            return primary.view_count + sum(
                duplicate.view_count for duplicate in duplicates if duplicate.id not in already_merged
            )

        if field == EventField.IS_FEATURED:
            return any(value for _, value in candidates)

        if field == EventField.MERGED_EVENT_IDS:
            lineage: List[str] = []
            for event_id in primary.merged_event_ids:
                if event_id not in lineage:
                    lineage.append(event_id)
            for duplicate in duplicates:
                for event_id in list(duplicate.merged_event_ids) + [duplicate.id]:
                    if event_id != primary.id and event_id not in lineage:
                        lineage.append(event_id)
            return lineage

        if field == EventField.DESCRIPTION:
            return self._best_candidate(field, candidates, lambda event, value: len(str(value).strip()))[1]

        return self._best_candidate(field, candidates, lambda event, value: assess_completeness(value))[1]

    @staticmethod
    def _overall_confidence(resolutions: List[FieldResolution]) -> float:
        total = 0.0
        weight_sum = 0.0
        for resolution in resolutions:
            if resolution.strategy == ConflictStrategy.MANUAL_REVIEW:
                continue
            weight = IMPORTANT_FIELD_WEIGHT if resolution.field in IMPORTANT_FIELDS else 1.0
            total += resolution.confidence * weight
            weight_sum += weight
        return _clamp(total / weight_sum) if weight_sum else 0.0

    @staticmethod
    def _generate_reasons(
        primary: Event,
        duplicates: List[Event],
        strategy: MergeStrategy,
        resolutions: List[FieldResolution],
    ) -> List[str]:
        reasons = [
            f"Merging {len(duplicates)} duplicate(s) into {primary.id} using {strategy.value}"
        ]

        used: Dict[str, int] = {}
        for resolution in resolutions:
            used[resolution.strategy.value] = used.get(resolution.strategy.value, 0) + 1
        reasons.append(
            "Field strategies: " + ", ".join(f"{name} x{count}" for name, count in sorted(used.items()))
        )

        confident = [r.field.value for r in resolutions if r.confidence >= HIGH_CONFIDENCE]
        if confident:
            reasons.append("High-confidence fields: " + ", ".join(confident))

        review = [r.field.value for r in resolutions if r.needs_review]
        if review:
            reasons.append("Needs manual review: " + ", ".join(review))
        return reasons
