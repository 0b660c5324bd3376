"""
Processing orchestrator for the deduplication engine.

The orchestrator owns candidate selection and throughput. Comparison is delegated
to the similarity calculator and merging to the event merger; this module decides
which events are compared, in what order and how many at a time, in one of four
modes:

- realtime: one event at a time against the members of its cluster
- batch: fixed-size chunks with bounded concurrent fan-out
- incremental: a priority queue drained in priority order with retries
- full scan: every unordered pair once, for offline audits

All state (caches, cluster index, event registry, metrics) belongs to one
orchestrator instance, so independent instances never share anything.
"""

import asyncio
import heapq
import logging
import time
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from tqdm import tqdm

from ..models.config import DedupConfig
from ..models.dedup import (
    BatchResult,
    DuplicatePair,
    EventFingerprint,
    EventProcessingResult,
    MergeDecision,
    PerformanceMetrics,
    ProcessingError,
    ProcessingMode,
    SimilarityResult,
    pair_key,
)
from ..models.events import Event
from ..storage.cache import CacheManager
from ..utils.validation import ensure_utc
from .clustering import ClusterIndex
from .fingerprint import FingerprintBuilder
from .merge import EventMerger
from .similarity import SimilarityCalculator

logger = logging.getLogger(__name__)

BASE_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10


class DeduplicationOrchestrator:
    """Runs deduplication over a stream or corpus of events"""

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        fingerprint_builder: Optional[FingerprintBuilder] = None,
        similarity: Optional[SimilarityCalculator] = None,
        merger: Optional[EventMerger] = None,
        clock: Optional[Callable[[], float]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or DedupConfig()
        self.fingerprint_builder = fingerprint_builder or FingerprintBuilder(self.config.fingerprint)
        self.similarity = similarity or SimilarityCalculator(self.config.similarity)
        self.merger = merger or EventMerger(self.config)
        self._now = now or (lambda: datetime.now(timezone.utc))

        cache_config = self.config.cache
        self.fingerprint_cache = CacheManager(cache_config.ttl_seconds, cache_config.max_entries, clock)
        self.similarity_cache = CacheManager(cache_config.ttl_seconds, cache_config.max_entries, clock)
        self.clusters = ClusterIndex(self.config.cluster, self._cluster_score)

        self._events: Dict[str, Event] = {}
        self._fingerprint_keys: Dict[str, str] = {}
        self._claimed: Set[str] = set()
        self._cancelled = False
        self._operations = 0
        self._rebalance_due = False
        self._totals = {
            "runs": 0,
            "events_processed": 0,
            "duplicates_found": 0,
            "merges_completed": 0,
            "errors": 0,
            "processing_time_seconds": 0.0,
        }
        self.logger = logging.getLogger(f"{__name__}.DeduplicationOrchestrator")

    # -- caches and comparisons -------------------------------------------------

    @staticmethod
    def _fingerprint_key(event: Event) -> str:
        version = event.updated_at.isoformat() if event.updated_at else ""
        return f"{event.id}:{version}"

    def get_fingerprint(self, event: Event) -> EventFingerprint:
        """Cache-first fingerprint lookup"""
        key = self._fingerprint_key(event)
        self._fingerprint_keys[event.id] = key
        if self.config.cache.enabled:
            cached = self.fingerprint_cache.get(key)
            if cached is not None:
                return cached
        fingerprint = self.fingerprint_builder.build_fingerprint(event)
        if self.config.cache.enabled:
            self.fingerprint_cache.set(key, fingerprint)
        return fingerprint

    def _compare_fingerprints(self, fp1: EventFingerprint, fp2: EventFingerprint) -> SimilarityResult:
        key = pair_key(
            self._fingerprint_keys.get(fp1.event_id, fp1.event_id),
            self._fingerprint_keys.get(fp2.event_id, fp2.event_id),
        )
        if self.config.cache.enabled:
            cached = self.similarity_cache.get(key)
            if cached is not None:
                return cached

        result = self.similarity.compare(fp1, fp2)
        if self.config.cache.enabled:
            self.similarity_cache.set(key, result)
        self._record_operation()
        return result

    def compare_events(self, event1: Event, event2: Event) -> SimilarityResult:
        return self._compare_fingerprints(self.get_fingerprint(event1), self.get_fingerprint(event2))

    def _cluster_score(self, fp1: EventFingerprint, fp2: EventFingerprint) -> float:
        return self._compare_fingerprints(fp1, fp2).overall

    def _record_operation(self) -> None:
        self._operations += 1
        if self.config.cluster.enabled and self._operations % self.config.cluster.rebalance_every == 0:
            self._rebalance_due = True

    def _rebalance_if_due(self) -> None:
        """Rebalance clusters between items, never while the index is being walked"""
        if self._rebalance_due:
            self._rebalance_due = False
            self.clusters.rebalance()

    def _maintain_caches(self) -> None:
        self._rebalance_if_due()
        fingerprint_stats = self.fingerprint_cache.maintain()
        similarity_stats = self.similarity_cache.maintain()
        self.logger.debug(f"Cache maintenance: fingerprints={fingerprint_stats} similarity={similarity_stats}")

    # -- registry ---------------------------------------------------------------

    def register_events(self, events: Iterable[Event]) -> None:
        """Add events to the registry, fingerprint them and place them in clusters"""
        fingerprints = []
        for event in events:
            self._events[event.id] = event
            fingerprints.append(self.get_fingerprint(event))

        if not self.config.cluster.enabled or not fingerprints:
            return
        if len(self.clusters) == 0:
            self.clusters.build(fingerprints)
        else:
            for fingerprint in fingerprints:
                self.clusters.assign(fingerprint)
        self._rebalance_if_due()

    def _candidate_ids(self, event: Event) -> List[str]:
        if self.config.cluster.enabled:
            pool = self.clusters.peers(event.id)
        else:
            pool = [event_id for event_id in self._events if event_id != event.id]
        candidates = [event_id for event_id in pool if event_id not in self._claimed]
        return candidates[: self.config.processing.max_candidates]

    # -- realtime ---------------------------------------------------------------

    async def process_realtime(self, event: Event) -> EventProcessingResult:
        """Find the duplicates of one event and propose a merge for the group"""
        if self._events.get(event.id) is not event:
            self.register_events([event])
        if event.id in self._claimed:
            return EventProcessingResult(event_id=event.id, matches={}, decision=None, skipped=True)

        # Yield so fan-out peers interleave between events, never inside a claim
        await asyncio.sleep(0)

        if event.id in self._claimed:
            return EventProcessingResult(event_id=event.id, matches={}, decision=None, skipped=True)

        matches: Dict[str, SimilarityResult] = {}
        for candidate_id in self._candidate_ids(event):
            candidate = self._events[candidate_id]
            result = self.compare_events(event, candidate)
            if self.similarity.is_duplicate(result):
                matches[candidate_id] = result
            else:
                self.logger.debug(
                    f"Rejected {event.id} / {candidate_id}: {'; '.join(self.similarity.rejection_reasons(result))}"
                )

        if not matches:
            return EventProcessingResult(event_id=event.id, matches={}, decision=None)

        group = [event] + [self._events[event_id] for event_id in matches]
        primary = min(group, key=lambda member: (ensure_utc(member.created_at), member.id))
        duplicates = []
        for member in group:
            if member.id == primary.id:
                continue
            if member.id == event.id or primary.id == event.id:
                duplicates.append(member)
            elif self.similarity.is_duplicate(self.compare_events(primary, member)):
                duplicates.append(member)

        if not duplicates:
            return EventProcessingResult(event_id=event.id, matches=matches, decision=None)

        decision = self.merger.create_merge_decision(primary, duplicates)
        self._claimed.add(primary.id)
        self._claimed.update(duplicate.id for duplicate in duplicates)
        return EventProcessingResult(event_id=event.id, matches=matches, decision=decision)

    async def _process_sequentially(self, events: Sequence[Event]) -> Tuple[List[EventProcessingResult], List[ProcessingError], bool]:
        results: List[EventProcessingResult] = []
        errors: List[ProcessingError] = []
        for event in events:
            if self._cancelled:
                return results, errors, True
            try:
                results.append(await self.process_realtime(event))
            except Exception as exc:
                self.logger.warning(f"Failed to process event {event.id}: {exc}")
                errors.append(ProcessingError(event_id=event.id, error=str(exc)))
            self._rebalance_if_due()
        return results, errors, False

    # -- batch ------------------------------------------------------------------

    async def process_batch(
        self, events: Sequence[Event], show_progress: bool = False
    ) -> Tuple[List[EventProcessingResult], List[ProcessingError], bool]:
        """Process events in chunks, each fanned out under a concurrency limit"""
        unique_events = list({event.id: event for event in events}.values())
        batch_size = self.config.processing.batch_size
        semaphore = asyncio.Semaphore(self.config.processing.max_concurrency)
        results: List[EventProcessingResult] = []
        errors: List[ProcessingError] = []

        async def guarded(event: Event):
            async with semaphore:
                try:
                    return await self.process_realtime(event)
                except Exception as exc:
                    self.logger.warning(f"Failed to process event {event.id}: {exc}")
                    return ProcessingError(event_id=event.id, error=str(exc))

        total_batches = (len(unique_events) + batch_size - 1) // batch_size
        cancelled = False
        with tqdm(total=total_batches, desc="Deduplicating batches", unit="batch", disable=not show_progress) as pbar:
            for index in range(0, len(unique_events), batch_size):
                if self._cancelled:
                    cancelled = True
                    break
                chunk = unique_events[index : index + batch_size]
                outcomes = await asyncio.gather(*(guarded(event) for event in chunk))
                for outcome in outcomes:
                    if isinstance(outcome, ProcessingError):
                        errors.append(outcome)
                    else:
                        results.append(outcome)
                self._maintain_caches()
                pbar.set_postfix({"events": len(chunk), "errors": len(errors)})
                pbar.update(1)

        return results, errors, cancelled

    # -- incremental ------------------------------------------------------------

    def calculate_priority(self, event: Event) -> int:
        """Queue priority in [1, 10]; upcoming, featured and externally sourced events go first"""
        priority = BASE_PRIORITY
        start = ensure_utc(event.start_time)
        if start is not None:
            until_start = start - ensure_utc(self._now())
            if until_start < timedelta(0):
                priority -= 2
            elif until_start <= timedelta(days=7):
                priority += 3
            elif until_start <= timedelta(days=30):
                priority += 2
        if event.is_featured:
            priority += 2
        if event.external_id:
            priority += 1
        return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))

    async def process_incremental(
        self, events: Sequence[Event]
    ) -> Tuple[List[EventProcessingResult], List[ProcessingError], bool]:
        """Drain a priority queue of events; failures are retried at a lower priority"""
        sequence = count()
        queue: List[Tuple[int, int, int, Event]] = []
        for event in events:
            heapq.heappush(queue, (-self.calculate_priority(event), next(sequence), 1, event))

        results: List[EventProcessingResult] = []
        errors: List[ProcessingError] = []
        max_attempts = self.config.processing.max_attempts
        while queue:
            if self._cancelled:
                return results, errors, True
            negative_priority, _, attempt, event = heapq.heappop(queue)
            try:
                results.append(await self.process_realtime(event))
            except Exception as exc:
                if attempt < max_attempts:
                    retry_priority = max(MIN_PRIORITY, -negative_priority - 1)
                    self.logger.warning(
                        f"Attempt {attempt} failed for event {event.id}, retrying at priority {retry_priority}: {exc}"
                    )
                    heapq.heappush(queue, (-retry_priority, next(sequence), attempt + 1, event))
                else:
                    self.logger.warning(f"Giving up on event {event.id} after {attempt} attempts: {exc}")
                    errors.append(ProcessingError(event_id=event.id, error=str(exc)))
            self._rebalance_if_due()
        return results, errors, False

    # -- full scan --------------------------------------------------------------

    async def full_scan(
        self, events: Optional[Sequence[Event]] = None, show_progress: bool = False
    ) -> Tuple[List[DuplicatePair], List[ProcessingError], bool, int]:
        """Compare every unordered pair once; no merges are proposed

        Returns the duplicate pairs, per-pair errors, whether the scan was cancelled
        and how many events were scanned.
        """
        corpus = list({event.id: event for event in (events if events is not None else self._events.values())}.values())
        pairs: List[DuplicatePair] = []
        errors: List[ProcessingError] = []
        seen: Set[str] = set()

        with tqdm(total=len(corpus), desc="Full scan", unit="event", disable=not show_progress) as pbar:
            for i, first in enumerate(corpus):
                if self._cancelled:
                    return pairs, errors, True, i
                for second in corpus[i + 1:]:
                    key = pair_key(first.id, second.id)
                    if key in seen:
                        continue
                    seen.add(key)
                    try:
                        result = self.compare_events(first, second)
                    except Exception as exc:
                        self.logger.warning(f"Failed to compare pair {key}: {exc}")
                        errors.append(ProcessingError(event_id=key, error=str(exc)))
                        continue
                    if self.similarity.is_duplicate(result):
                        low, high = sorted((first.id, second.id))
                        pairs.append(DuplicatePair(event_id_a=low, event_id_b=high, similarity=result))
                pbar.update(1)
                await asyncio.sleep(0)

        return pairs, errors, False, len(corpus)

    # -- entry point ------------------------------------------------------------

    async def process_events(
        self,
        events: Sequence[Event],
        mode: ProcessingMode = ProcessingMode.BATCH,
        show_progress: bool = False,
    ) -> BatchResult:
        """Run one deduplication pass over ``events`` in the given mode"""
        mode = ProcessingMode(mode)
        start = time.perf_counter()
        self._cancelled = False
        self._claimed = set()
        self.logger.info(f"Starting {mode.value} deduplication of {len(events)} events")

        results: List[EventProcessingResult] = []
        pairs: List[DuplicatePair] = []
        if mode == ProcessingMode.FULL_SCAN:
            pairs, errors, cancelled, processed_count = await self.full_scan(events, show_progress=show_progress)
            duplicates_found = len(pairs)
        else:
            self.register_events(events)
            if mode == ProcessingMode.REALTIME:
                results, errors, cancelled = await self._process_sequentially(events)
            elif mode == ProcessingMode.BATCH:
                results, errors, cancelled = await self.process_batch(events, show_progress=show_progress)
            else:
                results, errors, cancelled = await self.process_incremental(events)
            processed_count = len(results)
            duplicates_found = sum(len(result.duplicates) for result in results)

        decisions: List[MergeDecision] = [result.decision for result in results if result.decision is not None]
        elapsed = time.perf_counter() - start

        metrics = PerformanceMetrics(
            mode=mode,
            processing_time_seconds=elapsed,
            events_processed=processed_count,
            duplicates_found=duplicates_found,
            merges_completed=len(decisions),
            fingerprint_cache_hit_rate=self.fingerprint_cache.hit_rate,
            similarity_cache_hit_rate=self.similarity_cache.hit_rate,
        )

        self._totals["runs"] += 1
        self._totals["events_processed"] += processed_count
        self._totals["duplicates_found"] += duplicates_found
        self._totals["merges_completed"] += len(decisions)
        self._totals["errors"] += len(errors)
        self._totals["processing_time_seconds"] += elapsed

        self.logger.info(
            f"Finished {mode.value} deduplication in {elapsed:.2f}s: {processed_count} processed, "
            f"{duplicates_found} duplicates, {len(decisions)} merge decisions, {len(errors)} errors"
            + (" (cancelled)" if cancelled else "")
        )

        return BatchResult(
            mode=mode,
            processed_count=processed_count,
            duplicates_found=duplicates_found,
            merges_completed=len(decisions),
            errors=errors,
            decisions=decisions,
            duplicate_pairs=pairs,
            metrics=metrics,
            cancelled=cancelled,
        )

    def cancel(self) -> None:
        """Stop the current run at the next chunk or item boundary"""
        self._cancelled = True
        self.logger.info("Cancellation requested")

    def clear_caches(self) -> None:
        self.fingerprint_cache.clear()
        self.similarity_cache.clear()

    def reset(self) -> None:
        """Forget every registered event, cluster and cached result; run totals are kept"""
        self.clear_caches()
        self.clusters.clear()
        self._events.clear()
        self._fingerprint_keys.clear()
        self._claimed = set()
        self._rebalance_due = False
        self.logger.info("Orchestrator state reset")

    def get_performance_stats(self) -> Dict[str, object]:
        return {
            "fingerprint_cache": self.fingerprint_cache.stats(),
            "similarity_cache": self.similarity_cache.stats(),
            "clusters": self.clusters.stats(),
            "registered_events": len(self._events),
            "operations": self._operations,
            **self._totals,
        }
