"""
Candidate clustering.

Clusters only narrow the set of events compared against each other. Every match
is still verified by the similarity engine, so a missed assignment can lose a
duplicate but never cause a false merge.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from ..models.config import ClusterConfig
from ..models.dedup import EventFingerprint

logger = logging.getLogger(__name__)

ScoreFunction = Callable[[EventFingerprint, EventFingerprint], float]


class ClusterIndex:
    """Groups fingerprints into bounded clusters around seed events"""

    def __init__(self, config: ClusterConfig, score: ScoreFunction):
        self.config = config
        self._score = score
        self._clusters: Dict[str, List[str]] = {}
        self._membership: Dict[str, str] = {}
        self._fingerprints: Dict[str, EventFingerprint] = {}
        self._next_id = 0
        self.logger = logging.getLogger(f"{__name__}.ClusterIndex")

    def _new_cluster(self, members: List[str]) -> str:
        self._next_id += 1
        cluster_id = f"cluster_{self._next_id}"
        self._clusters[cluster_id] = members
        for event_id in members:
            self._membership[event_id] = cluster_id
        return cluster_id

    def build(self, fingerprints: Iterable[EventFingerprint]) -> int:
        """Cluster every not yet clustered fingerprint; returns the number of clusters created"""
        pending: Dict[str, EventFingerprint] = {}
        for fingerprint in fingerprints:
            self._fingerprints[fingerprint.event_id] = fingerprint
            if fingerprint.event_id not in self._membership:
                pending[fingerprint.event_id] = fingerprint

        created = 0
        clustered = set()
        for seed in pending.values():
            if seed.event_id in clustered:
                continue
            members = [seed.event_id]
            clustered.add(seed.event_id)
            for other in pending.values():
                if len(members) >= self.config.max_cluster_size:
                    break
                if other.event_id in clustered:
                    continue
                if self._score(seed, other) >= self.config.similarity_threshold:
                    members.append(other.event_id)
                    clustered.add(other.event_id)
            self._new_cluster(members)
            created += 1

        if created:
            self.logger.debug(f"Built {created} cluster(s) from {len(pending)} event(s)")
        return created

    def assign(self, fingerprint: EventFingerprint) -> str:
        """Place a late arrival in the most similar cluster with room, or a new one"""
        self._fingerprints[fingerprint.event_id] = fingerprint
        existing = self._membership.get(fingerprint.event_id)
        if existing:
            return existing

        best_cluster: Optional[str] = None
        best_score = self.config.similarity_threshold
        for cluster_id, members in list(self._clusters.items()):
            if len(members) >= self.config.max_cluster_size:
                continue
            seed = self._fingerprints[members[0]]
            score = self._score(seed, fingerprint)
            if score >= best_score and (best_cluster is None or score > best_score):
                best_cluster, best_score = cluster_id, score

        # The scorer may have rebalanced the index while we were ranking clusters
        if best_cluster not in self._clusters or len(self._clusters[best_cluster]) >= self.config.max_cluster_size:
            best_cluster = None
        if best_cluster is None:
            return self._new_cluster([fingerprint.event_id])
        self._clusters[best_cluster].append(fingerprint.event_id)
        self._membership[fingerprint.event_id] = best_cluster
        return best_cluster

    def cluster_of(self, event_id: str) -> Optional[str]:
        return self._membership.get(event_id)

    def peers(self, event_id: str) -> List[str]:
        """Other members of the event's cluster"""
        cluster_id = self._membership.get(event_id)
        if cluster_id is None:
            return []
        return [member for member in self._clusters[cluster_id] if member != event_id]

    def remove(self, event_id: str) -> None:
        cluster_id = self._membership.pop(event_id, None)
        self._fingerprints.pop(event_id, None)
        if cluster_id is None:
            return
        members = self._clusters[cluster_id]
        members.remove(event_id)
        if not members:
            del self._clusters[cluster_id]

    def rebalance(self) -> Dict[str, int]:
        """Merge undersized clusters pairwise and split oversized ones in half"""
        merged = 0
        small = sorted(
            (cluster_id for cluster_id, members in self._clusters.items()
             if len(members) < self.config.min_cluster_size),
            key=lambda cluster_id: len(self._clusters[cluster_id]),
        )
        while len(small) >= 2:
            first = small.pop(0)
            partner = next(
                (other for other in small
                 if len(self._clusters[first]) + len(self._clusters[other]) <= self.config.max_cluster_size),
                None,
            )
            if partner is None:
                continue
            small.remove(partner)
            for event_id in self._clusters.pop(partner):
                self._clusters[first].append(event_id)
                self._membership[event_id] = first
            merged += 1
            if len(self._clusters[first]) < self.config.min_cluster_size:
                small.append(first)
                small.sort(key=lambda cluster_id: len(self._clusters[cluster_id]))

        split = 0
        for cluster_id in [cid for cid, members in self._clusters.items()
                           if len(members) > self.config.max_cluster_size]:
            split += self._split(cluster_id)

        if merged or split:
            self.logger.info(f"Rebalanced clusters: {merged} merge(s), {split} split(s)")
        return {"merged": merged, "split": split}

    def _split(self, cluster_id: str) -> int:
        splits = 0
        pending = [cluster_id]
        while pending:
            current = pending.pop()
            members = self._clusters[current]
            if len(members) <= self.config.max_cluster_size:
                continue
            half = len(members) // 2
            self._clusters[current] = members[:half]
            pending.append(current)
            pending.append(self._new_cluster(members[half:]))
            splits += 1
        return splits

    def clear(self) -> None:
        self._clusters.clear()
        self._membership.clear()
        self._fingerprints.clear()

    def stats(self) -> Dict[str, float]:
        sizes = [len(members) for members in self._clusters.values()]
        return {
            "clusters": len(sizes),
            "clustered_events": sum(sizes),
            "largest_cluster": max(sizes) if sizes else 0,
            "average_cluster_size": sum(sizes) / len(sizes) if sizes else 0.0,
        }

    def __len__(self) -> int:
        return len(self._clusters)
