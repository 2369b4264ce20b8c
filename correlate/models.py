"""
Run-level models: counters collected across pipeline stages and the merged report input.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional
from normalize.models import ActivityEvent, Identity, PeerMetric


@dataclass
class RunStats:
    pages_fetched: int = 0
    revisions_ingested: int = 0
    entities: int = 0
    skipped_entries: int = 0
    duplicates_dropped: int = 0
    stopped_early: bool = False
    stop_reason: str = ''
    skipped_revisions: int = 0
    revisions_in_window: int = 0
    relevant_entities: int = 0
    comments_fetched: int = 0
    enrichment_errors: int = 0
    relation_errors: int = 0
    fetch_seconds: float = 0.0
    total_seconds: float = 0.0

    @property
    def degraded(self) -> bool:
        return self.stopped_early or bool(self.enrichment_errors or self.relation_errors or self.skipped_revisions)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['degraded'] = self.degraded
        return d


class ActivityReport:
    """
    Everything a renderer needs: merged activities, parent links, metrics and run counters.
    """

    def __init__(
        self,
        identities: List[Identity],
        activities: List[ActivityEvent],
        since: str,
        parents: Optional[Dict[int, Dict[str, Any]]] = None,
        details: Optional[Dict[int, Dict[str, Any]]] = None,
        self_metrics: Optional[List[PeerMetric]] = None,
        peer_metrics: Optional[List[PeerMetric]] = None,
        peer_averages: Optional[Dict[str, float]] = None,
        stats: Optional[RunStats] = None,
    ):
        self.identities = identities
        self.activities = activities
        self.since = since
        self.parents = parents or {}
        self.details = details or {}
        self.self_metrics = self_metrics or []
        self.peer_metrics = peer_metrics or []
        self.peer_averages = peer_averages or {}
        self.stats = stats or RunStats()

    def sorted_activities(self, identity: Optional[Identity] = None) -> List[ActivityEvent]:
        """Newest first; ties broken by entity id and sequence so output is stable."""
        items = [a for a in self.activities if identity is None or a.identity == identity]
        return sorted(items, key=lambda a: (a.timestamp, a.entity_id, a.sequence or 0, a.kind), reverse=True)

    def counts_by_kind(self, identity: Identity) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for a in self.activities:
            if a.identity == identity:
                counts[a.kind] = counts.get(a.kind, 0) + 1
        return counts

    def metric_for(self, identity: Identity) -> Optional[PeerMetric]:
        for m in self.self_metrics:
            if m.identity == identity:
                return m
        return None

    def parent_of(self, entity_id: int) -> Dict[str, Any]:
        return self.parents.get(entity_id) or {}

    def __str__(self):
        return (
            f"Identities: {len(self.identities)}\n"
            f"Activities: {len(self.activities)}\n"
            f"Since: {self.since}\n"
            f"Peers with activity: {len(self.peer_metrics)}"
        )


__all__ = ["RunStats", "ActivityReport"]
