"""
Peer metrics: per-identity counters computed from one pass over the revision store.
Independent of relevance gating and of the activity events; used to compare tracked people with a roster.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
from correlate.diff_engine import MAX_PLAUSIBLE_YEAR, resolve_cutoff
from normalize import fields as wf
from normalize.models import Identity, PeerMetric, Revision
from normalize.util import extract_email, field_text, matches_actor, parse_timestamp, to_float, value_changed
from storage.revisions import RevisionStore

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL_STATES = ('Closed', 'Resolved')


class _Counters:
    def __init__(self):
        self.activities = 0
        self.entities: Set[int] = set()
        self.days: Set[str] = set()
        self.transitions = 0
        self.closed = 0
        # entity -> effort value on the peer's last in-window revision of it
        self.last_effort: Dict[int, Optional[float]] = {}


class PeerMetricsAggregator:
    def __init__(
        self,
        state_field: str = wf.STATE,
        effort_field: str = wf.COMPLETED_WORK,
        terminal_states: Iterable[str] = DEFAULT_TERMINAL_STATES,
        max_plausible_year: int = MAX_PLAUSIBLE_YEAR,
    ):
        self.state_field = state_field
        self.effort_field = effort_field
        self.terminal_states = {s.lower() for s in terminal_states}
        self.max_plausible_year = max_plausible_year

    def _match_peer(self, actor: str, by_email: Dict[str, Identity], peers: Sequence[Identity]) -> Optional[Identity]:
        email = extract_email(actor)
        if email:
            peer = by_email.get(email)
            if peer is not None:
                return peer
            # people listed without an email can only be matched by name
            peers = [p for p in peers if not p.email]
        for peer in peers:
            if matches_actor(peer, actor):
                return peer
        return None

    def aggregate(self, store: RevisionStore, peers: Sequence[Identity], cutoff: Union[str, datetime]) -> List[PeerMetric]:
        """One PeerMetric per peer with at least one revision in the window, in roster order."""
        cutoff_dt = resolve_cutoff(cutoff)
        by_email = {p.email.lower(): p for p in peers if p.email}
        counters: Dict[Identity, _Counters] = {}

        for entity_id, revisions in store.items():
            for i, rev in enumerate(revisions):
                when = parse_timestamp(rev.changed_at)
                if when is None or when.year > self.max_plausible_year or when < cutoff_dt:
                    continue
                peer = self._match_peer(rev.changed_by, by_email, peers)
                if peer is None:
                    continue
                c = counters.setdefault(peer, _Counters())
                self._count(c, entity_id, rev, revisions[i - 1] if i > 0 else None, when.date().isoformat())

        metrics = []
        for peer in peers:
            c = counters.get(peer)
            if c is None or c.activities == 0:
                continue
            metrics.append(PeerMetric(
                identity=peer,
                total_activities=c.activities,
                entities_touched=len(c.entities),
                days_active=len(c.days),
                state_transitions=c.transitions,
                entities_closed=c.closed,
                logged_effort=sum(v for v in c.last_effort.values() if v is not None),
            ))
        logger.info(f"Computed metrics for {len(metrics)} of {len(peers)} roster members")
        return metrics

    def _count(self, c: _Counters, entity_id: int, rev: Revision, prev: Optional[Revision], day: str):
        c.activities += 1
        c.entities.add(entity_id)
        c.days.add(day)
        if prev is not None and value_changed(prev.fields, rev.fields, self.state_field):
            c.transitions += 1
            if field_text(rev.fields, self.state_field).lower() in self.terminal_states:
                c.closed += 1
        # revisions arrive in sequence order, so the last write per entity wins
        c.last_effort[entity_id] = to_float(rev.fields.get(self.effort_field))


def aggregate(store: RevisionStore, peers: Sequence[Identity], cutoff: Union[str, datetime]) -> List[PeerMetric]:
    return PeerMetricsAggregator().aggregate(store, peers, cutoff)


def peer_averages(metrics: Sequence[PeerMetric]) -> Dict[str, float]:
    """Roster averages used as the comparison baseline."""
    n = len(metrics)
    if n == 0:
        return {'peer_count': 0, 'avg_activities': 0, 'avg_entities': 0, 'avg_days_active': 0, 'avg_entities_closed': 0, 'avg_effort': 0.0}
    return {
        'peer_count': n,
        'avg_activities': round(sum(m.total_activities for m in metrics) / n),
        'avg_entities': round(sum(m.entities_touched for m in metrics) / n),
        'avg_days_active': round(sum(m.days_active for m in metrics) / n),
        'avg_entities_closed': round(sum(m.entities_closed for m in metrics) / n),
        'avg_effort': round(sum(m.logged_effort for m in metrics) / n, 1),
    }


def compare_to_peers(metric: PeerMetric, averages: Dict[str, float]) -> Dict[str, Tuple[float, float]]:
    """(own value, peer average) pairs for the headline counters."""
    return {
        'activities': (metric.total_activities, averages.get('avg_activities', 0)),
        'entities': (metric.entities_touched, averages.get('avg_entities', 0)),
        'days_active': (metric.days_active, averages.get('avg_days_active', 0)),
        'entities_closed': (metric.entities_closed, averages.get('avg_entities_closed', 0)),
        'effort': (metric.logged_effort, averages.get('avg_effort', 0.0)),
    }
