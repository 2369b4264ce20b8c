"""
Local diff engine: turns each entity's ordered revisions into activity events per tracked identity.

Consecutive revisions are compared field by field, so edits, state transitions and assignments are
recovered without asking the server for per-item history. Any entity that yields at least one event
is marked relevant; only relevant entities get the expensive second-pass fetches.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set, Tuple, Union
from normalize import fields as wf
from normalize.fields import build_snapshot
from normalize.models import ActivityEvent, ActivityKind, EntitySnapshot, Identity, Revision
from normalize.util import changed_fields, field_text, identity_value_to_text, matches_actor, parse_timestamp, strip_email, value_changed
from storage.revisions import RevisionStore

logger = logging.getLogger(__name__)

# dates past this year are placeholders (e.g. 9999-01-01), not real changes
MAX_PLAUSIBLE_YEAR = 3000


def resolve_cutoff(cutoff: Union[str, datetime]) -> datetime:
    parsed = parse_timestamp(cutoff)
    if parsed is None:
        raise ValueError(f"Invalid cutoff timestamp: {cutoff!r}")
    return parsed


def actor_label(actor: str) -> str:
    return strip_email(actor) or actor


class DiffEngine:
    def __init__(
        self,
        state_field: str = wf.STATE,
        assignment_field: str = wf.ASSIGNED_TO,
        bookkeeping_fields: Iterable[str] = wf.BOOKKEEPING_FIELDS,
        max_plausible_year: int = MAX_PLAUSIBLE_YEAR,
    ):
        self.state_field = state_field
        self.assignment_field = assignment_field
        self.bookkeeping_fields = frozenset(bookkeeping_fields)
        self.max_plausible_year = max_plausible_year
        self.skipped_revisions = 0
        self.revisions_in_window = 0

    def reconstruct(self, store: RevisionStore, identities: Sequence[Identity], cutoff: Union[str, datetime]) -> Tuple[List[ActivityEvent], Set[int]]:
        """Scan the finalized store once and return (activities, relevant entity ids).

        Order of the returned activities carries no meaning.
        """
        cutoff_dt = resolve_cutoff(cutoff)
        self.skipped_revisions = 0
        self.revisions_in_window = 0
        activities: List[ActivityEvent] = []
        relevant: Set[int] = set()

        for entity_id, revisions in store.items():
            latest_fields = revisions[-1].fields if revisions else {}
            for i, rev in enumerate(revisions):
                when = parse_timestamp(rev.changed_at)
                if when is None or when.year > self.max_plausible_year:
                    self.skipped_revisions += 1
                    logger.debug(f"Skipping revision {entity_id}#{rev.sequence} with unusable date {rev.changed_at!r}")
                    continue
                if when < cutoff_dt:
                    continue
                self.revisions_in_window += 1
                prev = revisions[i - 1] if i > 0 else None
                try:
                    events = self._diff_revision(rev, prev, identities, when, latest_fields)
                except Exception as ex:
                    self.skipped_revisions += 1
                    logger.debug(f"Skipping malformed revision {entity_id}#{rev.sequence}: {ex}")
                    continue
                if events:
                    activities.extend(events)
                    relevant.add(entity_id)

        if self.skipped_revisions:
            logger.warning(f"Skipped {self.skipped_revisions} malformed revisions while diffing")
        logger.info(f"Diffed {self.revisions_in_window} revisions in window: {len(activities)} activities across {len(relevant)} relevant entities")
        return activities, relevant

    def _diff_revision(self, rev: Revision, prev: Optional[Revision], identities: Sequence[Identity], when: datetime, latest_fields) -> List[ActivityEvent]:
        events: List[ActivityEvent] = []
        snapshot: Optional[EntitySnapshot] = None
        timestamp = when.isoformat()
        actor = rev.changed_by

        def emit(identity: Identity, kind: str, detail: str):
            nonlocal snapshot
            if snapshot is None:
                snapshot = build_snapshot(rev.fields, latest_fields)
            events.append(ActivityEvent(
                identity=identity,
                timestamp=timestamp,
                entity_id=rev.entity_id,
                entity_snapshot=snapshot,
                kind=kind,
                detail=detail,
                actor=actor_label(actor),
                sequence=rev.sequence,
            ))

        ignored = self.bookkeeping_fields | {self.assignment_field}
        assignment_changed = prev is not None and value_changed(prev.fields, rev.fields, self.assignment_field)
        assignee = identity_value_to_text(rev.fields.get(self.assignment_field)) if assignment_changed else ''

        for identity in identities:
            if matches_actor(identity, actor):
                if prev is None:
                    emit(identity, ActivityKind.EDIT, self._first_touch_detail(rev))
                    continue
                changed = changed_fields(prev.fields, rev.fields, ignore=ignored)
                if self.state_field in changed:
                    changed.remove(self.state_field)
                    old_state = field_text(prev.fields, self.state_field) or '(none)'
                    new_state = field_text(rev.fields, self.state_field) or '(none)'
                    emit(identity, ActivityKind.STATE_TRANSITION, f"State: {old_state}->{new_state}")
                if changed:
                    emit(identity, ActivityKind.EDIT, f"Changed: {', '.join(changed)}")
            elif assignee and matches_actor(identity, assignee):
                # credited to the assignee; an identity assigning to itself is already covered above
                emit(identity, ActivityKind.ASSIGNMENT, f"Assigned to {identity.display_name or identity.email} by {actor_label(actor)}")

        return events

    @staticmethod
    def _first_touch_detail(rev: Revision) -> str:
        if rev.sequence == 1:
            return 'Created work item'
        return f"Updated work item (revision {rev.sequence}, no earlier revision in scan)"


def reconstruct(store: RevisionStore, identities: Sequence[Identity], cutoff: Union[str, datetime]) -> Tuple[List[ActivityEvent], Set[int]]:
    """Diff the store with default field names."""
    return DiffEngine().reconstruct(store, identities, cutoff)


__all__ = ["DiffEngine", "reconstruct", "resolve_cutoff", "MAX_PLAUSIBLE_YEAR"]
