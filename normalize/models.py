"""
Unified data models for identities, revisions and derived activity events.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

class _Absent:
    def __repr__(self):
        return '<absent>'


# marks a field missing from a revision snapshot; never equal to '', 0 or None
ABSENT = _Absent()


class ActivityKind:
    EDIT = 'Edit'
    STATE_TRANSITION = 'StateTransition'
    ASSIGNMENT = 'Assignment'
    COMMENT = 'Comment'
    MENTION = 'Mention'

    ALL = (EDIT, STATE_TRANSITION, ASSIGNMENT, COMMENT, MENTION)


class MentionCategory:
    ACTIONABLE = 'actionable'
    FYI = 'fyi'
    DISCUSSION = 'discussion'


@dataclass(frozen=True)
class Identity:
    """
    A tracked person (or peer). Matched against actor strings by name or email substring.
    """
    display_name: str
    email: str = ''

    @property
    def key(self) -> str:
        return self.display_name or self.email

    def __str__(self):
        if self.email:
            return f"{self.display_name} <{self.email}>"
        return self.display_name


@dataclass(frozen=True)
class Revision:
    """
    One immutable snapshot of an entity's fields.
    changed_at is kept raw; parsing happens where a bad date can be skipped.
    """
    entity_id: int
    sequence: int
    changed_at: str
    changed_by: str
    fields: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get(self, name: str, default: Any = ABSENT) -> Any:
        return self.fields.get(name, default)


@dataclass(frozen=True)
class EntitySnapshot:
    title: str = ''
    entity_type: str = ''
    state: str = ''
    area_path: str = ''
    assigned_to: str = ''
    iteration_path: str = ''
    tags: str = ''
    story_points: str = ''
    priority: str = ''
    completed_work: str = ''


@dataclass(frozen=True)
class ActivityEvent:
    """
    A derived activity attributed to one identity. Never mutated once created.
    """
    identity: Identity
    timestamp: str
    entity_id: int
    entity_snapshot: EntitySnapshot
    kind: str
    detail: str
    actor: str
    category: Optional[str] = None
    sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        snap = self.entity_snapshot
        return {
            'target': self.identity.key,
            'date': self.timestamp,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'entity_type': snap.entity_type,
            'state': snap.state,
            'area_path': snap.area_path,
            'title': snap.title,
            'activity_type': self.kind,
            'category': self.category or '',
            'details': self.detail,
            'actor': self.actor,
            'assigned_to': snap.assigned_to,
            'iteration_path': snap.iteration_path,
            'tags': snap.tags,
            'story_points': snap.story_points,
            'priority': snap.priority,
            'completed_work': snap.completed_work,
        }


@dataclass(frozen=True)
class PeerMetric:
    """Per-identity counters computed from one scan of the revision store."""
    identity: Identity
    total_activities: int
    entities_touched: int
    days_active: int
    state_transitions: int
    entities_closed: int
    logged_effort: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.identity.display_name,
            'email': self.identity.email,
            'total_activities': self.total_activities,
            'entities_touched': self.entities_touched,
            'days_active': self.days_active,
            'state_transitions': self.state_transitions,
            'entities_closed': self.entities_closed,
            'logged_effort': self.logged_effort,
        }
