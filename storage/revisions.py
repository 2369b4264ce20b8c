"""
In-memory revision store: entity id -> ordered revisions.

Single writer while the feed streams in, frozen by finalize(), read-only afterwards.
"""

import logging
from typing import Dict, Iterator, List, Optional, Tuple
from normalize.models import Revision

logger = logging.getLogger(__name__)


class StoreNotFinalizedError(RuntimeError):
    """Raised when the store is read before finalize()."""


class StoreFrozenError(RuntimeError):
    """Raised when a revision is appended after finalize()."""


class RevisionStore:
    def __init__(self):
        self._pending: Dict[int, List[Revision]] = {}
        self._frozen: Optional[Dict[int, Tuple[Revision, ...]]] = None
        self.appended = 0
        self.duplicates_dropped = 0

    @property
    def is_finalized(self) -> bool:
        return self._frozen is not None

    def append(self, revision: Revision):
        if self._frozen is not None:
            raise StoreFrozenError(f"Cannot append revision {revision.entity_id}#{revision.sequence} to a finalized store")
        self._pending.setdefault(revision.entity_id, []).append(revision)
        self.appended += 1

    def extend(self, revisions):
        for rev in revisions:
            self.append(rev)

    def finalize(self) -> 'RevisionStore':
        """Sort every entity's revisions ascending by sequence and freeze the store.

        Pages may deliver an entity's revisions out of order or twice; the last delivered copy of a
        sequence number wins so sequences are strictly increasing afterwards. Calling twice is a no-op.
        """
        if self._frozen is not None:
            return self
        frozen: Dict[int, Tuple[Revision, ...]] = {}
        for entity_id, revs in self._pending.items():
            by_seq: Dict[int, Revision] = {}
            for rev in revs:
                if rev.sequence in by_seq:
                    self.duplicates_dropped += 1
                by_seq[rev.sequence] = rev
            frozen[entity_id] = tuple(by_seq[s] for s in sorted(by_seq))
        self._frozen = frozen
        self._pending = {}
        if self.duplicates_dropped:
            logger.debug(f"Dropped {self.duplicates_dropped} duplicate revisions while finalizing")
        return self

    def _require_frozen(self) -> Dict[int, Tuple[Revision, ...]]:
        if self._frozen is None:
            raise StoreNotFinalizedError('RevisionStore must be finalized before it is read')
        return self._frozen

    def revisions(self, entity_id: int) -> Tuple[Revision, ...]:
        return self._require_frozen().get(entity_id, ())

    def latest(self, entity_id: int) -> Optional[Revision]:
        """Terminal revision of an entity, i.e. its current state."""
        revs = self._require_frozen().get(entity_id)
        return revs[-1] if revs else None

    def entity_ids(self) -> List[int]:
        return sorted(self._require_frozen().keys())

    def items(self) -> Iterator[Tuple[int, Tuple[Revision, ...]]]:
        frozen = self._require_frozen()
        for entity_id in sorted(frozen):
            yield entity_id, frozen[entity_id]

    @property
    def revision_count(self) -> int:
        return sum(len(v) for v in self._require_frozen().values())

    def __len__(self):
        return len(self._require_frozen())

    def __contains__(self, entity_id) -> bool:
        return entity_id in self._require_frozen()
