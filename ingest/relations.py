"""
Relation resolver: parent links and supplementary long-text fields for the relevant entity set.

Parents are resolved in two phases: relation links per entity batch, then titles for the distinct
parent ids. A parent shared by many children is fetched once.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional
from normalize.util import chunked

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200
DEFAULT_CONCURRENCY = 10
PARENT = 'parent'


class RelationResolver:
    """source must expose get_relations(ids) -> {id: [{type, target_id}]}, get_titles(ids) -> {id: title}
    and, for resolve_details, get_fields(ids, fields) -> {id: {field: value}}.
    """

    def __init__(self, source, batch_size: int = DEFAULT_BATCH_SIZE, concurrency: int = DEFAULT_CONCURRENCY, limiter: Optional[asyncio.Semaphore] = None):
        if batch_size < 1 or concurrency < 1:
            raise ValueError('batch_size and concurrency must be at least 1')
        self.source = source
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.limiter = limiter
        self.errors = 0

    async def _run_batches(self, label: str, ids: List[int], call: Callable[[List[int]], Dict[int, Any]]) -> Dict[int, Any]:
        """Run call over fixed-size id batches, at most `concurrency` batches at a time, merging results."""
        merged: Dict[int, Any] = {}
        batches = chunked(ids, self.batch_size)

        async def run_one(batch: List[int]) -> Optional[Dict[int, Any]]:
            try:
                if self.limiter is None:
                    return await asyncio.to_thread(call, batch)
                async with self.limiter:
                    return await asyncio.to_thread(call, batch)
            except Exception as ex:
                self.errors += 1
                logger.warning(f"{label} batch of {len(batch)} ids failed: {ex}")
                return None

        for group in chunked(batches, self.concurrency):
            for result in await asyncio.gather(*(run_one(b) for b in group)):
                if result:
                    merged.update(result)
        return merged

    async def resolve_parents(self, entity_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """{entity_id: {'parent_id': int, 'parent_title': str}} for entities that have a parent."""
        ids = sorted(set(entity_ids))
        if not ids:
            return {}
        relations = await self._run_batches('Relation', ids, self.source.get_relations)

        parents: Dict[int, int] = {}
        for entity_id, links in relations.items():
            for link in links or []:
                if link.get('type') == PARENT and link.get('target_id') is not None:
                    parents[int(entity_id)] = int(link['target_id'])
                    break
        if not parents:
            logger.info(f"No parent links found for {len(ids)} entities")
            return {}

        distinct = sorted(set(parents.values()))
        titles = await self._run_batches('Parent title', distinct, self.source.get_titles)
        logger.info(f"Resolved {len(parents)} parent links to {len(distinct)} distinct parents")
        return {eid: {'parent_id': pid, 'parent_title': titles.get(pid, '')} for eid, pid in parents.items()}

    async def resolve_details(self, entity_ids: Iterable[int], fields: List[str]) -> Dict[int, Dict[str, Any]]:
        """Long-text fields (description, acceptance criteria, ...) kept out of the revision feed."""
        ids = sorted(set(entity_ids))
        if not ids or not fields:
            return {}
        details = await self._run_batches('Detail', ids, lambda batch: self.source.get_fields(batch, fields))
        logger.info(f"Fetched detail fields for {len(details)} of {len(ids)} entities")
        return details


__all__ = ["RelationResolver", "DEFAULT_BATCH_SIZE", "DEFAULT_CONCURRENCY"]
