"""
Targeted enrichment: fetch comments only for entities the diff engine marked relevant and turn them
into Comment / Mention events.

Work is done in fixed-size batches. All fetches of one batch run concurrently and the next batch
starts only when the whole batch is done, which caps requests in flight at the batch size.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from correlate.diff_engine import actor_label, resolve_cutoff
from correlate.mentions import classify_mention
from normalize.fields import build_snapshot
from normalize.models import ActivityEvent, ActivityKind, EntitySnapshot, Identity
from normalize.util import chunked, clean_html, is_match, mentions_identity, parse_timestamp
from storage.revisions import RevisionStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
COMMENT_PREVIEW_LENGTH = 300


class CommentEnricher:
    """source must expose get_comments(entity_id) -> [{author, author_email, text, created_at}]."""

    def __init__(self, source, store: RevisionStore, batch_size: int = DEFAULT_BATCH_SIZE, limiter: Optional[asyncio.Semaphore] = None):
        if batch_size < 1:
            raise ValueError('batch_size must be at least 1')
        self.source = source
        self.store = store
        self.batch_size = batch_size
        # shared with the relation resolver when both run at once
        self.limiter = limiter
        self.errors = 0
        self.fetched = 0

    def _snapshot(self, entity_id: int) -> EntitySnapshot:
        latest = self.store.latest(entity_id)
        return build_snapshot(latest.fields) if latest is not None else EntitySnapshot()

    async def _fetch(self, entity_id: int) -> Optional[List[Dict[str, Any]]]:
        try:
            if self.limiter is None:
                return await asyncio.to_thread(self.source.get_comments, entity_id)
            async with self.limiter:
                return await asyncio.to_thread(self.source.get_comments, entity_id)
        except Exception as ex:
            self.errors += 1
            logger.debug(f"Comment fetch failed for entity {entity_id}: {ex}")
            return None

    def events_for_comments(self, entity_id: int, comments: Iterable[Dict[str, Any]], identities: Sequence[Identity], cutoff: datetime) -> List[ActivityEvent]:
        events: List[ActivityEvent] = []
        snapshot = self._snapshot(entity_id)
        for comment in comments:
            when = parse_timestamp(comment.get('created_at'))
            if when is None or when < cutoff:
                continue
            author = comment.get('author') or ''
            author_email = comment.get('author_email') or ''
            text = clean_html(comment.get('text'))
            actor = f"{author} <{author_email}>" if author and author_email else (author or author_email)
            for identity in identities:
                if is_match(identity, author or author_email, author_email or author):
                    detail = f"Comment: {text[:COMMENT_PREVIEW_LENGTH]}" if text else 'Comment'
                    events.append(ActivityEvent(identity, when.isoformat(), entity_id, snapshot, ActivityKind.COMMENT, detail, actor_label(actor)))
                elif mentions_identity(identity, text):
                    category = classify_mention(text)
                    events.append(ActivityEvent(
                        identity, when.isoformat(), entity_id, snapshot, ActivityKind.MENTION,
                        f"Mentioned in comment: {text[:COMMENT_PREVIEW_LENGTH]}", actor_label(actor), category=category,
                    ))
        return events

    async def enrich(self, relevant: Iterable[int], identities: Sequence[Identity], cutoff: Union[str, datetime]) -> List[ActivityEvent]:
        cutoff_dt = resolve_cutoff(cutoff)
        entity_ids = sorted(relevant)
        self.errors = 0
        self.fetched = 0
        activities: List[ActivityEvent] = []
        if not entity_ids:
            return activities

        started = time.monotonic()
        batches = chunked(entity_ids, self.batch_size)
        logger.info(f"Fetching comments for {len(entity_ids)} relevant entities in {len(batches)} batches of {self.batch_size}")
        for batch in batches:
            # one result slot per entity; tasks never share state
            results = await asyncio.gather(*(self._fetch(eid) for eid in batch))
            for entity_id, comments in zip(batch, results):
                if comments is None:
                    continue
                self.fetched += 1
                activities.extend(self.events_for_comments(entity_id, comments, identities, cutoff_dt))

        elapsed = time.monotonic() - started
        if self.errors:
            logger.warning(f"Comment fetch failed for {self.errors} of {len(entity_ids)} entities")
        logger.info(f"Comment enrichment produced {len(activities)} activities in {elapsed:.1f}s")
        return activities


__all__ = ["CommentEnricher", "DEFAULT_BATCH_SIZE"]
