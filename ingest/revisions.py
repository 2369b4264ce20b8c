"""
Revision feed ingestion: follows the server's continuation tokens one page at a time and streams every
revision into the RevisionStore as soon as its page arrives.

Pagination is strictly sequential (each token is only known once the previous page is in). A page that
times out or fails after the first one ends pagination; everything fetched so far is kept.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from ingest.errors import RevisionStreamError, SourceTimeout
from normalize.models import Revision
from normalize.util import identity_value_to_text
from storage.revisions import RevisionStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_TIMEOUT = 60.0

# repeated verbatim on every revision of an entity; fetched separately for relevant entities only
LARGE_TEXT_FIELDS = frozenset({
    'System.Description',
    'System.History',
    'Microsoft.VSTS.Common.AcceptanceCriteria',
    'Microsoft.VSTS.TCM.ReproSteps',
    'Custom.DevelopmentSummary',
})

# always requested: the store and diff engine cannot work without them
REQUIRED_FIELDS = ('System.Id', 'System.Rev', 'System.ChangedDate', 'System.ChangedBy')


@dataclass
class RevisionBatch:
    revisions: List[Revision]
    continuation_token: Optional[str]
    is_last_batch: bool = False
    skipped: int = 0


@dataclass
class StreamResult:
    pages: int = 0
    revisions: int = 0
    skipped_entries: int = 0
    stopped_early: bool = False
    stop_reason: str = ''
    elapsed: float = 0.0
    errors: List[str] = field(default_factory=list)


def revision_from_entry(entry: Dict[str, Any]) -> Optional[Revision]:
    """Build a Revision from one feed entry; None when the entry is malformed or lacks an id or revision number."""
    if not isinstance(entry, dict):
        return None
    fields = entry.get('fields') or {}
    if not isinstance(fields, dict):
        return None
    entity_id = entry.get('id', fields.get('System.Id'))
    sequence = entry.get('rev', fields.get('System.Rev'))
    if entity_id is None or sequence is None:
        return None
    try:
        entity_id = int(entity_id)
        sequence = int(sequence)
    except (TypeError, ValueError):
        return None
    changed_at = fields.get('System.ChangedDate') or entry.get('changedDate') or ''
    changed_by = identity_value_to_text(fields.get('System.ChangedBy') or entry.get('changedBy'))
    return Revision(entity_id=entity_id, sequence=sequence, changed_at=str(changed_at), changed_by=changed_by, fields=dict(fields))


def format_since(since: Union[str, datetime]) -> str:
    if isinstance(since, datetime):
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return since.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    return since


class RevisionPageFetcher:
    """Streams the organisation-wide revision feed into a RevisionStore.

    source must expose get_revision_page(since, fields, continuation_token, timeout=None) returning
    {'values': [...], 'continuationToken': str|None, 'isLastBatch': bool}.
    """

    def __init__(self, source, store: RevisionStore, field_projection: List[str], page_timeout: float = DEFAULT_PAGE_TIMEOUT, progress_every: int = 10000):
        large = sorted(set(field_projection) & LARGE_TEXT_FIELDS)
        if large:
            raise ValueError(f"Field projection must not include large text fields: {', '.join(large)}")
        self.source = source
        self.store = store
        self.fields = list(REQUIRED_FIELDS) + [f for f in field_projection if f not in REQUIRED_FIELDS]
        self.page_timeout = page_timeout
        self.progress_every = progress_every
        self.result = StreamResult()

    async def _fetch_page(self, since: str, token: Optional[str]) -> Dict[str, Any]:
        call = asyncio.to_thread(self.source.get_revision_page, since, self.fields, token, timeout=self.page_timeout)
        return await asyncio.wait_for(call, timeout=self.page_timeout)

    def _stop(self, reason: str):
        self.result.stopped_early = True
        self.result.stop_reason = reason
        self.result.errors.append(reason)
        logger.warning(f"Revision pagination stopped early after {self.result.pages} page(s): {reason}")

    async def pages(self, since: Union[str, datetime]) -> AsyncIterator[RevisionBatch]:
        """Yield one RevisionBatch per page until the feed is exhausted or a page fails."""
        since_str = format_since(since)
        token: Optional[str] = None
        while True:
            first = self.result.pages == 0
            try:
                data = await self._fetch_page(since_str, token)
            except (asyncio.TimeoutError, SourceTimeout):
                reason = f"page {self.result.pages + 1} timed out after {self.page_timeout}s"
                if first:
                    raise RevisionStreamError(f"Revision feed unavailable: {reason}")
                self._stop(reason)
                return
            except Exception as ex:
                reason = f"page {self.result.pages + 1} failed: {ex}"
                if first:
                    raise RevisionStreamError(f"Revision feed unavailable: {reason}") from ex
                self._stop(reason)
                return

            values = data.get('values') or []
            revisions = []
            skipped = 0
            for entry in values:
                rev = revision_from_entry(entry)
                if rev is None:
                    skipped += 1
                    continue
                revisions.append(rev)
            token = data.get('continuationToken') or None
            is_last = bool(data.get('isLastBatch'))
            self.result.pages += 1
            yield RevisionBatch(revisions=revisions, continuation_token=token, is_last_batch=is_last, skipped=skipped)

            if not token or is_last:
                return
            if not values:
                logger.warning(f"Empty revision page {self.result.pages} still carried a continuation token; stopping")
                return

    async def stream(self, since: Union[str, datetime]) -> StreamResult:
        """Fetch every page and append its revisions to the store immediately."""
        started = time.monotonic()
        next_progress = self.progress_every
        logger.info(f"Streaming revisions since {format_since(since)}")
        async for batch in self.pages(since):
            self.store.extend(batch.revisions)
            self.result.revisions += len(batch.revisions)
            self.result.skipped_entries += batch.skipped
            if self.progress_every and self.result.revisions >= next_progress:
                logger.info(f"  Scanned {self.result.revisions} revisions in {self.result.pages} pages ({time.monotonic() - started:.1f}s)")
                next_progress = (self.result.revisions // self.progress_every + 1) * self.progress_every
        self.result.elapsed = time.monotonic() - started
        logger.info(f"Streamed {self.result.revisions} revisions in {self.result.pages} pages ({self.result.elapsed:.1f}s)")
        if self.result.skipped_entries:
            logger.warning(f"Skipped {self.result.skipped_entries} feed entries without id or revision number")
        return self.result


__all__ = ["RevisionPageFetcher", "RevisionBatch", "StreamResult", "revision_from_entry", "LARGE_TEXT_FIELDS"]
