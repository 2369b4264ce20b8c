"""
Activity report pipeline.
Streams the revision feed once, diffs it locally, then runs the relevance-gated second pass and the
peer aggregation, and merges everything into one ActivityReport.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
from correlate.diff_engine import DiffEngine, resolve_cutoff
from correlate.models import ActivityReport, RunStats
from ingest.enrichment import CommentEnricher
from ingest.relations import RelationResolver
from ingest.revisions import RevisionPageFetcher
from normalize.models import Identity
from scoring.metrics import PeerMetricsAggregator, peer_averages
from settings import DEFAULT_SETTINGS
from storage.revisions import RevisionStore

logger = logging.getLogger(__name__)


async def _empty_events() -> List:
    return []


async def _no_results() -> Dict[int, Dict[str, Any]]:
    return {}


async def generate_activity_report(
    source,
    identities: Sequence[Identity],
    since: Union[str, datetime],
    peers: Optional[Sequence[Identity]] = None,
    settings: Optional[Dict[str, Any]] = None,
    enrich: bool = True,
    relations: bool = True,
) -> ActivityReport:
    """
    Build the report for `identities` from `since` (inclusive).

    Raises RevisionStreamError only when the first revision page cannot be fetched; every later
    failure degrades the report and is recorded in its RunStats.
    """
    if not identities:
        raise ValueError('At least one identity is required')
    cfg = dict(DEFAULT_SETTINGS)
    cfg.update(settings or {})
    cutoff = resolve_cutoff(since)
    started = time.monotonic()
    stats = RunStats()

    # 1. stream the feed into the store
    store = RevisionStore()
    fetcher = RevisionPageFetcher(
        source, store, cfg['field_projection'], page_timeout=float(cfg['page_timeout']), progress_every=int(cfg['progress_every'])
    )
    streamed = await fetcher.stream(cutoff)
    store.finalize()
    stats.pages_fetched = streamed.pages
    stats.revisions_ingested = store.revision_count
    stats.entities = len(store)
    stats.skipped_entries = streamed.skipped_entries
    stats.duplicates_dropped = store.duplicates_dropped
    stats.stopped_early = streamed.stopped_early
    stats.stop_reason = streamed.stop_reason
    stats.fetch_seconds = streamed.elapsed

    # 2. local diff
    engine = DiffEngine(
        state_field=cfg['state_field'],
        assignment_field=cfg['assignment_field'],
        max_plausible_year=int(cfg['max_plausible_year']),
    )
    activities, relevant = engine.reconstruct(store, identities, cutoff)
    stats.skipped_revisions = engine.skipped_revisions
    stats.revisions_in_window = engine.revisions_in_window
    stats.relevant_entities = len(relevant)

    # 3. second pass, relevant entities only
    # comments, parents and details run concurrently under one in-flight ceiling
    limiter = asyncio.Semaphore(max(1, int(cfg['max_in_flight'])))
    enricher = CommentEnricher(source, store, batch_size=int(cfg['enrichment_batch_size']), limiter=limiter)
    resolver = RelationResolver(
        source, batch_size=int(cfg['relation_batch_size']), concurrency=int(cfg['relation_concurrency']), limiter=limiter
    )
    comment_task = enricher.enrich(relevant, identities, cutoff) if enrich else _empty_events()
    parent_task = resolver.resolve_parents(relevant) if relations else _no_results()
    detail_fields = cfg.get('detail_fields') or []
    detail_task = resolver.resolve_details(relevant, detail_fields) if relations and detail_fields else _no_results()
    comment_events, parents, details = await asyncio.gather(comment_task, parent_task, detail_task)
    activities.extend(comment_events)
    stats.comments_fetched = enricher.fetched
    stats.enrichment_errors = enricher.errors
    stats.relation_errors = resolver.errors

    # 4. metrics over the whole store, independent of relevance
    aggregator = PeerMetricsAggregator(
        state_field=cfg['state_field'],
        effort_field=cfg['effort_field'],
        terminal_states=cfg['terminal_states'],
        max_plausible_year=int(cfg['max_plausible_year']),
    )
    self_metrics = aggregator.aggregate(store, identities, cutoff)
    peer_metrics = aggregator.aggregate(store, peers, cutoff) if peers else []
    averages = peer_averages(peer_metrics)

    stats.total_seconds = time.monotonic() - started
    logger.debug(f"Run stats: {stats.to_dict()}")
    if stats.degraded:
        logger.warning(
            f"Report is partial: stopped_early={stats.stopped_early}, skipped_revisions={stats.skipped_revisions}, "
            f"enrichment_errors={stats.enrichment_errors}, relation_errors={stats.relation_errors}"
        )
    logger.info(f"Report ready: {len(activities)} activities for {len(identities)} identities in {stats.total_seconds:.1f}s")

    return ActivityReport(
        identities=list(identities),
        activities=activities,
        since=cutoff.isoformat(),
        parents=parents,
        details=details,
        self_metrics=self_metrics,
        peer_metrics=peer_metrics,
        peer_averages=averages,
        stats=stats,
    )


def run(source, identities: Sequence[Identity], since: Union[str, datetime], **kwargs) -> ActivityReport:
    """Synchronous entry point for callers without an event loop."""
    return asyncio.run(generate_activity_report(source, identities, since, **kwargs))


__all__ = ["generate_activity_report", "run"]
