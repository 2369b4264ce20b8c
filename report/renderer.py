"""
Report renderer: CSV / Markdown / JSON / text views of an ActivityReport, plus a Jinja2-rendered
Markdown activity digest (per-identity workstreams grouped by parent item).
"""

import csv
import io
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
from correlate.models import ActivityReport
from normalize.models import ActivityEvent, ActivityKind, Identity
from scoring.metrics import compare_to_peers

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    'Date', 'EntityId', 'EntityType', 'State', 'AreaPath', 'Title', 'ActivityType', 'Category',
    'Details', 'Actor', 'Target', 'ParentId', 'ParentTitle',
]

FORMAT_EXTENSIONS = {'csv': 'csv', 'md': 'md', 'json': 'json', 'text': 'txt', 'digest': 'md'}

NO_PARENT = '(no parent)'


def _event_row(report: ActivityReport, ev: ActivityEvent) -> List[Any]:
    snap = ev.entity_snapshot
    parent = report.parent_of(ev.entity_id)
    return [
        ev.timestamp,
        ev.entity_id,
        snap.entity_type,
        snap.state,
        snap.area_path,
        snap.title,
        ev.kind,
        ev.category or '',
        ev.detail,
        ev.actor,
        ev.identity.key,
        parent.get('parent_id', ''),
        parent.get('parent_title', ''),
    ]


def render_csv(report: ActivityReport, identity: Optional[Identity] = None) -> str:
    """One row per activity, newest first."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for ev in report.sorted_activities(identity):
        writer.writerow(_event_row(report, ev))
    return output.getvalue()


def _fmt_avg(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def render_markdown(report: ActivityReport, identity: Optional[Identity] = None) -> str:
    """Per-identity counts by kind, self vs. peer metrics and the run counters."""
    md = ["# Activity Summary\n", f"Since: {report.since}\n"]
    targets = [identity] if identity else report.identities
    for ident in targets:
        md.append(f"## {ident.display_name or ident.email}\n")
        counts = report.counts_by_kind(ident)
        total = sum(counts.values())
        md.append(f"- Activities: **{total}**")
        for kind in ActivityKind.ALL:
            if counts.get(kind):
                md.append(f"  - {kind}: {counts[kind]}")
        metric = report.metric_for(ident)
        if metric is not None and report.peer_averages.get('peer_count'):
            md.append("")
            md.append(f"| Metric | Self | Peer avg ({report.peer_averages['peer_count']} peers) |")
            md.append("|---|---|---|")
            for name, (own, avg) in compare_to_peers(metric, report.peer_averages).items():
                md.append(f"| {name} | {_fmt_avg(own)} | {_fmt_avg(avg)} |")
        elif metric is not None:
            md.append(f"- Entities touched: {metric.entities_touched}")
            md.append(f"- Days active: {metric.days_active}")
            md.append(f"- Entities closed: {metric.entities_closed}")
            md.append(f"- Logged effort: {metric.logged_effort:.1f} hours")
        md.append("")

    s = report.stats
    md.append("## Run\n")
    md.append(f"- Pages fetched: {s.pages_fetched}")
    md.append(f"- Revisions ingested: {s.revisions_ingested} across {s.entities} entities")
    md.append(f"- Relevant entities: {s.relevant_entities}")
    if s.stopped_early:
        md.append(f"- **Pagination stopped early**: {s.stop_reason}")
    if s.skipped_revisions:
        md.append(f"- Malformed revisions skipped: {s.skipped_revisions}")
    if s.enrichment_errors:
        md.append(f"- Comment fetch errors: {s.enrichment_errors}")
    if s.relation_errors:
        md.append(f"- Relation batch errors: {s.relation_errors}")
    return "\n".join(md) + "\n"


def render_json(report: ActivityReport, identity: Optional[Identity] = None) -> str:
    activities = []
    for ev in report.sorted_activities(identity):
        d = ev.to_dict()
        parent = report.parent_of(ev.entity_id)
        d['parent_id'] = parent.get('parent_id')
        d['parent_title'] = parent.get('parent_title', '')
        activities.append(d)
    doc = {
        'since': report.since,
        'identities': [{'name': i.display_name, 'email': i.email} for i in report.identities],
        'activities': activities,
        'details': {str(k): v for k, v in report.details.items()},
        'self_metrics': [m.to_dict() for m in report.self_metrics],
        'peer_metrics': [m.to_dict() for m in report.peer_metrics],
        'peer_averages': report.peer_averages,
        'stats': report.stats.to_dict(),
    }
    return json.dumps(doc, indent=2, default=str)


def render_text(report: ActivityReport, identity: Optional[Identity] = None) -> str:
    lines = [str(report), '']
    for ev in report.sorted_activities(identity):
        lines.append(f"{ev.timestamp[:16]}  #{ev.entity_id}  {ev.kind:<15} {ev.detail}  ({ev.actor} -> {ev.identity.key})")
    return "\n".join(lines)


def is_noise(ev: ActivityEvent) -> bool:
    """Mechanical events that say nothing about the work: bare edits, service-account assignments."""
    d = ev.detail.lower()
    if ev.kind == ActivityKind.ASSIGNMENT and 'svc-' in ev.actor.lower():
        return True
    if ev.kind == ActivityKind.EDIT and 'state:' not in d and 'completedwork' not in d and 'storypoints' not in d:
        return True
    return False


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", '-', text.lower()).strip('-') or 'unknown'


def digest_context(report: ActivityReport, identity: Identity) -> Dict[str, Any]:
    """Workstreams for one identity: parent -> entities -> non-noise events (oldest first)."""
    streams: Dict[str, Dict[int, Dict[str, Any]]] = {}
    noise = 0
    for ev in sorted(report.sorted_activities(identity), key=lambda a: (a.timestamp, a.entity_id, a.sequence or 0)):
        if is_noise(ev):
            noise += 1
            continue
        parent = report.parent_of(ev.entity_id)
        if parent:
            title = parent.get('parent_title') or f"#{parent.get('parent_id')}"
        else:
            title = NO_PARENT
        entities = streams.setdefault(title, {})
        entry = entities.setdefault(ev.entity_id, {'id': ev.entity_id, 'title': ev.entity_snapshot.title,
                                                    'type': ev.entity_snapshot.entity_type, 'state': ev.entity_snapshot.state, 'events': []})
        entry['events'].append({'date': ev.timestamp[:10], 'kind': ev.kind, 'category': ev.category or '', 'actor': ev.actor, 'detail': ev.detail})

    workstreams = []
    for title in sorted(streams, key=lambda t: (t == NO_PARENT, t.lower())):
        items = list(streams[title].values())
        workstreams.append({'title': title, 'items': items, 'event_count': sum(len(i['events']) for i in items)})
    return {
        'identity': identity,
        'since': report.since,
        'metric': report.metric_for(identity),
        'averages': report.peer_averages,
        'workstreams': workstreams,
        'noise_filtered': noise,
        'stats': report.stats,
    }


def _template_env() -> Environment:
    tmpl_dir = os.path.join(os.path.dirname(__file__), 'templates')
    return Environment(loader=FileSystemLoader(tmpl_dir), autoescape=select_autoescape(['html', 'xml']), trim_blocks=True, lstrip_blocks=True)


def render_digest(report: ActivityReport, identity: Optional[Identity] = None) -> str:
    tmpl = _template_env().get_template('digest.md.j2')
    targets = [identity] if identity else report.identities
    return '\n\n---\n\n'.join(tmpl.render(**digest_context(report, ident)) for ident in targets)


_RENDERERS = {
    'csv': render_csv,
    'md': render_markdown,
    'markdown': render_markdown,
    'json': render_json,
    'text': render_text,
    'digest': render_digest,
}


def render(report: ActivityReport, fmt: str = 'text', identity: Optional[Identity] = None) -> str:
    """Main render function. Unknown formats raise ValueError."""
    fmt_l = (fmt or 'text').lower()
    fn = _RENDERERS.get(fmt_l)
    if fn is None:
        raise ValueError(f"Unsupported output format: {fmt}")
    return fn(report, identity)


def write_reports(report: ActivityReport, fmt: str, out_dir: str) -> List[str]:
    """Write one file per identity plus a Markdown summary; returns the paths written."""
    os.makedirs(out_dir, exist_ok=True)
    fmt_l = (fmt or 'csv').lower()
    ext = FORMAT_EXTENSIONS.get(fmt_l, 'txt')
    suffix = '-digest' if fmt_l == 'digest' else ''
    written = []
    for ident in report.identities:
        path = os.path.join(out_dir, f"{_slug(ident.display_name or ident.email)}{suffix}.{ext}")
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(render(report, fmt_l, ident))
        written.append(path)
    summary_path = os.path.join(out_dir, 'summary.md')
    with open(summary_path, 'w', encoding='utf-8') as f:
        f.write(render_markdown(report))
    written.append(summary_path)
    logger.info(f"Wrote {len(written)} report files to {out_dir}")
    return written
