"""
CLI entry point for activity reports. Wires the pipeline: revision feed -> diff -> enrich -> metrics -> report
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from activity_report import run
from ingest.client import WorkTrackingClient
from ingest.errors import RevisionStreamError
from normalize.models import Identity
from normalize.util import normalize_identity, parse_person
from report.renderer import render, write_reports
from settings import apply_overrides, load_settings, missing_required, resolve_token
from storage.cache import ConnectionCache
from storage.retry import configure_retry

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ('csv', 'md', 'json', 'text', 'digest')
DEFAULT_DAYS = 30


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    # per-request connection chatter drowns the progress lines
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def _load_json_file(path: str, description: str):
    """Load a JSON file; returns None (and logs) when it cannot be read or parsed."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {description} {path}: {e}")
        return None


def _identities_from_doc(doc) -> List[Identity]:
    """Accept a list of "Name|email" strings / {name, email} objects, or {"members": [...]}."""
    if isinstance(doc, dict):
        doc = doc.get('members') or doc.get('people') or []
    if not isinstance(doc, list):
        return []
    identities = []
    for entry in doc:
        try:
            identity = normalize_identity(entry)
        except ValueError as ex:
            logger.warning(f"Skipping roster entry: {ex}")
            continue
        if identity.display_name or identity.email:
            identities.append(identity)
    return identities


def _dedupe(identities: List[Identity]) -> List[Identity]:
    seen = set()
    unique = []
    for i in identities:
        key = (i.display_name.lower(), i.email.lower())
        if key not in seen:
            seen.add(key)
            unique.append(i)
    return unique


def load_people(args) -> List[Identity]:
    people = [parse_person(p) for p in (args.person or []) if p.strip()]
    if args.people_file:
        doc = _load_json_file(args.people_file, 'people file')
        if doc is not None:
            people.extend(_identities_from_doc(doc))
    return _dedupe(people)


def load_peers(args, people: List[Identity]) -> List[Identity]:
    """Peer roster without the tracked people themselves."""
    peers = [parse_person(p) for p in (args.peer or []) if p.strip()]
    if args.team_file:
        doc = _load_json_file(args.team_file, 'team file')
        if doc is not None:
            peers.extend(_identities_from_doc(doc))
    tracked_emails = {p.email.lower() for p in people if p.email}
    tracked_names = {p.display_name.lower() for p in people if p.display_name}
    return [
        p for p in _dedupe(peers)
        if not ((p.email and p.email.lower() in tracked_emails) or (not p.email and p.display_name.lower() in tracked_names))
    ]


def resolve_since(args, now: Optional[datetime] = None) -> str:
    """--start wins over --days; both resolve to an ISO timestamp in UTC."""
    if args.start:
        try:
            start = datetime.strptime(args.start, '%Y-%m-%d').replace(tzinfo=timezone.utc)
        except ValueError:
            raise ValueError(f"Invalid --start date {args.start!r}; expected YYYY-MM-DD")
        return start.isoformat()
    now = now or datetime.now(timezone.utc)
    days = args.days if args.days is not None else DEFAULT_DAYS
    if days < 1:
        raise ValueError('--days must be at least 1')
    start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start.isoformat()


def write_output(fmt: str, report, args):
    """Write one file per person to --out-dir, or print the rendered report to stdout."""
    if args.out_dir:
        for path in write_reports(report, fmt, args.out_dir):
            print(f"Wrote report to {path}")
    else:
        print(render(report, fmt))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconstruct per-person activity from the work-item revision history")
    parser.add_argument("--person", action="append", default=[], help='Tracked person as "Name|email" (repeatable)')
    parser.add_argument("--people-file", type=str, default="", help="JSON file with tracked people")
    parser.add_argument("--peer", action="append", default=[], help='Peer as "Name|email" for comparison metrics (repeatable)')
    parser.add_argument("--team-file", type=str, default="", help="JSON roster of peers")
    parser.add_argument("--days", type=int, default=None, help=f"Look back this many days (default {DEFAULT_DAYS})")
    parser.add_argument("--start", type=str, default="", help="Start date (YYYY-MM-DD); overrides --days")
    parser.add_argument("--org", type=str, default=None, help="Organization (or REVSCAN_ORG)")
    parser.add_argument("--project", type=str, default=None, help="Project (or REVSCAN_PROJECT)")
    parser.add_argument("--base-url", type=str, default=None, help="Service base URL (or REVSCAN_BASE_URL)")
    parser.add_argument("--token", type=str, default=None, help="Access token (or REVSCAN_TOKEN)")
    parser.add_argument("--config", type=str, default=None, help="YAML settings file (default config/activity.yaml)")
    parser.add_argument("--page-timeout", type=float, default=None, help="Seconds to wait for one revision page")
    parser.add_argument("--output", type=str, choices=OUTPUT_FORMATS, default="csv", help="Output format")
    parser.add_argument("--out-dir", type=str, default="", help="Directory for per-person report files; stdout when omitted")
    parser.add_argument("--no-enrich", action="store_true", help="Skip comment enrichment")
    parser.add_argument("--no-relations", action="store_true", help="Skip parent and detail lookups")
    # retry/backoff knobs: optional CLI overrides of REVSCAN_MAX_RETRIES, REVSCAN_BACKOFF_BASE,
    # REVSCAN_BACKOFF_JITTER, REVSCAN_MAX_BACKOFF
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum retry attempts for HTTP requests")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff)
        settings = apply_overrides(
            load_settings(args.config),
            organization=args.org, project=args.project, base_url=args.base_url, page_timeout=args.page_timeout,
        )
        since = resolve_since(args)
    except ValueError as ex:
        parser.error(str(ex))

    people = load_people(args)
    if not people:
        logger.error('No person to report on; pass --person "Name|email" or --people-file')
        return 1
    missing = missing_required(settings)
    if missing:
        parser.error('Missing required settings: ' + ', '.join(f"{m} (--{'org' if m == 'organization' else m})" for m in missing))
    peers = load_peers(args, people)

    token = resolve_token(args.token)
    if not token:
        logger.warning('No access token given (--token or REVSCAN_TOKEN); requests are sent anonymously')

    with ConnectionCache() as connections:
        client = WorkTrackingClient(
            settings['organization'], settings['project'], token,
            base_url=settings['base_url'], connections=connections, timeout=settings['request_timeout'],
        )
        logger.info(f"Reporting on {len(people)} people ({len(peers)} peers) since {since[:10]}")
        try:
            report = run(client, people, since, peers=peers, settings=settings, enrich=not args.no_enrich, relations=not args.no_relations)
        except RevisionStreamError as ex:
            logger.error(str(ex))
            return 1

    write_output(args.output, report, args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
