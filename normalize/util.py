"""
Normalization utility helpers.
Identity parsing/matching, timestamp parsing and small field-value helpers shared by the pipeline stages.
"""
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional
from normalize.models import ABSENT, Identity

_EMAIL_IN_BRACKETS = re.compile(r"<([^<>@\s]+@[^<>\s]+)>")
_BARE_EMAIL = re.compile(r"[^\s<>@]+@[^\s<>@]+\.[^\s<>@]+")
_HTML_TAG = re.compile(r"<[^>]*>")
_FRACTION = re.compile(r"\.(\d+)")


def parse_person(raw: str) -> Identity:
    """Parse "Name|email@domain" (or just a name) into an Identity."""
    if '|' in raw:
        name, email = raw.split('|', 1)
        return Identity(display_name=name.strip(), email=email.strip())
    return Identity(display_name=raw.strip(), email='')


def normalize_identity(raw: Any) -> Identity:
    """Create an Identity from a roster entry: a "Name|email" string or a provider dict."""
    if isinstance(raw, str):
        return parse_person(raw)
    if not isinstance(raw, dict):
        raise ValueError(f"Unsupported identity entry: {raw!r}")
    name = raw.get('name') or raw.get('displayName') or raw.get('display_name') or ''
    email = raw.get('email') or raw.get('emailAddress') or raw.get('uniqueName') or raw.get('mail') or ''
    return Identity(display_name=str(name).strip(), email=str(email).strip())


def is_match(identity: Identity, name_to_check: str, email_to_check: str) -> bool:
    """Case-insensitive substring match on name OR email. Empty values never match."""
    if not name_to_check and not email_to_check:
        return False
    name_match = bool(identity.display_name and name_to_check and identity.display_name.lower() in name_to_check.lower())
    email_match = bool(identity.email and email_to_check and identity.email.lower() in email_to_check.lower())
    return name_match or email_match


def matches_actor(identity: Identity, actor: str) -> bool:
    """Match a free-text actor string such as "Jane Doe <jane@corp.com>" against an identity."""
    return is_match(identity, actor, actor)


def mentions_identity(identity: Identity, text: str) -> bool:
    if not text:
        return False
    lower = text.lower()
    if identity.display_name and identity.display_name.lower() in lower:
        return True
    return bool(identity.email and identity.email.lower() in lower)


def identity_value_to_text(value: Any) -> str:
    """Render an identity-valued field (string or {displayName, uniqueName} object) as one actor string."""
    if value is None or value is ABSENT:
        return ''
    if isinstance(value, dict):
        name = value.get('displayName') or value.get('name') or ''
        unique = value.get('uniqueName') or value.get('email') or ''
        if name and unique:
            return f"{name} <{unique}>"
        return name or unique
    return str(value)


def extract_email(actor: str) -> str:
    """Return the lower-cased email contained in an actor string, or '' if none."""
    if not actor:
        return ''
    m = _EMAIL_IN_BRACKETS.search(actor)
    if m:
        return m.group(1).strip().lower()
    m = _BARE_EMAIL.search(actor)
    return m.group(0).strip().lower() if m else ''


def strip_email(actor: str) -> str:
    """Drop a trailing "<email>" from an actor string."""
    return _EMAIL_IN_BRACKETS.sub('', actor or '').strip()


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime. Returns None when unparseable.

    Accepts a trailing 'Z' and fractional seconds of any length (the revision feed emits 7 digits).
    Naive values are treated as UTC.
    """
    if isinstance(raw, datetime):
        dt = raw
    else:
        if not isinstance(raw, str) or not raw.strip():
            return None
        text = raw.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        text = _FRACTION.sub(lambda m: '.' + (m.group(1) + '000000')[:6], text, count=1)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clean_html(raw_html: Optional[str]) -> str:
    """Strip HTML tags and collapse whitespace."""
    if not raw_html:
        return ''
    text = _HTML_TAG.sub('', str(raw_html))
    text = text.replace('&nbsp;', ' ').replace('&amp;', '&').replace('&lt;', '<').replace('&gt;', '>')
    return re.sub(r"\s+", ' ', text).strip()


def field_text(fields: Mapping[str, Any], name: str) -> str:
    """Return a field as display text; identity objects are flattened, missing fields become ''."""
    value = fields.get(name, ABSENT)
    if value is ABSENT or value is None:
        return ''
    if isinstance(value, dict):
        return identity_value_to_text(value)
    return str(value)


def changed_fields(old: Mapping[str, Any], new: Mapping[str, Any], ignore: Iterable[str] = ()) -> List[str]:
    """Keys whose value differs between two snapshots.

    Covers the union of both key sets, so a field that disappeared or appeared counts as changed.
    Values are compared structurally, which makes nested dict key order irrelevant.
    """
    ignored = set(ignore)
    changed = []
    for key in sorted(set(old.keys()) | set(new.keys())):
        if key in ignored:
            continue
        if old.get(key, ABSENT) != new.get(key, ABSENT):
            changed.append(key)
    return changed


def value_changed(old: Mapping[str, Any], new: Mapping[str, Any], key: str) -> bool:
    return old.get(key, ABSENT) != new.get(key, ABSENT)


def to_float(value: Any) -> Optional[float]:
    if value is None or value is ABSENT or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    if size <= 0:
        raise ValueError('chunk size must be positive')
    return [items[i:i + size] for i in range(0, len(items), size)]
