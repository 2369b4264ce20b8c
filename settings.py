"""
Run configuration.
Built-in defaults, overlaid by an optional YAML file, then by REVSCAN_* environment variables.
CLI flags are applied last by the caller.
"""
import logging
import os
from typing import Any, Dict, List, Optional
import yaml
from normalize import fields as wf

logger = logging.getLogger(__name__)

# filename used for the YAML configuration
SETTINGS_FILENAME = 'activity.yaml'

DEFAULT_SETTINGS: Dict[str, Any] = {
    'organization': '',
    'project': '',
    'base_url': 'https://dev.azure.com',
    'page_timeout': 60.0,
    'request_timeout': 60.0,
    'enrichment_batch_size': 20,
    'relation_batch_size': 200,
    'relation_concurrency': 10,
    'max_in_flight': 20,
    'progress_every': 10000,
    'field_projection': list(wf.DEFAULT_PROJECTION),
    'detail_fields': list(wf.DEFAULT_DETAIL_FIELDS),
    'state_field': wf.STATE,
    'assignment_field': wf.ASSIGNED_TO,
    'effort_field': wf.COMPLETED_WORK,
    'terminal_states': ['Closed', 'Resolved'],
    'max_plausible_year': 3000,
}

# environment variable -> (setting key, converter)
ENV_OVERRIDES = {
    'REVSCAN_ORG': ('organization', str),
    'REVSCAN_PROJECT': ('project', str),
    'REVSCAN_BASE_URL': ('base_url', str),
    'REVSCAN_PAGE_TIMEOUT': ('page_timeout', float),
}

_INT_KEYS = ('enrichment_batch_size', 'relation_batch_size', 'relation_concurrency', 'max_in_flight', 'progress_every', 'max_plausible_year')
_FLOAT_KEYS = ('page_timeout', 'request_timeout')
_LIST_KEYS = ('field_projection', 'detail_fields', 'terminal_states')


def default_settings_path() -> str:
    return os.path.join(os.path.dirname(__file__), 'config', SETTINGS_FILENAME)


def _coerce(key: str, value: Any) -> Any:
    if key in _INT_KEYS:
        return int(value)
    if key in _FLOAT_KEYS:
        return float(value)
    if key in _LIST_KEYS:
        if isinstance(value, str):
            return [v.strip() for v in value.split(',') if v.strip()]
        return [str(v) for v in value]
    return value


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Load settings from a YAML file if available, otherwise return defaults; environment wins over both.
    An explicitly given path that does not exist raises ValueError. Unknown keys are ignored.
    """
    explicit = path is not None
    if not path:
        path = default_settings_path()
    settings = {k: (list(v) if isinstance(v, list) else v) for k, v in DEFAULT_SETTINGS.items()}

    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                doc = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as ex:
            raise ValueError(f"Failed to load settings from {path}: {ex}")
        if not isinstance(doc, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        for k, v in doc.items():
            if k not in DEFAULT_SETTINGS:
                logger.warning(f"Ignoring unknown setting '{k}' in {path}")
                continue
            if v is None:
                continue
            try:
                settings[k] = _coerce(k, v)
            except (TypeError, ValueError) as ex:
                raise ValueError(f"Invalid value for '{k}' in {path}: {ex}")
    elif explicit:
        raise ValueError(f"Settings file not found at: {path}")

    env = os.environ if env is None else env
    for var, (key, conv) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw:
            try:
                settings[key] = conv(raw)
            except ValueError as ex:
                raise ValueError(f"Invalid value for {var}: {ex}")
    return settings


def resolve_token(cli_token: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Optional[str]:
    """CLI token wins, then REVSCAN_TOKEN."""
    if cli_token:
        return cli_token
    env = os.environ if env is None else env
    return env.get('REVSCAN_TOKEN') or None


def apply_overrides(settings: Dict[str, Any], **overrides) -> Dict[str, Any]:
    """Return a copy with every non-None override applied."""
    merged = dict(settings)
    for k, v in overrides.items():
        if v is None:
            continue
        merged[k] = _coerce(k, v)
    return merged


def missing_required(settings: Dict[str, Any]) -> List[str]:
    return [k for k in ('organization', 'project') if not settings.get(k)]
