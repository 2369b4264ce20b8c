"""
Retry/backoff and rate-limit-aware HTTP GET helper.
All remote calls of the work-tracking client go through get_with_retries().

Timeouts are deliberately not retried: a stalled request is reported back to the caller, which decides
whether to stop (the revision feed stops paginating on a timeout).
"""

import email.utils
import logging
import os
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import requests

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
# - REVSCAN_MAX_RETRIES: int
# - REVSCAN_BACKOFF_BASE: float (seconds)
# - REVSCAN_BACKOFF_JITTER: float (seconds); defaults to the backoff base when unset
# - REVSCAN_MAX_BACKOFF: float (seconds)
DEFAULT_MAX_RETRIES = int(os.getenv("REVSCAN_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("REVSCAN_BACKOFF_BASE", "0.5"))
_env_jitter = os.getenv("REVSCAN_BACKOFF_JITTER")
DEFAULT_BACKOFF_JITTER = float(_env_jitter) if _env_jitter else None
DEFAULT_MAX_BACKOFF = float(os.getenv("REVSCAN_MAX_BACKOFF", "120.0"))

# a single wait never exceeds this, whatever the server asks for
MAX_SINGLE_WAIT = 300.0

# runtime-overrides (set from the CLI)
_runtime: Dict[str, Optional[float]] = {
    'max_retries': None,
    'backoff_base': None,
    'backoff_jitter': None,
    'max_backoff': None,
}


def configure_retry(
    max_retries: Optional[int] = None, backoff_base: Optional[float] = None, backoff_jitter: Optional[float] = None, max_backoff: Optional[float] = None
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI). None leaves a knob unchanged."""
    if max_retries is not None:
        if int(max_retries) < 1:
            raise ValueError('max_retries must be at least 1')
        _runtime['max_retries'] = int(max_retries)
    if backoff_base is not None:
        _runtime['backoff_base'] = float(backoff_base)
    if backoff_jitter is not None:
        _runtime['backoff_jitter'] = float(backoff_jitter)
    if max_backoff is not None:
        _runtime['max_backoff'] = float(max_backoff)


def reset_retry_configuration():
    for k in _runtime:
        _runtime[k] = None


def _effective_settings() -> Tuple[int, float, float, float]:
    max_retries = int(_runtime['max_retries'] or DEFAULT_MAX_RETRIES)
    base = _runtime['backoff_base'] if _runtime['backoff_base'] is not None else DEFAULT_BACKOFF_BASE
    if _runtime['backoff_jitter'] is not None:
        jitter = _runtime['backoff_jitter']
    elif DEFAULT_BACKOFF_JITTER is not None:
        jitter = DEFAULT_BACKOFF_JITTER
    else:
        jitter = base
    max_backoff = _runtime['max_backoff'] if _runtime['max_backoff'] is not None else DEFAULT_MAX_BACKOFF
    return max_retries, float(base), float(jitter), float(max_backoff)


def _parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    if not raw_ra:
        return None
    try:
        return float(raw_ra)
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _header_number(headers, key: str, cast):
    val = headers.get(key)
    if val is None:
        return None
    try:
        return cast(val)
    except (TypeError, ValueError):
        return None


def _rate_limit_hints(resp) -> Tuple[Optional[float], Optional[int], Optional[float]]:
    headers = getattr(resp, 'headers', None) or {}
    return (
        _parse_retry_after(headers.get('Retry-After')),
        _header_number(headers, 'X-RateLimit-Remaining', int),
        _header_number(headers, 'X-RateLimit-Reset', float),
    )


def _should_retry(status_code: int, retry_after: Optional[float], remaining: Optional[int]) -> bool:
    if status_code in (429, 503):
        return True
    if retry_after is not None:
        return True
    return remaining is not None and remaining <= 0


def _wait_seconds(retry_after: Optional[float], reset_at: Optional[float], backoff: float, jitter: float) -> float:
    if retry_after is not None:
        wait = retry_after
    elif reset_at:
        wait = max(0.0, reset_at - time.time())
    else:
        wait = backoff
    return min(wait + random.uniform(0, jitter), MAX_SINGLE_WAIT)


def _body(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, 'text', None)


def _result(response: Any, status: int, timed_out: bool = False) -> Dict[str, Any]:
    return {'response': response, 'status': status, 'timestamp': time.time(), 'timed_out': timed_out}


def get_with_retries(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    session: Optional[requests.Session] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    sleep=time.sleep,
) -> Dict[str, Any]:
    """Perform a GET with retries on throttling and transport errors.

    Returns {'response', 'status', 'timestamp', 'timed_out'}; status 0 means no HTTP response was received.
    """
    max_retries, base, jitter, max_backoff = _effective_settings()
    getter = session.get if session is not None else requests.get
    backoff = base
    last = _result(None, 0)

    for attempt in range(max_retries):
        try:
            resp = getter(url, params=params or {}, headers=headers or {}, timeout=timeout)
        except requests.Timeout as ex:
            logger.debug(f"GET {url} timed out after {timeout}s: {ex}")
            return _result(str(ex), 0, timed_out=True)
        except requests.RequestException as ex:
            logger.debug(f"GET {url} failed (attempt {attempt + 1}/{max_retries}): {ex}")
            last = _result(str(ex), 0)
            if attempt + 1 < max_retries:
                sleep(min(backoff + random.uniform(0, jitter), max_backoff))
            backoff = min(backoff * 2, max_backoff)
            continue

        status = getattr(resp, 'status_code', 0)
        if status == 200:
            return _result(_body(resp), status)

        retry_after, remaining, reset_at = _rate_limit_hints(resp)
        if not _should_retry(status, retry_after, remaining):
            return _result(_body(resp), status)

        last = _result(getattr(resp, 'text', None), status)
        if attempt + 1 < max_retries:
            wait = _wait_seconds(retry_after, reset_at, backoff, jitter)
            logger.debug(f"GET {url} throttled with {status}; retrying in {wait:.1f}s")
            sleep(wait)
        backoff = min(backoff * 2, max_backoff)

    return last


__all__ = ["configure_retry", "reset_retry_configuration", "get_with_retries"]
