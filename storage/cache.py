"""
Connection cache: reusable authenticated HTTP sessions keyed by endpoint + credentials.
Passed explicitly into clients so there is no process-wide connection state; invalidate() or clear()
drops sessions when configuration or credentials change.
"""

import hashlib
import threading
import time
from typing import Any, Dict, Optional, Tuple
import requests


def _credential_fingerprint(token: Optional[str]) -> str:
    if not token:
        return 'anonymous'
    return hashlib.sha256(token.encode('utf-8')).hexdigest()[:16]


class ConnectionCache:
    def __init__(self, accept: str = 'application/json'):
        self.accept = accept
        self._sessions: Dict[Tuple[str, str], Dict[str, Any]] = {}
        # sessions are handed to worker threads by the async stages
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(base_url: str, token: Optional[str]) -> Tuple[str, str]:
        return (base_url.rstrip('/').lower(), _credential_fingerprint(token))

    def _new_session(self, token: Optional[str]) -> requests.Session:
        session = requests.Session()
        session.headers.update({'Accept': self.accept, 'Content-Type': 'application/json'})
        if token:
            session.headers['Authorization'] = f"Bearer {token}"
        return session

    def get(self, base_url: str, token: Optional[str]) -> requests.Session:
        """Return the cached session for this endpoint + credential, creating it on first use."""
        key = self.make_key(base_url, token)
        with self._lock:
            entry = self._sessions.get(key)
            if entry is not None:
                self.hits += 1
                return entry['session']
            self.misses += 1
            session = self._new_session(token)
            self._sessions[key] = {'session': session, 'created': time.time()}
            return session

    def invalidate(self, base_url: str, token: Optional[str]) -> bool:
        """Drop one cached session. Returns True if something was removed."""
        key = self.make_key(base_url, token)
        with self._lock:
            entry = self._sessions.pop(key, None)
        if entry is None:
            return False
        entry['session'].close()
        return True

    def clear(self):
        with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()
        for entry in entries:
            entry['session'].close()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            created = [e['created'] for e in self._sessions.values()]
            return {
                'count': len(self._sessions),
                'hits': self.hits,
                'misses': self.misses,
                'oldest': min(created) if created else None,
                'newest': max(created) if created else None,
            }

    def close(self):
        self.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __len__(self):
        with self._lock:
            return len(self._sessions)


__all__ = ["ConnectionCache"]
