"""
Work-tracking REST client (Azure DevOps shaped).
The only module that knows URLs, query parameters and payload shapes. Every method is blocking;
the async stages call it from worker threads.
"""

from typing import Any, Dict, List, Optional
from ingest.errors import SourceError, SourceTimeout
from normalize.util import clean_html, identity_value_to_text
from storage.cache import ConnectionCache
from storage.retry import get_with_retries

API_VERSION = '7.1'
COMMENTS_API_VERSION = '7.1-preview.4'

# the work-items endpoint accepts at most 200 ids per call
MAX_IDS_PER_CALL = 200

RELATION_TYPE_ALIASES = {
    'System.LinkTypes.Hierarchy-Reverse': 'parent',
    'System.LinkTypes.Hierarchy-Forward': 'child',
    'System.LinkTypes.Related': 'related',
    'System.LinkTypes.Dependency-Reverse': 'predecessor',
    'System.LinkTypes.Dependency-Forward': 'successor',
    'System.LinkTypes.Duplicate-Forward': 'duplicate',
    'System.LinkTypes.Duplicate-Reverse': 'duplicate',
    'Microsoft.VSTS.Common.Affects-Forward': 'affects',
    'Microsoft.VSTS.Common.Affects-Reverse': 'affects',
}


def extract_work_item_id(url: str) -> Optional[int]:
    """Work item id from a relation URL such as .../_apis/wit/workItems/1234."""
    if not url:
        return None
    tail = url.rstrip('/').rsplit('/', 1)[-1]
    return int(tail) if tail.isdigit() else None


class WorkTrackingClient:
    """Blocking client for the revision feed, comments and work-item batch endpoints."""

    def __init__(
        self,
        organization: str,
        project: str,
        token: Optional[str],
        base_url: str = 'https://dev.azure.com',
        connections: Optional[ConnectionCache] = None,
        timeout: Optional[float] = 60.0,
    ):
        self.organization = organization
        self.project = project
        self.token = token
        self.base_url = base_url.rstrip('/')
        self.connections = connections or ConnectionCache()
        self.timeout = timeout

    @property
    def project_url(self) -> str:
        return f"{self.base_url}/{self.organization}/{self.project}/_apis"

    def _get(self, url: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        session = self.connections.get(self.base_url, self.token)
        res = get_with_retries(url, params=params, session=session, timeout=timeout or self.timeout)
        if res.get('timed_out'):
            raise SourceTimeout(f"GET {url} timed out", status=0)
        status = res.get('status', 0)
        if status != 200:
            raise SourceError(f"GET {url} returned {status}: {str(res.get('response'))[:200]}", status=status)
        return res.get('response')

    # --- revision feed ---

    def get_revision_page(self, since: str, fields: List[str], continuation_token: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        """One page of the reporting revisions feed: {values, continuationToken, isLastBatch}."""
        params: Dict[str, Any] = {
            'startDateTime': since,
            'fields': ','.join(fields),
            'includeLatestOnly': 'false',
            'api-version': API_VERSION,
        }
        if continuation_token:
            params['continuationToken'] = continuation_token
        data = self._get(f"{self.project_url}/wit/reporting/workitemrevisions", params, timeout=timeout)
        if not isinstance(data, dict):
            raise SourceError('Revision feed returned a non-object payload', status=200)
        return data

    # --- comments ---

    def get_comments(self, entity_id: int) -> List[Dict[str, Any]]:
        """All comments of a work item as [{author, author_email, text, created_at}]."""
        url = f"{self.project_url}/wit/workItems/{entity_id}/comments"
        comments: List[Dict[str, Any]] = []
        token = None
        while True:
            params: Dict[str, Any] = {'api-version': COMMENTS_API_VERSION, '$top': 200}
            if token:
                params['continuationToken'] = token
            data = self._get(url, params) or {}
            for c in data.get('comments', []) or []:
                created_by = c.get('createdBy') or {}
                comments.append({
                    'author': created_by.get('displayName') or identity_value_to_text(created_by),
                    'author_email': created_by.get('uniqueName') or '',
                    'text': c.get('text') or '',
                    'created_at': c.get('createdDate') or '',
                })
            token = data.get('continuationToken')
            if not token or not data.get('comments'):
                break
        return comments

    # --- work item batches ---

    def get_work_items(self, entity_ids: List[int], fields: Optional[List[str]] = None, expand: Optional[str] = None) -> List[Dict[str, Any]]:
        if not entity_ids:
            return []
        if len(entity_ids) > MAX_IDS_PER_CALL:
            raise ValueError(f"At most {MAX_IDS_PER_CALL} ids per call, got {len(entity_ids)}")
        params: Dict[str, Any] = {
            'ids': ','.join(str(i) for i in entity_ids),
            'errorPolicy': 'omit',
            'api-version': API_VERSION,
        }
        # the endpoint rejects fields together with $expand
        if expand:
            params['$expand'] = expand
        elif fields:
            params['fields'] = ','.join(fields)
        data = self._get(f"{self.project_url}/wit/workitems", params) or {}
        # errorPolicy=omit yields null entries for missing ids
        return [item for item in (data.get('value') or []) if item]

    def get_relations(self, entity_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
        """{entity_id: [{type, target_id}]} with relation types normalised to aliases."""
        out: Dict[int, List[Dict[str, Any]]] = {}
        for item in self.get_work_items(entity_ids, expand='relations'):
            links = []
            for rel in item.get('relations') or []:
                target = extract_work_item_id(rel.get('url', ''))
                if target is None:
                    continue
                links.append({'type': RELATION_TYPE_ALIASES.get(rel.get('rel', ''), rel.get('rel', '')), 'target_id': target})
            out[int(item['id'])] = links
        return out

    def get_titles(self, entity_ids: List[int]) -> Dict[int, str]:
        items = self.get_work_items(entity_ids, fields=['System.Id', 'System.Title'])
        return {int(item['id']): str((item.get('fields') or {}).get('System.Title') or '') for item in items}

    def get_fields(self, entity_ids: List[int], fields: List[str]) -> Dict[int, Dict[str, Any]]:
        """Selected fields per entity; HTML-valued fields are returned cleaned."""
        items = self.get_work_items(entity_ids, fields=fields)
        out: Dict[int, Dict[str, Any]] = {}
        for item in items:
            raw = item.get('fields') or {}
            out[int(item['id'])] = {f: clean_html(raw.get(f)) if isinstance(raw.get(f), str) else raw.get(f) for f in fields if f in raw}
        return out


__all__ = ["WorkTrackingClient", "extract_work_item_id", "RELATION_TYPE_ALIASES"]
