"""
Work-item field reference names and snapshot construction.
"""
from typing import Any, Mapping, Optional
from normalize.models import EntitySnapshot
from normalize.util import field_text

ID = 'System.Id'
REV = 'System.Rev'
TITLE = 'System.Title'
WORK_ITEM_TYPE = 'System.WorkItemType'
STATE = 'System.State'
AREA_PATH = 'System.AreaPath'
ITERATION_PATH = 'System.IterationPath'
ASSIGNED_TO = 'System.AssignedTo'
CHANGED_BY = 'System.ChangedBy'
CHANGED_DATE = 'System.ChangedDate'
TAGS = 'System.Tags'
BOARD_COLUMN = 'System.BoardColumn'
STORY_POINTS = 'Microsoft.VSTS.Scheduling.StoryPoints'
PRIORITY = 'Microsoft.VSTS.Common.Priority'
COMPLETED_WORK = 'Microsoft.VSTS.Scheduling.CompletedWork'
REMAINING_WORK = 'Microsoft.VSTS.Scheduling.RemainingWork'
ORIGINAL_ESTIMATE = 'Microsoft.VSTS.Scheduling.OriginalEstimate'
DESCRIPTION = 'System.Description'
ACCEPTANCE_CRITERIA = 'Microsoft.VSTS.Common.AcceptanceCriteria'
REPRO_STEPS = 'Microsoft.VSTS.TCM.ReproSteps'

# change every revision without saying anything about the work itself
BOOKKEEPING_FIELDS = frozenset({
    REV,
    CHANGED_DATE,
    CHANGED_BY,
    'System.Watermark',
    'System.AuthorizedDate',
    'System.AuthorizedAs',
    'System.RevisedDate',
    'System.PersonId',
})

DEFAULT_PROJECTION = [
    ID, REV, CHANGED_DATE, CHANGED_BY,
    TITLE, WORK_ITEM_TYPE, STATE, AREA_PATH, ITERATION_PATH, ASSIGNED_TO,
    TAGS, BOARD_COLUMN, STORY_POINTS, PRIORITY,
    COMPLETED_WORK, REMAINING_WORK, ORIGINAL_ESTIMATE,
]

DEFAULT_DETAIL_FIELDS = [DESCRIPTION, ACCEPTANCE_CRITERIA, REPRO_STEPS]

_SNAPSHOT_FIELDS = {
    'title': TITLE,
    'entity_type': WORK_ITEM_TYPE,
    'state': STATE,
    'area_path': AREA_PATH,
    'assigned_to': ASSIGNED_TO,
    'iteration_path': ITERATION_PATH,
    'tags': TAGS,
    'story_points': STORY_POINTS,
    'priority': PRIORITY,
    'completed_work': COMPLETED_WORK,
}


def build_snapshot(fields: Mapping[str, Any], fallback: Optional[Mapping[str, Any]] = None) -> EntitySnapshot:
    """Snapshot of an entity from one revision's fields; keys missing there are taken from fallback."""
    values = {}
    for attr, name in _SNAPSHOT_FIELDS.items():
        source = fields if name in fields or not fallback else fallback
        values[attr] = field_text(source, name)
    return EntitySnapshot(**values)
