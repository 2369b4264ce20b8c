"""
Mention classification heuristics.
Keyword based and lossy: a best-effort hint of whether a mention asks something of the person.
"""
import re
from normalize.models import MentionCategory

ACTIONABLE_KEYWORDS = (
    'please', 'can you', 'could you', 'review', 'approve',
    'check', 'verify', 'update', 'fix', 'status', 'what is', 'when',
)

FYI_KEYWORDS = (
    'fyi', 'cc:', 'cc ', 'copying', 'adding',
    'heads up', 'for info', 'just to note',
)

# shorter than this once @-mentions are stripped reads as a plain CC
SHORT_TEXT_LENGTH = 10

_AT_MENTION = re.compile(r"@[a-z\s]+")


def classify_mention(text: str) -> str:
    """Return MentionCategory.ACTIONABLE, FYI or DISCUSSION for cleaned comment text."""
    text = text or ''
    lower = text.lower()
    if '?' in text:
        return MentionCategory.ACTIONABLE
    if any(k in lower for k in ACTIONABLE_KEYWORDS):
        return MentionCategory.ACTIONABLE
    if any(k in lower for k in FYI_KEYWORDS):
        return MentionCategory.FYI
    if len(_AT_MENTION.sub('', lower).strip()) < SHORT_TEXT_LENGTH:
        return MentionCategory.FYI
    return MentionCategory.DISCUSSION
