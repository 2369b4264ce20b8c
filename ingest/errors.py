"""
Errors raised by the ingestion layer.
"""


class SourceError(Exception):
    """A remote call failed (non-200 status or no response)."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class SourceTimeout(SourceError):
    """A remote call did not answer within its timeout."""


class RevisionStreamError(Exception):
    """The revision feed could not deliver even its first page; there is nothing to report on."""
