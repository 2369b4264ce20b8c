"""
Correlate package: local diffing of revision histories into attributed activity events.
"""

from .diff_engine import DiffEngine, reconstruct
from .mentions import classify_mention
from .models import ActivityReport, RunStats

__all__ = ["DiffEngine", "reconstruct", "classify_mention", "ActivityReport", "RunStats"]
