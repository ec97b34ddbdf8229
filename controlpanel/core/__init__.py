"""
Core engine: store, event reducer, hierarchy, dismissal, aggregation.
"""

from controlpanel.core.events import KeyResolver, parse_event
from controlpanel.core.reducer import reduce, replay
from controlpanel.core.session import TaskSession
from controlpanel.core.store import (
    ExecutionRecord,
    FailedSubtask,
    TaskDefinition,
    TaskRuntimeState,
    TaskStore,
)

__all__ = [
    "ExecutionRecord",
    "FailedSubtask",
    "KeyResolver",
    "TaskDefinition",
    "TaskRuntimeState",
    "TaskSession",
    "TaskStore",
    "parse_event",
    "reduce",
    "replay",
]
