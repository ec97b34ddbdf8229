"""
Duration Aggregator for the Control Panel.

This module turns the host's execution history into per-task duration
estimates and derives the progress figures the running-task views show.

The aggregator:
1. Groups history records by task key
2. Averages the most recent successful durations (bounded window)
3. Lets a live, host-supplied estimate override the local average
4. Computes capped progress for running tasks (100% is terminal-only)
5. Rebuilds the historical parent/child call tree from history records
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from controlpanel.core.store import ExecutionRecord, TaskKey, TaskRuntimeState

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10

# Running progress never reaches 100 until a terminal event arrives
MAX_RUNNING_PROGRESS = 99.0

# Placeholder fill for running tasks with no estimate (rendered indeterminate)
INDETERMINATE_PROGRESS = 35.0

# A child run may start up to this many ms before its parent run is
# recorded as started (host timestamps are taken on separate events)
PARENT_MATCH_SLACK_MS = 5000


@dataclass(frozen=True)
class ProgressInfo:
    """Progress percentage (0-100) and whether it is only a placeholder."""

    progress: float
    indeterminate: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {"progress": self.progress, "indeterminate": self.indeterminate}


@dataclass
class HistoryNode:
    """A history record with the child runs it spawned."""

    record: ExecutionRecord
    children: List["HistoryNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        data = self.record.to_dict()
        data["duration_text"] = (
            format_duration(self.record.duration) if self.record.duration is not None else None
        )
        data["children"] = [child.to_dict() for child in self.children]
        return data


def build_task_history_map(
    history: Iterable[ExecutionRecord], window: int = DEFAULT_HISTORY_WINDOW
) -> Dict[TaskKey, float]:
    """
    Average the recent successful run durations for each task.

    Parameters
    ----------
    history : Iterable[ExecutionRecord]
        Execution log, most recent first
    window : int
        Number of successful runs averaged per task (default 10)

    Returns
    -------
    Dict[str, float]
        Task key -> average duration in milliseconds. Tasks without a single
        successful run with a recorded duration are absent.
    """
    by_task: Dict[TaskKey, List[float]] = defaultdict(list)
    for record in history:
        if record.failed or record.duration is None:
            continue
        durations = by_task[record.task_key]
        if len(durations) < window:
            durations.append(record.duration)

    return {
        key: sum(durations) / len(durations)
        for key, durations in by_task.items()
        if durations
    }


def resolve_avg_duration(
    key: TaskKey,
    state: Optional[TaskRuntimeState],
    history_map: Mapping[TaskKey, float],
) -> Optional[float]:
    """
    Pick the duration estimate for a task.

    A positive ``avg_duration`` carried on the live state (host-side rolling
    average) wins over the locally computed history average.
    """
    if state is not None and state.avg_duration is not None and state.avg_duration > 0:
        return state.avg_duration
    return history_map.get(key)


def calculate_progress(elapsed: float, avg_duration: Optional[float]) -> float:
    """
    Estimate running progress from elapsed time and the average duration.

    Returns
    -------
    float
        ``min(elapsed / avg_duration * 100, 99)``; 0 without a usable estimate
    """
    if not avg_duration or avg_duration <= 0:
        return 0.0
    return min(max(elapsed, 0) / avg_duration * 100, MAX_RUNNING_PROGRESS)


def progress_info(
    state: Optional[TaskRuntimeState],
    now: float,
    avg_duration: Optional[float] = None,
) -> ProgressInfo:
    """
    Progress for one task at time ``now`` (epoch ms).

    Terminal runs report 100; idle or stopped tasks 0; running tasks without
    an estimate a fixed indeterminate value; otherwise the capped estimate.
    """
    if state is None:
        return ProgressInfo(0.0)
    if state.failed or (state.completed and state.state == "completed"):
        return ProgressInfo(100.0)
    if not state.running or state.start_time is None:
        return ProgressInfo(0.0)

    estimate = avg_duration if avg_duration is not None else state.avg_duration
    if not estimate or estimate <= 0:
        return ProgressInfo(INDETERMINATE_PROGRESS, indeterminate=True)
    return ProgressInfo(calculate_progress(now - state.start_time, estimate))


def format_runtime(ms: float) -> str:
    """Format elapsed runtime: '1h 2m', '3m 4s' or '5s'."""
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_duration(ms: float) -> str:
    """Format a finished run's duration: '950ms', '1.5s' or '2m 3s'."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60000)
    seconds = int((ms % 60000) // 1000)
    return f"{minutes}m {seconds}s"


def _spawned(parent: ExecutionRecord, child: ExecutionRecord) -> bool:
    """True if ``child`` is a listed child run inside ``parent``'s window."""
    return (
        parent is not child
        and child.task_key in parent.child_labels
        and parent.start_time is not None
        and parent.end_time is not None
        and child.start_time is not None
        and parent.start_time - PARENT_MATCH_SLACK_MS <= child.start_time <= parent.end_time
    )


def _has_parent_run(record: ExecutionRecord, history: Sequence[ExecutionRecord]) -> bool:
    return any(_spawned(other, record) for other in history)


def _child_runs(
    record: ExecutionRecord, history: Sequence[ExecutionRecord]
) -> List[ExecutionRecord]:
    return [other for other in history if _spawned(record, other)]


def build_history_tree(history: Sequence[ExecutionRecord]) -> List[HistoryNode]:
    """
    Rebuild the historical call tree from execution records.

    Parameters
    ----------
    history : Sequence[ExecutionRecord]
        Execution log, most recent first

    Returns
    -------
    List[HistoryNode]
        Root runs in log order, each with nested child runs. A run is a
        child only when a parent run lists its task in ``child_labels`` and
        it started inside that run's window; every other run is a root,
        even when its ``parent_label`` names a task with runs in the log.
        Runs only reachable through a cycle of child labels become roots
        too, and a record never appears twice on one path.
    """
    roots: List[HistoryNode] = []
    placed: Set[int] = set()
    pending = [record for record in history if not _has_parent_run(record, history)]

    while True:
        stack = []
        for record in pending:
            node = HistoryNode(record)
            roots.append(node)
            placed.add(id(record))
            stack.append((node, frozenset({record.id})))
        while stack:
            node, path = stack.pop()
            for child_record in _child_runs(node.record, history):
                if child_record.id in path:
                    continue
                child = HistoryNode(child_record)
                node.children.append(child)
                placed.add(id(child_record))
                stack.append((child, path | {child_record.id}))

        unplaced = [record for record in history if id(record) not in placed]
        if not unplaced:
            break
        pending = unplaced[:1]

    logger.debug(f"Built history tree: {len(roots)} roots from {len(history)} records")
    return roots

