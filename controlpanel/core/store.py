"""
Immutable Data Models for the Control Panel task state.

This module defines the snapshot-based structures that every other part of
the engine reads. The reducer is the only writer, and it never edits a
snapshot in place: each update produces a new ``TaskStore``.

Key principles:
- ALL timestamps and durations are epoch/elapsed milliseconds (host format)
- ALL records are frozen (replace, never mutate)
- Store iteration order is insertion order (used for parent tie-breaks)
- Absent numbers stay ``None``; nothing is coerced to 0
"""

import json
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Tuple

TaskKey = str

TaskPhase = Literal[
    "starting", "running", "stopping", "stopped", "completed", "failed", "waiting"
]
TASK_PHASES = (
    "starting",
    "running",
    "stopping",
    "stopped",
    "completed",
    "failed",
    "waiting",
)


def to_number(value: Any) -> Optional[float]:
    """
    Coerce a wire value to a number, keeping "missing" distinct from zero.

    Parameters
    ----------
    value : Any
        Raw value from a host message

    Returns
    -------
    Optional[float]
        The value as int/float, or None when absent or not numeric
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def to_int(value: Any) -> Optional[int]:
    """Coerce an exit code; None when absent or not numeric."""
    number = to_number(value)
    return int(number) if number is not None else None


@dataclass(frozen=True)
class FailedSubtask:
    """A child that ended with a failure while attached to a parent."""

    key: TaskKey
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class TaskRuntimeState:
    """
    Live state of one currently-or-recently active task.

    Parameters
    ----------
    running : bool
        Task is executing on the host
    completed : bool
        Task reached a terminal state (stopped, completed or failed)
    failed : bool
        Terminal state was a failure
    state : str
        Informational substate, one of ``TASK_PHASES``
    start_time : Optional[float]
        Epoch milliseconds when the run started
    duration : Optional[float]
        Run duration in milliseconds, set once terminal
    avg_duration : Optional[float]
        Host-supplied duration estimate in milliseconds
    is_first_run : bool
        No previous successful run is known
    subtasks : Tuple[str, ...]
        Children attached at runtime, no duplicates
    parent_task : Optional[str]
        Back-reference to the parent whose ``subtasks`` lists this task
    failed_subtasks : Tuple[FailedSubtask, ...]
        Children that ended with a failure
    exit_code : Optional[int]
        Process exit code of a failed run
    failure_reason : Optional[str]
        Human-readable failure reason
    failed_dependency : Optional[str]
        Dependency whose failure stopped this task
    can_stop : bool
        Host allows stopping this task
    can_focus : bool
        Host has a terminal to focus for this task
    execution : Any
        Opaque host payload carried through unchanged
    """

    running: bool = False
    completed: bool = False
    failed: bool = False
    state: TaskPhase = "running"

    # Timing (milliseconds)
    start_time: Optional[float] = None
    duration: Optional[float] = None
    avg_duration: Optional[float] = None
    is_first_run: bool = False

    # Hierarchy
    subtasks: Tuple[TaskKey, ...] = ()
    parent_task: Optional[TaskKey] = None
    failed_subtasks: Tuple[FailedSubtask, ...] = ()

    # Failure details
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    failed_dependency: Optional[TaskKey] = None

    # Host capabilities
    can_stop: bool = True
    can_focus: bool = True

    execution: Any = field(default=None, compare=False)

    def with_changes(self, **changes: Any) -> "TaskRuntimeState":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary (host field names)."""
        return {
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "state": self.state,
            "startTime": self.start_time,
            "duration": self.duration,
            "avgDuration": self.avg_duration,
            "isFirstRun": self.is_first_run,
            "subtasks": list(self.subtasks),
            "parentTask": self.parent_task,
            "failedSubtasks": [
                {"key": f.key, "exitCode": f.exit_code} for f in self.failed_subtasks
            ],
            "exitCode": self.exit_code,
            "failureReason": self.failure_reason,
            "failedDependency": self.failed_dependency,
            "canStop": self.can_stop,
            "canFocus": self.can_focus,
        }


@dataclass(frozen=True)
class TaskDefinition:
    """
    Host task definition, read-only to the engine.

    Parameters
    ----------
    key : str
        Canonical key (host id, falling back to label)
    label : str
        Task label
    display_label : str
        Label shown to users
    source : str
        Provider of the task (e.g. 'npm', 'shell', 'Workspace')
    depends_on : Tuple[TaskDefinition, ...]
        Author-declared dependencies, in declaration order
    depends_order : str
        'parallel' or 'sequence'
    task_id : Optional[str]
        Host id when the host assigned one
    """

    key: TaskKey
    label: str
    display_label: str = ""
    source: str = ""
    depends_on: Tuple["TaskDefinition", ...] = ()
    depends_order: Literal["parallel", "sequence"] = "parallel"
    task_id: Optional[str] = None
    definition: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskDefinition":
        """
        Build a definition tree from a host dictionary.

        ``dependsOn`` entries may be nested dictionaries or plain labels.
        """
        label = str(data.get("label") or data.get("id") or "")
        task_id = data.get("id") or None
        depends_on = []
        for dep in data.get("dependsOn") or []:
            if isinstance(dep, Mapping):
                depends_on.append(cls.from_dict(dep))
            elif dep:
                depends_on.append(cls(key=str(dep), label=str(dep), display_label=str(dep)))

        order = data.get("dependsOrder") or "parallel"
        return cls(
            key=str(task_id or label),
            label=label,
            display_label=str(data.get("displayLabel") or label),
            source=str(data.get("source") or ""),
            depends_on=tuple(depends_on),
            depends_order="sequence" if order == "sequence" else "parallel",
            task_id=str(task_id) if task_id else None,
            definition=data.get("definition") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary (host field names)."""
        return {
            "key": self.key,
            "id": self.task_id,
            "label": self.label,
            "displayLabel": self.display_label,
            "source": self.source,
            "dependsOn": [dep.to_dict() for dep in self.depends_on],
            "dependsOrder": self.depends_order,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    """
    One finished run from the host's append-only execution history.

    Durations and times are milliseconds. ``duration`` is None when the host
    did not record one.
    """

    id: str
    task_key: TaskKey
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None
    failed: bool = False
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    parent_label: Optional[TaskKey] = None
    child_labels: Tuple[TaskKey, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "ExecutionRecord":
        """Build a record from a host dictionary."""
        task_key = data.get("taskKey") or data.get("taskId") or data.get("taskLabel") or ""
        return cls(
            id=str(data.get("id") or f"{task_key}-{index}"),
            task_key=str(task_key),
            start_time=to_number(data.get("startTime")),
            end_time=to_number(data.get("endTime")),
            duration=to_number(data.get("duration")),
            failed=bool(data.get("failed", False)),
            exit_code=to_int(data.get("exitCode")),
            reason=data.get("reason"),
            parent_label=data.get("parentLabel") or None,
            child_labels=tuple(data.get("childLabels") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        data["child_labels"] = list(self.child_labels)
        return data


@dataclass(frozen=True)
class TaskStore:
    """
    Immutable snapshot of every tracked task, keyed by ``TaskKey``.

    Mutating operations return a new store with an incremented version;
    the receiver is left untouched, so a consumer holding an older snapshot
    never observes later changes.

    Parameters
    ----------
    tasks : Mapping[str, TaskRuntimeState]
        Entries in insertion order
    version : int
        Incrementing version number, 0 for the empty store
    """

    tasks: Mapping[TaskKey, TaskRuntimeState] = field(default_factory=dict)
    version: int = 0

    def get(self, key: TaskKey) -> Optional[TaskRuntimeState]:
        return self.tasks.get(key)

    def set(self, key: TaskKey, state: TaskRuntimeState) -> "TaskStore":
        """Return a store with ``key`` set to ``state`` (position kept on overwrite)."""
        updated = dict(self.tasks)
        updated[key] = state
        return TaskStore(tasks=updated, version=self.version + 1)

    def remove(self, *keys: TaskKey) -> "TaskStore":
        """Return a store without ``keys``; the same store if none are present."""
        doomed = {k for k in keys if k in self.tasks}
        if not doomed:
            return self
        updated = {k: v for k, v in self.tasks.items() if k not in doomed}
        return TaskStore(tasks=updated, version=self.version + 1)

    def entries(self) -> List[Tuple[TaskKey, TaskRuntimeState]]:
        return list(self.tasks.items())

    def keys(self) -> List[TaskKey]:
        return list(self.tasks.keys())

    def __contains__(self, key: object) -> bool:
        return key in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self) -> Iterator[TaskKey]:
        return iter(self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert store to JSON-serializable dictionary.

        Returns
        -------
        dict
            ``{"version": int, "tasks": {key: state}}``
        """
        return {
            "version": self.version,
            "tasks": {key: state.to_dict() for key, state in self.tasks.items()},
        }

    def to_json(self) -> str:
        """Convert store to JSON string."""
        return json.dumps(self.to_dict(), indent=2)


EMPTY_STORE = TaskStore()
