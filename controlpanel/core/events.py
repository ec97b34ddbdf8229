"""
Host lifecycle events and the wire-message boundary.

Host messages are camelCase dictionaries that may reference a task by id or
by label under several field names. ``parse_event`` resolves every reference
to one canonical ``TaskKey`` through a ``KeyResolver`` before the event
reaches the reducer, so the reducer never sees dual identities.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from controlpanel.core.store import (
    TASK_PHASES,
    TaskDefinition,
    TaskKey,
    to_int,
    to_number,
)

logger = logging.getLogger(__name__)

KEY_FIELDS = ("taskKey", "taskId", "taskLabel", "label")


class KeyResolver:
    """
    Map host references (id or label) to canonical task keys.

    A label that belongs to a catalog entry with a host id resolves to that
    id; every other reference is used as-is.
    """

    def __init__(self, definitions: Iterable[TaskDefinition] = ()):
        self._aliases: Dict[str, TaskKey] = {}
        self.update(definitions)

    def update(self, definitions: Iterable[TaskDefinition]) -> None:
        """Rebuild the alias table from a (nested) definition catalog."""
        aliases: Dict[str, TaskKey] = {}
        stack = list(definitions)
        seen = set()
        while stack:
            definition = stack.pop()
            if id(definition) in seen:
                continue
            seen.add(id(definition))
            if definition.task_id and definition.label:
                # First declaration wins for duplicated labels
                aliases.setdefault(definition.label, definition.key)
            stack.extend(definition.depends_on)
        self._aliases = aliases

    def resolve(self, ref: Any) -> Optional[TaskKey]:
        if ref is None or ref == "":
            return None
        ref = str(ref)
        return self._aliases.get(ref, ref)


@dataclass(frozen=True)
class TaskStarted:
    key: TaskKey
    start_time: Optional[float] = None
    avg_duration: Optional[float] = None
    is_first_run: bool = False
    subtasks: Tuple[TaskKey, ...] = ()
    parent_task: Optional[TaskKey] = None
    state: Optional[str] = None
    execution: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class TaskEnded:
    key: TaskKey


@dataclass(frozen=True)
class TaskCompleted:
    key: TaskKey
    failed: bool = False
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    failed_dependency: Optional[TaskKey] = None
    duration: Optional[float] = None
    parent_task: Optional[TaskKey] = None
    subtasks: Tuple[TaskKey, ...] = ()


@dataclass(frozen=True)
class TaskStateChanged:
    key: TaskKey
    state: str
    can_stop: bool = True
    can_focus: bool = True


@dataclass(frozen=True)
class SubtaskStarted:
    parent_key: TaskKey
    child_key: TaskKey
    parent_start_time: Optional[float] = None


@dataclass(frozen=True)
class SubtaskEnded:
    parent_key: TaskKey
    child_key: TaskKey
    failed: bool = False
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class DismissTaskGroup:
    key: TaskKey


TaskEvent = Union[
    TaskStarted,
    TaskEnded,
    TaskCompleted,
    TaskStateChanged,
    SubtaskStarted,
    SubtaskEnded,
    DismissTaskGroup,
]

# Message types that describe task lifecycle; everything else is handled by
# the session (catalog, mirrors, history) or ignored.
LIFECYCLE_TYPES = frozenset(
    {
        "taskStarted",
        "taskEnded",
        "taskCompleted",
        "taskFailed",
        "taskStateChanged",
        "subtaskStarted",
        "subtaskEnded",
        "dismissTaskGroup",
    }
)


def _task_ref(message: Mapping[str, Any]) -> Any:
    for name in KEY_FIELDS:
        if message.get(name):
            return message[name]
    return None


def _keys(resolver: KeyResolver, refs: Any) -> Tuple[TaskKey, ...]:
    keys = []
    for ref in refs or ():
        key = resolver.resolve(ref)
        if key and key not in keys:
            keys.append(key)
    return tuple(keys)


def parse_event(
    message: Mapping[str, Any], resolver: Optional[KeyResolver] = None
) -> Optional[TaskEvent]:
    """
    Convert one host message into a lifecycle event.

    Parameters
    ----------
    message : Mapping[str, Any]
        Raw host message with a ``type`` field
    resolver : Optional[KeyResolver]
        Catalog-aware key resolver (identity when None)

    Returns
    -------
    Optional[TaskEvent]
        The parsed event, or None for unknown types and messages missing
        the keys their type requires
    """
    resolver = resolver or KeyResolver()
    kind = message.get("type")
    if kind not in LIFECYCLE_TYPES:
        return None

    if kind in ("subtaskStarted", "subtaskEnded"):
        parent = resolver.resolve(message.get("parentKey") or message.get("parentLabel"))
        child = resolver.resolve(message.get("childKey") or message.get("childLabel"))
        if not parent or not child:
            logger.debug(f"Dropping {kind} without parent/child reference: {dict(message)}")
            return None
        if kind == "subtaskStarted":
            return SubtaskStarted(
                parent_key=parent,
                child_key=child,
                parent_start_time=to_number(message.get("parentStartTime")),
            )
        return SubtaskEnded(
            parent_key=parent,
            child_key=child,
            failed=bool(message.get("failed", False)),
            exit_code=to_int(message.get("exitCode")),
        )

    key = resolver.resolve(_task_ref(message))
    if not key:
        logger.debug(f"Dropping {kind} without task reference: {dict(message)}")
        return None

    if kind == "taskStarted":
        state = message.get("state")
        return TaskStarted(
            key=key,
            start_time=to_number(message.get("startTime")),
            avg_duration=to_number(message.get("avgDuration")),
            is_first_run=bool(message.get("isFirstRun", False)),
            subtasks=_keys(resolver, message.get("subtasks")),
            parent_task=resolver.resolve(message.get("parentTask")),
            state=state if state in TASK_PHASES else None,
            execution=message.get("execution"),
        )
    if kind == "taskEnded":
        return TaskEnded(key=key)
    if kind in ("taskCompleted", "taskFailed"):
        # taskFailed is the legacy failure-only form of taskCompleted
        failed = True if kind == "taskFailed" else bool(message.get("failed", False))
        return TaskCompleted(
            key=key,
            failed=failed,
            exit_code=to_int(message.get("exitCode")),
            reason=message.get("reason"),
            failed_dependency=resolver.resolve(message.get("failedDependency")),
            duration=to_number(message.get("duration")),
            parent_task=resolver.resolve(message.get("parentTask")),
            subtasks=_keys(resolver, message.get("subtasks")),
        )
    if kind == "taskStateChanged":
        state = message.get("state")
        if state not in TASK_PHASES:
            logger.debug(f"Dropping taskStateChanged with unknown state {state!r}")
            return None
        return TaskStateChanged(
            key=key,
            state=state,
            can_stop=message.get("canStop") is not False,
            can_focus=message.get("canFocus") is not False,
        )
    return DismissTaskGroup(key=key)
