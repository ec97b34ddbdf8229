"""
Parent/child resolution for runtime subtasks.

Start and attach events can arrive in any order. These helpers keep each
parent's ``subtasks`` list and each child's ``parent_task`` back-reference
consistent from whichever side shows up first. All functions are pure:
they take a ``TaskStore`` and return a new one.
"""

import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from controlpanel.core.store import FailedSubtask, TaskKey, TaskRuntimeState, TaskStore

logger = logging.getLogger(__name__)


def merge_keys(*groups: Iterable[TaskKey]) -> Tuple[TaskKey, ...]:
    """Concatenate key groups, dropping duplicates and keeping first positions."""
    merged = []
    for group in groups:
        for key in group:
            if key not in merged:
                merged.append(key)
    return tuple(merged)


def is_placeholder(state: TaskRuntimeState) -> bool:
    """True for a child entry created by an attach before its own start."""
    return state.state == "waiting" and not state.running and not state.completed


def find_running_parent(store: TaskStore, key: TaskKey) -> Optional[TaskKey]:
    """
    Find the first running entry whose ``subtasks`` contains ``key``.

    Entries are scanned in store insertion order, so the earliest attached
    parent wins a tie. Parents that are not running are skipped: a child
    must never be re-attached to a finished group still awaiting dismissal.
    """
    for parent_key, state in store.entries():
        if parent_key == key:
            continue
        if state.running and key in state.subtasks:
            return parent_key
    return None


def resolve_parent(
    store: TaskStore,
    key: TaskKey,
    explicit: Optional[TaskKey] = None,
    existing: Optional[TaskRuntimeState] = None,
) -> Optional[TaskKey]:
    """
    Decide the parent of a task that is (re)starting.

    Resolution order
    ----------------
    1. ``explicit`` parent named on the event
    2. ``parent_task`` recorded on an existing placeholder, or on an
       earlier run whose parent is still running
    3. first running entry listing ``key`` in its ``subtasks``

    A back-reference to a finished parent is stale and is not reused.
    """
    if explicit and explicit != key:
        return explicit
    if existing is not None and existing.parent_task and existing.parent_task != key:
        recorded = store.get(existing.parent_task)
        if is_placeholder(existing) or (recorded is not None and recorded.running):
            return existing.parent_task
    return find_running_parent(store, key)


def attach_child(store: TaskStore, parent_key: TaskKey, child_key: TaskKey) -> TaskStore:
    """
    Ensure ``parent_key`` lists ``child_key``; no-op when the parent is absent.

    A missing parent stays missing here: the link is healed when that
    parent's own start or attach event arrives.
    """
    parent = store.get(parent_key)
    if parent is None or child_key in parent.subtasks or child_key == parent_key:
        return store
    return store.set(parent_key, parent.with_changes(subtasks=parent.subtasks + (child_key,)))


def adopt_children(store: TaskStore, parent_key: TaskKey, children: Iterable[TaskKey]) -> TaskStore:
    """
    Point existing, unparented child entries back at ``parent_key``.

    Children already claimed by another parent keep that parent.
    """
    for child_key in children:
        child = store.get(child_key)
        if child is None or child.parent_task or child_key == parent_key:
            continue
        logger.debug(f"Adopting {child_key} under {parent_key}")
        store = store.set(child_key, child.with_changes(parent_task=parent_key))
    return store


def link(store: TaskStore, key: TaskKey) -> TaskStore:
    """
    Make both directions of ``key``'s hierarchy agree after it changed.

    Adds ``key`` to its parent's ``subtasks`` and claims any of its listed
    children that have no parent yet.
    """
    state = store.get(key)
    if state is None:
        return store
    if state.parent_task:
        store = attach_child(store, state.parent_task, key)
    return adopt_children(store, key, state.subtasks)


def rekey(store: TaskStore, aliases: Mapping[TaskKey, TaskKey]) -> TaskStore:
    """
    Move entries stored under an alias to their canonical key.

    Used when a catalog arrives after events that referenced a task by
    label. Every ``subtasks``, ``parent_task``, ``failed_subtasks`` and
    ``failed_dependency`` reference is rewritten in the same update. When
    both the alias and the canonical key have entries, the canonical entry
    is kept and the alias entry's subtasks are merged into it.

    Parameters
    ----------
    store : TaskStore
        Current snapshot
    aliases : Mapping[str, str]
        Old key -> canonical key

    Returns
    -------
    TaskStore
        New store with version + 1, or ``store`` when no key changes
    """
    aliases = {old: new for old, new in aliases.items() if new and new != old}
    if not any(key in aliases for key in store):
        return store

    def canonical(key: Optional[TaskKey]) -> Optional[TaskKey]:
        return aliases.get(key, key) if key else key

    updated: Dict[TaskKey, TaskRuntimeState] = {}
    for key, state in store.entries():
        new_key = canonical(key)
        failed: Dict[TaskKey, FailedSubtask] = {}
        for record in state.failed_subtasks:
            child = canonical(record.key)
            failed[child] = FailedSubtask(key=child, exit_code=record.exit_code)
        parent = canonical(state.parent_task)
        state = state.with_changes(
            subtasks=tuple(c for c in merge_keys(map(canonical, state.subtasks)) if c != new_key),
            parent_task=parent if parent != new_key else None,
            failed_subtasks=tuple(failed.values()),
            failed_dependency=canonical(state.failed_dependency),
        )

        kept = updated.get(new_key)
        if kept is None:
            updated[new_key] = state
        elif key == new_key:
            # Canonical entry replaces an alias entry seen earlier
            updated[new_key] = state.with_changes(subtasks=merge_keys(state.subtasks, kept.subtasks))
        else:
            updated[new_key] = kept.with_changes(subtasks=merge_keys(kept.subtasks, state.subtasks))
        if key != new_key:
            logger.debug(f"Re-keyed {key} -> {new_key}")

    return TaskStore(tasks=updated, version=store.version + 1)
