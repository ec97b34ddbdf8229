"""
Dismissal cascade: remove a task group from the store in one update.
"""

import logging
from typing import List, Set

from controlpanel.core.store import TaskKey, TaskStore

logger = logging.getLogger(__name__)


def collect_removal_set(store: TaskStore, key: TaskKey) -> List[TaskKey]:
    """
    Compute every key that leaves the store when ``key`` is dismissed.

    The walk follows ``subtasks`` forward from the target, then repeatedly
    sweeps the store for entries whose ``parent_task`` is already being
    removed (placeholders that were never listed by their parent), until
    nothing new is found.

    Parameters
    ----------
    store : TaskStore
        Current snapshot
    key : str
        Dismiss target

    Returns
    -------
    List[str]
        Keys to remove in discovery order; empty when ``key`` is absent
    """
    if key not in store:
        return []

    removal: List[TaskKey] = []
    seen: Set[TaskKey] = set()
    worklist = [key]

    while True:
        # Pass 1: descendants reachable through subtasks
        while worklist:
            current = worklist.pop()
            if current in seen:
                continue
            seen.add(current)
            state = store.get(current)
            if state is None:
                continue
            removal.append(current)
            worklist.extend(reversed(state.subtasks))

        # Pass 2: entries pointing at a removed parent
        worklist = [
            child_key
            for child_key, state in store.entries()
            if child_key not in seen and state.parent_task in seen
        ]
        if not worklist:
            return removal


def dismiss(store: TaskStore, key: TaskKey) -> TaskStore:
    """
    Remove ``key`` and its whole group from the store.

    Surviving entries that still list a removed key in ``subtasks`` drop
    that link. Dismissing an absent key returns ``store`` unchanged.
    """
    removal = collect_removal_set(store, key)
    if not removal:
        return store

    removed = set(removal)
    updated = dict(store.tasks)
    for doomed in removal:
        del updated[doomed]
    for other_key, state in updated.items():
        if any(child in removed for child in state.subtasks):
            updated[other_key] = state.with_changes(
                subtasks=tuple(c for c in state.subtasks if c not in removed)
            )

    logger.debug(f"Dismissed {key}: removed {len(removal)} entries")
    return TaskStore(tasks=updated, version=store.version + 1)
