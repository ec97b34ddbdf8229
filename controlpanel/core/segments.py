"""
Dependency Aggregate-State Deriver.

Composite tasks are drawn as a tree of segments built from the static
``dependsOn`` declarations. Each segment shows a derived state computed
bottom-up from its own live state and the derived states of everything
beneath it.

Priority: error > running (shown as 'descendant-running') > success > idle

Traversals use an explicit stack instead of recursion. A dependency whose
key is already on the current path is a cycle; that edge is skipped (and
logged) so malformed definitions cannot loop forever.
"""

import logging
from typing import Callable, Dict, List, Literal, Optional, Set, Tuple

from controlpanel.core.store import TaskDefinition, TaskKey, TaskRuntimeState, TaskStore

logger = logging.getLogger(__name__)

SegmentState = Literal["idle", "running", "success", "error", "descendant-running"]
StateLookup = Callable[[TaskKey], str]


def direct_state(state: Optional[TaskRuntimeState]) -> str:
    """
    Own state of one task, ignoring anything beneath it.

    Returns
    -------
    str
        'error' if failed, 'running' if running, 'success' if it completed
        normally, otherwise 'idle' (including absent tasks)
    """
    if state is None:
        return "idle"
    if state.failed:
        return "error"
    if state.running:
        return "running"
    if state.completed and state.state == "completed":
        return "success"
    return "idle"


def store_lookup(store: TaskStore) -> StateLookup:
    """Build a ``key -> direct state`` lookup over a store snapshot."""

    def lookup(key: TaskKey) -> str:
        return direct_state(store.get(key))

    return lookup


def combine(own_state: str, descendant_states: List[str]) -> str:
    """
    Fold a node's own state with its descendants' derived states.

    A leaf (no descendants) keeps its own state. A composite is never shown
    as plain 'running'; it gets 'descendant-running' instead.
    """
    if not descendant_states:
        return own_state
    if own_state == "error" or "error" in descendant_states:
        return "error"
    if own_state == "running" or any(
        s in ("running", "descendant-running") for s in descendant_states
    ):
        return "descendant-running"
    if all(s == "success" for s in descendant_states):
        return "success"
    return own_state


def _derive(root: TaskDefinition, lookup: StateLookup) -> Tuple[str, Dict[TaskKey, str]]:
    """
    Post-order walk computing derived states for every reachable node.

    Returns the root's derived state and a map of node key -> derived state
    (the first occurrence wins when a key appears in several branches).
    """
    derived: Dict[TaskKey, str] = {}
    # Frame: node, keys on the path to it, derived states of its subtree
    # collected so far, index of the next child to visit
    stack: List[Tuple[TaskDefinition, Set[TaskKey], List[str], List[int]]] = [
        (root, {root.key}, [], [0])
    ]
    root_state = "idle"

    while stack:
        node, path, collected, cursor = stack[-1]
        if cursor[0] < len(node.depends_on):
            child = node.depends_on[cursor[0]]
            cursor[0] += 1
            if child.key in path:
                logger.warning(f"Dependency cycle: {node.key} -> {child.key}, edge skipped")
                continue
            stack.append((child, path | {child.key}, [], [0]))
            continue

        stack.pop()
        state = combine(lookup(node.key), collected)
        derived.setdefault(node.key, state)
        if stack:
            # Parent collects this node's state and everything beneath it
            stack[-1][2].append(state)
            stack[-1][2].extend(collected)
        else:
            root_state = state

    return root_state, derived


def derive_aggregate_state(node: TaskDefinition, lookup: StateLookup) -> str:
    """
    Derive the visual state of one dependency-tree node.

    Parameters
    ----------
    node : TaskDefinition
        Tree node (its ``depends_on`` are the children)
    lookup : Callable[[str], str]
        Direct state of a task key: 'idle', 'running', 'success' or 'error'

    Returns
    -------
    str
        One of 'idle', 'running', 'success', 'error', 'descendant-running'
    """
    state, _ = _derive(node, lookup)
    return state


def derive_tree_states(node: TaskDefinition, lookup: StateLookup) -> Dict[TaskKey, str]:
    """Derived state of every node in the tree, computed in one traversal."""
    _, derived = _derive(node, lookup)
    return derived


def flatten_dependencies(node: TaskDefinition) -> List[TaskKey]:
    """
    Keys of all dependencies beneath ``node`` in depth-first declaration order.

    Each key is listed once; cyclic edges are not followed.
    """
    keys: List[TaskKey] = []
    stack = [(child, {node.key}) for child in reversed(node.depends_on)]
    while stack:
        child, path = stack.pop()
        if child.key in path:
            continue
        if child.key not in keys:
            keys.append(child.key)
        child_path = path | {child.key}
        stack.extend((grandchild, child_path) for grandchild in reversed(child.depends_on))
    return keys


def find_definition(catalog: List[TaskDefinition], key: TaskKey) -> Optional[TaskDefinition]:
    """
    Find the definition for ``key`` (by key or label) in the catalog.

    Top-level entries win over nested dependency references with the same key.
    """
    for definition in catalog:
        if definition.key == key or definition.label == key:
            return definition

    stack = list(reversed(catalog))
    seen: Set[int] = set()
    while stack:
        definition = stack.pop()
        if id(definition) in seen:
            continue
        seen.add(id(definition))
        if definition.key == key or definition.label == key:
            return definition
        stack.extend(reversed(definition.depends_on))
    return None
