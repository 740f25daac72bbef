"""Dependency graph helpers: cycle detection, ordering and level batching."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from taskfleet.orchestrator.errors import ValidationError


def find_cycle(edges: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one dependency cycle as a list of ids, or None for a DAG.

    Edges point from a task to the tasks it depends on. Ids that only appear
    as dependencies are treated as leaves.
    """

    state: dict[str, int] = {}
    for root in edges:
        if state.get(root):
            continue
        stack: list[tuple[str, list[str]]] = [(root, list(edges.get(root, ())))]
        path = [root]
        state[root] = 1
        while stack:
            node, pending = stack[-1]
            if not pending:
                stack.pop()
                path.pop()
                state[node] = 2
                continue
            child = pending.pop()
            child_state = state.get(child, 0)
            if child_state == 1:
                return [*path[path.index(child) :], child]
            if child_state == 0:
                state[child] = 1
                path.append(child)
                stack.append((child, list(edges.get(child, ()))))
    return None


def topological_order(edges: Mapping[str, Iterable[str]]) -> list[str]:
    """Order ids so that every id comes after its in-set dependencies."""

    ordered: list[str] = []
    for level in dependency_levels(edges):
        ordered.extend(level)
    return ordered


def dependency_levels(edges: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Group ids into topological batches.

    Level 0 holds ids with no in-set dependency, level ``n`` holds ids whose
    deepest in-set dependency sits in level ``n - 1``. Dependencies outside
    the mapping are considered already satisfied. Input order is preserved
    inside each level.
    """

    cycle = find_cycle(edges)
    if cycle is not None:
        raise ValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")

    levels_by_id: dict[str, int] = {}

    def _level(node: str) -> int:
        if node in levels_by_id:
            return levels_by_id[node]
        parents = [dep for dep in edges.get(node, ()) if dep in edges]
        value = 0 if not parents else 1 + max(_level(dep) for dep in parents)
        levels_by_id[node] = value
        return value

    for node in edges:
        _level(node)

    levels: list[list[str]] = []
    for node in edges:
        value = levels_by_id[node]
        while len(levels) <= value:
            levels.append([])
        levels[value].append(node)
    return levels
