"""Dependency resolution: execution waves and dependency-respecting order."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence

from sequencer.errors import CircularDependencyError, UnknownDependencyError
from sequencer.tasks.models import Task, TaskKind


def _edges(tasks: Sequence[Task], completed: Iterable[str]) -> dict[str, list[str]]:
    """Map task name to its dependencies inside ``tasks``.

    Dependencies already completed in history are satisfied and dropped; a
    dependency that is neither selected nor completed is an error.
    """

    selected = {task.name for task in tasks}
    satisfied = set(completed)
    edges: dict[str, list[str]] = {}
    for task in tasks:
        inside: list[str] = []
        for dependency in task.dependencies:
            if dependency in selected:
                if dependency != task.name:
                    inside.append(dependency)
                else:
                    raise CircularDependencyError([task.name])
            elif dependency not in satisfied:
                raise UnknownDependencyError(task.name, dependency)
        edges[task.name] = inside
    return edges


def order_by_dependencies(tasks: Sequence[Task], completed: Iterable[str] = ()) -> list[Task]:
    """Stable topological order: timestamp order wherever dependencies allow it."""

    by_name = {task.name: task for task in tasks}
    edges = _edges(tasks, completed)
    in_degree = {name: len(deps) for name, deps in edges.items()}
    dependants: dict[str, list[str]] = {name: [] for name in edges}
    for name, deps in edges.items():
        for dependency in deps:
            dependants[dependency].append(name)

    ready = [(by_name[name].sort_key, name) for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[Task] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for dependant in dependants[name]:
            in_degree[dependant] -= 1
            if in_degree[dependant] == 0:
                heapq.heappush(ready, (by_name[dependant].sort_key, dependant))

    if len(ordered) != len(tasks):
        raise CircularDependencyError([name for name, degree in in_degree.items() if degree > 0])
    return ordered


def build_waves(tasks: Sequence[Task], completed: Iterable[str] = ()) -> list[list[Task]]:
    """Partition tasks into waves that may each run concurrently.

    Migrations form the first wave, in timestamp order. Operations follow in
    waves peeled by Kahn's algorithm: every task lands in a later wave than
    all of its dependencies.
    """

    completed = set(completed)
    migrations = sorted(
        (task for task in tasks if task.kind is TaskKind.MIGRATION),
        key=lambda task: task.sort_key,
    )
    operations = [task for task in tasks if task.kind is TaskKind.OPERATION]

    # migrations always run first, so operations may treat them as satisfied
    _edges(migrations, completed | {task.name for task in operations})
    satisfied = completed | {task.name for task in migrations}
    edges = _edges(operations, satisfied)

    by_name = {task.name: task for task in operations}
    in_degree = {name: len(deps) for name, deps in edges.items()}
    dependants: dict[str, list[str]] = {name: [] for name in edges}
    for name, deps in edges.items():
        for dependency in deps:
            dependants[dependency].append(name)

    waves: list[list[Task]] = [migrations] if migrations else []
    current = [name for name, degree in in_degree.items() if degree == 0]
    placed = 0
    while current:
        wave = sorted((by_name[name] for name in current), key=lambda task: task.sort_key)
        waves.append(wave)
        placed += len(wave)
        following: list[str] = []
        for task in wave:
            for dependant in dependants[task.name]:
                in_degree[dependant] -= 1
                if in_degree[dependant] == 0:
                    following.append(dependant)
        current = following

    if placed != len(operations):
        raise CircularDependencyError([name for name, degree in in_degree.items() if degree > 0])
    return waves
