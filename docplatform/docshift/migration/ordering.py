"""
Dependency ordering of migration operations.

Operations form a DAG through their ``dependencies``. order_operations()
returns a topological order in which ties are broken by ascending
priority (then by declaration order).

The sort works on an arena: operations are copied into a list of nodes
indexed by position, ids are resolved to indexes up front, and an
iterative depth-first search tracks VISITING/VISITED marks per node. A
VISITING node reached again is a cycle; the explicit stack yields the
cycle path for the error message.

Example:
    >>> ordered = order_operations([rename, backfill, cleanup])
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ConfigurationError, CyclicDependencyError, UnknownDependencyError
from .operations import MigrationOperation


class Mark(Enum):
    UNVISITED = 0
    VISITING = 1
    VISITED = 2


@dataclass
class OperationNode:
    """Arena entry for one operation."""

    index: int
    operation: MigrationOperation
    dependencies: list[int] = field(default_factory=list)
    mark: Mark = Mark.UNVISITED


def build_arena(operations: Sequence[MigrationOperation]) -> list[OperationNode]:
    """Index operations and resolve dependency ids to arena indexes.

    Raises:
        ConfigurationError: On duplicate operation ids
        UnknownDependencyError: On a dependency id not in the arena
    """
    index_by_id: dict[str, int] = {}
    for position, op in enumerate(operations):
        if op.id in index_by_id:
            raise ConfigurationError(
                f"Duplicate operation id: {op.id}", details={"operation_id": op.id}
            )
        index_by_id[op.id] = position

    arena = []
    for position, op in enumerate(operations):
        node = OperationNode(index=position, operation=op)
        for dependency in op.dependencies:
            if dependency not in index_by_id:
                raise UnknownDependencyError(op.id, dependency)
            node.dependencies.append(index_by_id[dependency])
        arena.append(node)
    return arena


def _priority_key(node: OperationNode) -> tuple[int, int]:
    return (node.operation.priority, node.index)


def order_operations(operations: Sequence[MigrationOperation]) -> list[MigrationOperation]:
    """Topologically sort operations, ties broken by priority.

    Raises:
        CyclicDependencyError: If the dependencies contain a cycle
        UnknownDependencyError: If a dependency id is not part of the set
        ConfigurationError: If two operations share an id
    """
    arena = build_arena(operations)
    ordered: list[MigrationOperation] = []

    for root in sorted(arena, key=_priority_key):
        if root.mark is Mark.VISITED:
            continue

        # Stack of (node index, remaining dependency indexes sorted by priority).
        root.mark = Mark.VISITING
        stack: list[tuple[int, list[int]]] = [
            (root.index, _sorted_dependencies(arena, root)),
        ]
        while stack:
            current, pending = stack[-1]
            if not pending:
                stack.pop()
                arena[current].mark = Mark.VISITED
                ordered.append(arena[current].operation)
                continue

            dependency = arena[pending.pop(0)]
            if dependency.mark is Mark.VISITED:
                continue
            if dependency.mark is Mark.VISITING:
                path = [arena[i].operation.id for i, _ in stack]
                start = path.index(dependency.operation.id)
                raise CyclicDependencyError(path[start:] + [dependency.operation.id])

            dependency.mark = Mark.VISITING
            stack.append((dependency.index, _sorted_dependencies(arena, dependency)))

    return ordered


def _sorted_dependencies(arena: list[OperationNode], node: OperationNode) -> list[int]:
    return sorted(node.dependencies, key=lambda i: _priority_key(arena[i]))
