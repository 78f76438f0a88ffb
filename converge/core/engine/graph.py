"""
Dependency graph utilities (pure).

Topological ordering and cycle reporting for resource graphs.
No I/O.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from converge.core.errors import ValidationError


def topological_order(
    nodes: Iterable[str],
    depends_on: Mapping[str, Iterable[str]],
) -> list[str]:
    """Order ``nodes`` so every node comes after everything it depends on.

    Kahn's algorithm; ties are broken by the order of ``nodes`` so the
    result is deterministic for a given declaration order.

    Raises:
        ValidationError: on a dangling dependency or a cycle, naming
            the offending nodes.
    """
    nodes = list(nodes)
    position = {n: i for i, n in enumerate(nodes)}

    dangling = [
        (n, dep) for n in nodes for dep in depends_on.get(n, ()) if dep not in position
    ]
    if dangling:
        detail = ", ".join(f"'{n}' → '{dep}'" for n, dep in dangling)
        raise ValidationError(
            f"Reference to undeclared resource: {detail}",
            resources=[n for n, _ in dangling],
        )

    in_degree: dict[str, int] = {n: 0 for n in nodes}
    successors: dict[str, list[str]] = {n: [] for n in nodes}
    for n in nodes:
        for dep in set(depends_on.get(n, ())):
            in_degree[n] += 1
            successors[dep].append(n)

    ready = sorted((n for n in nodes if in_degree[n] == 0), key=position.__getitem__)
    order: list[str] = []
    while ready:
        node = ready.pop(0)
        order.append(node)
        released = []
        for succ in successors[node]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                released.append(succ)
        ready = sorted(ready + released, key=position.__getitem__)

    if len(order) < len(nodes):
        remaining = [n for n in nodes if in_degree[n] > 0]
        cycle = find_cycle(remaining, depends_on)
        raise ValidationError(
            f"Dependency cycle detected: {' → '.join(cycle)}",
            resources=cycle,
        )

    return order


def find_cycle(nodes: list[str], depends_on: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle among ``nodes`` as a closed path (first == last)."""
    candidates = set(nodes)
    for start in nodes:
        path: list[str] = []
        on_path: set[str] = set()
        node = start
        while node not in on_path:
            path.append(node)
            on_path.add(node)
            nxt = next((d for d in sorted(depends_on.get(node, ())) if d in candidates), None)
            if nxt is None:
                break
            node = nxt
        else:
            cut = path.index(node)
            return path[cut:] + [node]
    return nodes


def reverse_dependency_order(
    nodes: Iterable[str],
    depends_on: Mapping[str, Iterable[str]],
) -> list[str]:
    """Order for teardown: dependents before the things they depend on.

    Dependencies pointing outside ``nodes`` are ignored.  Recorded
    dependencies can be stale, so a cycle falls back to reverse name
    order instead of failing the run.
    """
    nodes = list(nodes)
    members = set(nodes)
    restricted = {n: [d for d in depends_on.get(n, ()) if d in members] for n in nodes}
    try:
        return list(reversed(topological_order(nodes, restricted)))
    except ValidationError:
        return sorted(nodes, reverse=True)
