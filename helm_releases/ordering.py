"""Library for ordering the installation and uninstallation of releases.

Releases declare two kinds of ordering relationships:

- Soft edges (`mustInstallAfter`, `mustUninstallAfter`) only constrain the
  relative order of releases that are both selected.
- Hard edges (the deprecated `dependsOn`) also pull the dependency into the
  selected set. A release is installed after its dependencies and uninstalled
  before them.

Both are represented as tagged `Edge` objects in a single graph per
direction, which is then sorted topologically. Ties are broken by release
name so the result is the same on every run.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
import heapq
import logging

from .exceptions import CyclicOrderingError, UnresolvedReferenceError
from .manifest import Release

__all__ = [
    "EdgeKind",
    "Edge",
    "ReleaseOrder",
    "validate_references",
    "expand_eligible",
    "build_order",
]

_LOGGER = logging.getLogger(__name__)


class EdgeKind(StrEnum):
    """The kind of ordering relationship between two releases."""

    SOFT = "soft"
    """Constrains relative order only."""

    HARD = "hard"
    """Constrains order and expands the set of selected releases."""


@dataclass(frozen=True, order=True)
class Edge:
    """The release `before` runs before the release `after`."""

    before: str
    after: str
    kind: EdgeKind


@dataclass(frozen=True)
class ReleaseOrder:
    """The execution order of a set of releases."""

    eligible: frozenset[str]
    """Selected releases, including those pulled in by hard dependencies."""

    install: tuple[str, ...]
    """Release names in install order."""

    uninstall: tuple[str, ...]
    """Release names in uninstall order."""

    install_edges: tuple[Edge, ...]
    """Ordering edges between eligible releases for installation."""

    uninstall_edges: tuple[Edge, ...]
    """Ordering edges between eligible releases for uninstallation."""

    def install_predecessors(
        self, name: str, kind: EdgeKind | None = None
    ) -> list[str]:
        """Releases that must be installed before the named release.

        When `kind` is set only edges of that kind are considered.
        """
        return _predecessors(self.install_edges, name, kind)

    def uninstall_predecessors(
        self, name: str, kind: EdgeKind | None = None
    ) -> list[str]:
        """Releases that must be uninstalled before the named release."""
        return _predecessors(self.uninstall_edges, name, kind)


def _predecessors(
    edges: Iterable[Edge], name: str, kind: EdgeKind | None
) -> list[str]:
    return sorted(
        {
            edge.before
            for edge in edges
            if edge.after == name and (kind is None or edge.kind == kind)
        }
    )


def validate_references(releases: Mapping[str, Release]) -> None:
    """Verify that every ordering reference names a declared release.

    This runs against the full set of releases, not only the selected ones,
    so a typo fails the build regardless of the tag selection.
    """
    for release in releases.values():
        for attr, refs in (
            ("mustInstallAfter", release.install_after),
            ("mustUninstallAfter", release.uninstall_after),
            ("dependsOn", release.depends_on),
        ):
            for ref in refs:
                if ref not in releases:
                    raise UnresolvedReferenceError(
                        f"Release {release.name} {attr}", ref
                    )


def expand_eligible(
    releases: Mapping[str, Release], selected: Iterable[str]
) -> frozenset[str]:
    """Return the selected releases plus the transitive hard dependencies."""
    eligible = set(selected)
    queue = sorted(eligible)
    while queue:
        name = queue.pop()
        for dep in releases[name].depends_on:
            if dep not in eligible:
                _LOGGER.debug(
                    "Release %s included as a dependency of release %s", dep, name
                )
                eligible.add(dep)
                queue.append(dep)
    return frozenset(eligible)


def _install_edges(
    releases: Mapping[str, Release], eligible: frozenset[str]
) -> list[Edge]:
    edges = []
    for name in sorted(eligible):
        release = releases[name]
        for ref in release.install_after:
            if ref in eligible:
                edges.append(Edge(before=ref, after=name, kind=EdgeKind.SOFT))
        for ref in release.depends_on:
            edges.append(Edge(before=ref, after=name, kind=EdgeKind.HARD))
    return edges


def _uninstall_edges(
    releases: Mapping[str, Release], eligible: frozenset[str]
) -> list[Edge]:
    edges = []
    for name in sorted(eligible):
        release = releases[name]
        for ref in release.uninstall_after:
            if ref in eligible:
                edges.append(Edge(before=ref, after=name, kind=EdgeKind.SOFT))
        # A dependency is uninstalled after the release that depends on it
        for ref in release.depends_on:
            edges.append(Edge(before=name, after=ref, kind=EdgeKind.HARD))
    return edges


def _find_cycle(remaining: set[str], edges: Iterable[Edge]) -> list[str]:
    """Return one cycle among the remaining nodes, in execution order."""
    preds: dict[str, set[str]] = {}
    for edge in edges:
        if edge.before in remaining and edge.after in remaining:
            preds.setdefault(edge.after, set()).add(edge.before)
    path: list[str] = []
    node = min(remaining)
    while node not in path:
        path.append(node)
        node = min(preds[node])
    cycle = path[path.index(node) :]
    cycle.reverse()
    return [*cycle, cycle[0]]


def topological_order(nodes: Iterable[str], edges: Iterable[Edge]) -> list[str]:
    """Sort the nodes so that every edge's `before` precedes its `after`.

    When several nodes are ready the lexicographically smallest one is
    emitted first.
    """
    nodes = set(nodes)
    edges = list(edges)
    successors: dict[str, set[str]] = {node: set() for node in nodes}
    in_degree: dict[str, int] = {node: 0 for node in nodes}
    for edge in edges:
        if edge.after in successors[edge.before]:
            continue
        successors[edge.before].add(edge.after)
        in_degree[edge.after] += 1

    ready = [node for node, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    result: list[str] = []
    while ready:
        node = heapq.heappop(ready)
        result.append(node)
        for succ in successors[node]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, succ)

    if len(result) != len(nodes):
        cycle = _find_cycle(nodes - set(result), edges)
        raise CyclicOrderingError(cycle[0], cycle)
    return result


def build_order(
    releases: Mapping[str, Release], selected: Iterable[str]
) -> ReleaseOrder:
    """Build the install and uninstall order for the selected releases."""
    validate_references(releases)
    eligible = expand_eligible(releases, selected)
    install_edges = _install_edges(releases, eligible)
    uninstall_edges = _uninstall_edges(releases, eligible)
    order = ReleaseOrder(
        eligible=eligible,
        install=tuple(topological_order(eligible, install_edges)),
        uninstall=tuple(topological_order(eligible, uninstall_edges)),
        install_edges=tuple(sorted(set(install_edges))),
        uninstall_edges=tuple(sorted(set(uninstall_edges))),
    )
    _LOGGER.debug("Install order: %s", order.install)
    _LOGGER.debug("Uninstall order: %s", order.uninstall)
    return order
