"""
Dependency graphs over transactions.

Vertices are dense integer indices into a transaction table; each vertex keeps
a dict of successor -> EdgeKind bits, so one ordered pair can carry several
kinds of dependency at once (say ww and process). Nothing holds references
between vertices, which keeps graphs cheap to build twice (optimistic and
pessimistic passes) and trivially order-independent.

Cycle search runs in two steps:

    1. strongly_connected_components()   iterative Tarjan, explicit stack
    2. find_cycle()                       BFS shortest path back through a
                                          designated edge, inside one SCC

Every non-trivial SCC contains a cycle; BFS gives the shortest one through
each candidate edge, and the shortest overall is the counterexample.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import IntFlag


class CheckerError(Exception):
    """Raised on internal checker faults, such as a self-dependency.

    Never downgraded to a passing result.
    """


class EdgeKind(IntFlag):
    """Dependency kinds between two transactions."""

    WW = 1  # write-write: T2 overwrote or appended after T1's write
    WR = 2  # write-read: T2 observed T1's write
    RW = 4  # read-write: T2 overwrote the version T1 read (anti-dependency)
    PROCESS = 8  # same process, T1 invoked first
    REALTIME = 16  # T1 completed before T2 was invoked

    @property
    def label(self) -> str:
        """Short name; combined kinds join their parts with "+"."""
        if self in _LABELS:
            return _LABELS[self]
        return "+".join(_LABELS[k] for k in PREFERENCE if k & self)


_LABELS = {
    EdgeKind.WW: "ww",
    EdgeKind.WR: "wr",
    EdgeKind.RW: "rw",
    EdgeKind.PROCESS: "process",
    EdgeKind.REALTIME: "realtime",
}


DATA = EdgeKind.WW | EdgeKind.WR | EdgeKind.RW
ALL = DATA | EdgeKind.PROCESS | EdgeKind.REALTIME

# Which kind explains an edge when several are allowed; data first, and
# ww/wr before rw so found cycles use as few anti-dependencies as possible
PREFERENCE = (EdgeKind.WW, EdgeKind.WR, EdgeKind.RW, EdgeKind.PROCESS, EdgeKind.REALTIME)


class DepGraph:
    """A directed multi-kind graph on vertices 0..n-1.

    Args:
        n: Number of vertices.
    """

    def __init__(self, n: int) -> None:
        self.n = n
        self.out: list[dict[int, EdgeKind]] = [{} for _ in range(n)]
        self.keys: dict[tuple[int, int, EdgeKind], int] = {}

    def add_edge(self, a: int, b: int, kind: EdgeKind, key: int | None = None) -> None:
        """Add a dependency a -> b.

        Args:
            a: Source vertex.
            b: Target vertex.
            kind: A single EdgeKind.
            key: Key the data dependency is about, kept for reports.

        Raises:
            CheckerError: If a == b; a transaction cannot depend on itself.
        """
        if a == b:
            raise CheckerError(f"Self-dependency ({kind.label}) on transaction vertex {a}")
        self.out[a][b] = self.out[a].get(b, EdgeKind(0)) | kind
        if key is not None:
            self.keys.setdefault((a, b, kind), key)

    def kinds(self, a: int, b: int) -> EdgeKind:
        return self.out[a].get(b, EdgeKind(0))

    def successors(self, v: int, mask: EdgeKind = ALL) -> Iterator[int]:
        return (w for w, k in self.out[v].items() if k & mask)

    def edges(self, mask: EdgeKind = ALL) -> Iterator[tuple[int, int, EdgeKind]]:
        for a, succ in enumerate(self.out):
            for b, k in succ.items():
                if k & mask:
                    yield a, b, k & mask

    def edge_count(self) -> int:
        return sum(len(s) for s in self.out)


def strongly_connected_components(graph: DepGraph, mask: EdgeKind = ALL) -> list[list[int]]:
    """Tarjan's algorithm without recursion.

    Returns:
        Components with more than one vertex (the only ones that can hold a
        cycle, since self-loops are rejected), each sorted, in discovery order.
    """
    index = [-1] * graph.n
    low = [0] * graph.n
    on_stack = [False] * graph.n
    stack: list[int] = []
    components: list[list[int]] = []
    counter = 0

    for root in range(graph.n):
        if index[root] != -1:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack[root] = True
        work = [(root, graph.successors(root, mask))]

        while work:
            v, successors = work[-1]
            descended = False
            for w in successors:
                if index[w] == -1:
                    index[w] = low[w] = counter
                    counter += 1
                    stack.append(w)
                    on_stack[w] = True
                    work.append((w, graph.successors(w, mask)))
                    descended = True
                    break
                if on_stack[w]:
                    low[v] = min(low[v], index[w])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[v])
            if low[v] == index[v]:
                component = []
                while True:
                    w = stack.pop()
                    on_stack[w] = False
                    component.append(w)
                    if w == v:
                        break
                if len(component) > 1:
                    components.append(sorted(component))
    return components


def shortest_path(
    graph: DepGraph,
    start: int,
    goal: int,
    mask: EdgeKind,
    within: set[int] | frozenset[int] | None = None,
) -> list[int] | None:
    """BFS shortest path start -> goal along edges in `mask`.

    Returns:
        [start, ..., goal], or None when goal is unreachable.
    """
    prev: dict[int, int | None] = {start: None}
    queue = deque([start])
    while queue:
        v = queue.popleft()
        if v == goal:
            path = [v]
            while prev[path[-1]] is not None:
                path.append(prev[path[-1]])  # type: ignore[arg-type]
            return path[::-1]
        for w in sorted(graph.successors(v, mask)):
            if w in prev or (within is not None and w not in within):
                continue
            prev[w] = v
            queue.append(w)
    return None


@dataclass(frozen=True)
class Cycle:
    """A cycle v0 -> v1 -> ... -> vk -> v0, with the kind explaining each step."""

    vertices: tuple[int, ...]
    steps: tuple[EdgeKind, ...]

    def __len__(self) -> int:
        return len(self.vertices)

    def count(self, kind: EdgeKind) -> int:
        return sum(1 for s in self.steps if s == kind)

    def pairs(self) -> Iterator[tuple[int, int]]:
        n = len(self.vertices)
        for i in range(n):
            yield self.vertices[i], self.vertices[(i + 1) % n]


def explain(kinds: EdgeKind, mask: EdgeKind) -> EdgeKind:
    """Pick the single kind that explains an edge under a search mask."""
    for kind in PREFERENCE:
        if kinds & mask & kind:
            return kind
    raise CheckerError(f"Edge kinds {int(kinds)} not allowed by mask {int(mask)}")


def find_cycle(
    graph: DepGraph,
    component: Sequence[int] | Iterable[int],
    edge_mask: EdgeKind,
    path_mask: EdgeKind,
) -> Cycle | None:
    """Shortest cycle in a component that starts with an edge in `edge_mask`
    and returns along edges in `path_mask`.

    Designating the first edge is how anomaly classes are told apart: a G1c
    cycle starts with a wr edge and returns through ww/wr; a G-single starts
    with its single rw edge and returns without any.

    Returns:
        The shortest such cycle, or None.
    """
    members = frozenset(component)
    best: Cycle | None = None
    for a in sorted(members):
        for b in sorted(graph.out[a]):
            if b not in members or not graph.kinds(a, b) & edge_mask:
                continue
            if best is not None and len(best) <= 2:
                return best
            path = shortest_path(graph, b, a, path_mask, members)
            if path is None or (best is not None and len(path) >= len(best)):
                continue
            vertices = (a, *path[:-1])
            first = explain(graph.kinds(a, b), edge_mask)
            rest = tuple(
                explain(graph.kinds(vertices[i], vertices[(i + 1) % len(vertices)]), path_mask)
                for i in range(1, len(vertices))
            )
            best = Cycle(vertices, (first, *rest))
    return best
