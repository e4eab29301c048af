# modkit/resolver/graph.py
from __future__ import annotations

from collections.abc import Iterable

from modkit.manifest.model import ModIdentity

__all__ = ["DependencyGraph"]



class DependencyGraph:
    """
    Directed graph over mod identities, stored as an arena.

    Identities map to integer node indices; edges are per-node index lists
    where an edge A -> B means "A depends on B". Nodes never reference each
    other directly, so cyclic input is representable and traversals only
    need index-based visited marks.
    """

    def __init__(self) -> None:
        self._index: dict[ModIdentity, int] = {}
        self._nodes: list[ModIdentity] = []
        self._edges: list[list[int]] = []

    def addNode(self, identity: ModIdentity) -> int:
        idx = self._index.get(identity)
        if idx is None:
            idx = len(self._nodes)
            self._index[identity] = idx
            self._nodes.append(identity)
            self._edges.append([])
        return idx

    def addEdge(self, source: ModIdentity, target: ModIdentity) -> None:
        sourceIdx = self.addNode(source)
        targetIdx = self.addNode(target)
        if targetIdx not in self._edges[sourceIdx]:
            self._edges[sourceIdx].append(targetIdx)

    def __contains__(self, identity: object) -> bool:
        return identity in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    def identities(self) -> list[ModIdentity]:
        return sorted(self._nodes)

    def dependencies(self, identity: ModIdentity) -> list[ModIdentity]:
        idx = self._index.get(identity)
        if idx is None:
            return []
        return sorted(self._nodes[target] for target in self._edges[idx])

    def dependents(self, identity: ModIdentity) -> list[ModIdentity]:
        idx = self._index.get(identity)
        if idx is None:
            return []
        return sorted(self._nodes[source] for source, targets in enumerate(self._edges) if idx in targets)

    def _sortedTargets(self, idx: int) -> list[int]:
        return sorted(self._edges[idx], key=lambda target: self._nodes[target].sortKey())

    # ------------------------------------------------------------------ #
    # Traversals
    # ------------------------------------------------------------------ #

    def findCycle(self) -> list[ModIdentity] | None:
        """
        First cycle found by a depth-first search with on-stack marks, roots
        and neighbours visited in identity order. The returned path starts
        and ends with the same identity, e.g. [A, B, C, A].
        """
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self._nodes)
        roots = sorted(range(len(self._nodes)), key=lambda idx: self._nodes[idx].sortKey())

        for root in roots:
            if color[root] != WHITE:
                continue
            # Explicit stack of (node, iterator over its sorted targets)
            path: list[int] = [root]
            stack = [(root, iter(self._sortedTargets(root)))]
            color[root] = GREY
            while stack:
                node, targets = stack[-1]
                advanced = False
                for target in targets:
                    if color[target] == GREY:
                        start = path.index(target)
                        return [self._nodes[idx] for idx in path[start:]] + [self._nodes[target]]
                    if color[target] == WHITE:
                        color[target] = GREY
                        path.append(target)
                        stack.append((target, iter(self._sortedTargets(target))))
                        advanced = True
                        break
                if not advanced:
                    color[node] = BLACK
                    path.pop()
                    stack.pop()
        return None

    def ranks(self, among: Iterable[ModIdentity] | None = None) -> dict[ModIdentity, int]:
        """
        rank(x) = 0 when x has no dependency inside `among`, else
        1 + max(rank(dep)). `among` defaults to every node. The graph
        restricted to `among` must be acyclic.
        """
        subset = set(self._index) if among is None else set(among)
        memo: dict[int, int] = {}

        def rankOf(start: int) -> int:
            # Iterative post-order so deep chains do not hit the recursion limit
            stack = [start]
            expanding: set[int] = set()
            while stack:
                node = stack[-1]
                if node in memo:
                    stack.pop()
                    continue
                pending = [
                    target for target in self._edges[node]
                    if self._nodes[target] in subset and target not in memo
                ]
                if pending:
                    if node in expanding or any(target in expanding for target in pending):
                        raise ValueError(f"ranks are undefined: dependency cycle through {self._nodes[node]}")
                    expanding.add(node)
                    stack.extend(pending)
                    continue
                expanding.discard(node)
                deps = [memo[target] for target in self._edges[node] if self._nodes[target] in subset]
                memo[node] = 1 + max(deps) if deps else 0
                stack.pop()
            return memo[start]

        return {identity: rankOf(self._index[identity]) for identity in sorted(subset) if identity in self._index}

    def topologicalOrder(self, among: Iterable[ModIdentity] | None = None) -> list[ModIdentity]:
        """Dependencies first, ordered by (rank, identity)."""
        ranks = self.ranks(among)
        return sorted(ranks, key=lambda identity: (ranks[identity], identity.sortKey()))
