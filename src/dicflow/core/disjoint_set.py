"""Union-find over point ids.

Used to close obstruction dependencies transitively: any two points linked
through a chain of shared blockers end up in the same group, regardless of
the order the blocker lists are scanned in.
"""

from typing import Dict, Iterable, List

__all__ = ['DisjointSet']


class DisjointSet:
    """Disjoint-set forest with path compression and union by size."""

    def __init__(self, items: Iterable[int] = ()):
        self._parent: Dict[int, int] = {}
        self._size: Dict[int, int] = {}
        for item in items:
            self.add(item)

    def __contains__(self, item: int) -> bool:
        return item in self._parent

    def __len__(self) -> int:
        return len(self._parent)

    def add(self, item: int) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def find(self, item: int) -> int:
        """Root of ``item``'s set. Unknown items are added as singletons."""
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        # compress
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: int, b: int) -> int:
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return root_a
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]
        return root_a

    def connected(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)

    def groups(self) -> List[List[int]]:
        """All sets as sorted lists, ordered by their smallest member."""
        by_root: Dict[int, List[int]] = {}
        for item in self._parent:
            by_root.setdefault(self.find(item), []).append(item)
        return sorted((sorted(members) for members in by_root.values()), key=lambda g: g[0])
