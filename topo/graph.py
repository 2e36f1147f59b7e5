from __future__ import annotations

from typing import Iterable

from .descriptors import ServiceDescriptor
from .errors import CyclicDependency, UnknownDependency


_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Read-only DAG over service descriptors.

    Names are resolved to integer indices once; edges are index lists, so the
    graph holds no references between descriptors.
    """

    def __init__(self, descriptors: Iterable[ServiceDescriptor]):
        by_name = {d.name: d for d in descriptors}
        self._names: list[str] = sorted(by_name)
        self._index: dict[str, int] = {n: i for i, n in enumerate(self._names)}

        self._deps: list[list[int]] = [[] for _ in self._names]
        self._rdeps: list[list[int]] = [[] for _ in self._names]
        for name in self._names:
            i = self._index[name]
            for dep in by_name[name].depends_on:
                if dep not in self._index:
                    raise UnknownDependency(name, dep)
                j = self._index[dep]
                self._deps[i].append(j)
                self._rdeps[j].append(i)

        self._check_acyclic()
        self._levels = self._compute_levels()
        self._level_of = {n: k for k, lvl in enumerate(self._levels) for n in lvl}

    def _check_acyclic(self) -> None:
        color = [_WHITE] * len(self._names)
        stack: list[int] = []

        def visit(i: int) -> None:
            color[i] = _GREY
            stack.append(i)
            for j in sorted(self._deps[i]):
                if color[j] == _GREY:
                    start = stack.index(j)
                    cycle = [self._names[k] for k in stack[start:]]
                    raise CyclicDependency(cycle + [self._names[j]])
                if color[j] == _WHITE:
                    visit(j)
            stack.pop()
            color[i] = _BLACK

        for i in range(len(self._names)):
            if color[i] == _WHITE:
                visit(i)

    def _compute_levels(self) -> list[list[str]]:
        # Kahn's algorithm, one frontier at a time.
        remaining = [len(d) for d in self._deps]
        frontier = [i for i, n in enumerate(remaining) if n == 0]
        levels: list[list[str]] = []
        while frontier:
            levels.append(sorted(self._names[i] for i in frontier))
            nxt: list[int] = []
            for i in frontier:
                for j in self._rdeps[i]:
                    remaining[j] -= 1
                    if remaining[j] == 0:
                        nxt.append(j)
            frontier = nxt
        return levels

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def levels(self) -> list[list[str]]:
        return [list(lvl) for lvl in self._levels]

    def order(self) -> list[str]:
        return [n for lvl in self._levels for n in lvl]

    def stop_order(self) -> list[str]:
        return list(reversed(self.order()))

    def level_of(self, name: str) -> int:
        return self._level_of[name]

    def dependencies(self, name: str) -> list[str]:
        return sorted(self._names[j] for j in self._deps[self._index[name]])

    def dependents(self, name: str) -> list[str]:
        return sorted(self._names[j] for j in self._rdeps[self._index[name]])

    def transitive_dependents(self, name: str) -> list[str]:
        seen: set[int] = set()
        todo = list(self._rdeps[self._index[name]])
        while todo:
            j = todo.pop()
            if j in seen:
                continue
            seen.add(j)
            todo.extend(self._rdeps[j])
        return sorted(self._names[j] for j in seen)

    def to_dict(self) -> dict[str, object]:
        return {
            "levels": self.levels(),
            "edges": {n: self.dependencies(n) for n in self._names},
        }
