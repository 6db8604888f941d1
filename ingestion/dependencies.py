"""
Refresh dependency graph: cycle detection and execution order
"""

import heapq
from collections import defaultdict
from typing import Dict, Iterable, List, Set, Tuple

from core.exceptions import CyclicDependencyError
from models.base import DependencyType
from models.refresh_config import RefreshConfig, RefreshDependency


def _sort_key(config: RefreshConfig) -> Tuple[int, str]:
    # priority descending, then table name ascending
    return (-config.priority, config.table_name)


class DependencyGraph:
    """
    Directed graph from parent tables to dependent tables.

    Edges whose endpoints are unknown configs are ignored. Hard edges gate
    execution; soft edges only order it.
    """

    def __init__(self, configs: Iterable[RefreshConfig], edges: Iterable[RefreshDependency]):
        self.configs: Dict[int, RefreshConfig] = {c.id: c for c in configs}
        self._parents: Dict[int, Dict[int, DependencyType]] = defaultdict(dict)
        self._children: Dict[int, Set[int]] = defaultdict(set)
        for edge in edges:
            if edge.parent_config_id not in self.configs or edge.dependent_config_id not in self.configs:
                continue
            self._parents[edge.dependent_config_id][edge.parent_config_id] = DependencyType(edge.dependency_type)
            self._children[edge.parent_config_id].add(edge.dependent_config_id)

    def parents(self, config_id: int) -> Dict[int, DependencyType]:
        return dict(self._parents.get(config_id, {}))

    def hard_parents(self, config_id: int) -> List[int]:
        return [p for p, kind in self._parents.get(config_id, {}).items() if kind == DependencyType.HARD]

    def soft_parents(self, config_id: int) -> List[int]:
        return [p for p, kind in self._parents.get(config_id, {}).items() if kind == DependencyType.SOFT]

    def find_cycle(self) -> List[int]:
        """Return config ids on one cycle (first id repeated last), or []"""
        white, grey, black = 0, 1, 2
        color = {cid: white for cid in self.configs}
        stack: List[int] = []

        def visit(node: int) -> List[int]:
            color[node] = grey
            stack.append(node)
            for child in sorted(self._children.get(node, ())):
                if color[child] == grey:
                    return stack[stack.index(child):] + [child]
                if color[child] == white:
                    found = visit(child)
                    if found:
                        return found
            stack.pop()
            color[node] = black
            return []

        for cid in sorted(self.configs):
            if color[cid] == white:
                found = visit(cid)
                if found:
                    return found
        return []

    def validate(self):
        """
        Raises:
            CyclicDependencyError: when the edges contain a cycle
        """
        cycle = self.find_cycle()
        if cycle:
            names = [self.configs[cid].qualified_name for cid in cycle]
            raise CyclicDependencyError(
                f"Cyclic refresh dependency: {' -> '.join(names)}",
                context={"cycle": names}
            )

    def execution_order(self, configs: Iterable[RefreshConfig]) -> List[RefreshConfig]:
        """
        Topologically order the given configs.

        Only edges between the given configs constrain the order; among
        configs that are ready at the same time, higher priority goes
        first and ties are broken by table name.
        """
        selected = {c.id: c for c in configs}
        indegree = {cid: 0 for cid in selected}
        for cid in selected:
            for parent in self._parents.get(cid, {}):
                if parent in selected:
                    indegree[cid] += 1

        ready = [(_sort_key(c), cid) for cid, c in selected.items() if indegree[cid] == 0]
        heapq.heapify(ready)
        ordered: List[RefreshConfig] = []
        while ready:
            _, cid = heapq.heappop(ready)
            ordered.append(selected[cid])
            for child in self._children.get(cid, ()):
                if child in indegree:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        heapq.heappush(ready, (_sort_key(selected[child]), child))

        if len(ordered) != len(selected):
            remaining = [selected[cid].qualified_name for cid in selected if cid not in {c.id for c in ordered}]
            raise CyclicDependencyError(
                "Cyclic refresh dependency among due tables",
                context={"tables": remaining}
            )
        return ordered
