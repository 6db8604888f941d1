"""
Unit tests for dependency validation and execution order
"""

import pytest

from core.exceptions import CyclicDependencyError
from ingestion.dependencies import DependencyGraph
from models.base import DependencyType
from models.refresh_config import RefreshConfig, RefreshDependency


def config(config_id, name, priority=100):
    return RefreshConfig(id=config_id, table_schema="public", table_name=name, priority=priority)


def edge(parent, dependent, kind=DependencyType.HARD):
    return RefreshDependency(parent_config_id=parent, dependent_config_id=dependent, dependency_type=kind)


class TestDependencyGraph:

    def test_independent_tables_order_by_priority_then_name(self):
        configs = [config(1, "low", 50), config(2, "high", 90), config(3, "also_high", 90)]
        graph = DependencyGraph(configs, [])

        ordered = graph.execution_order(configs)

        assert [c.table_name for c in ordered] == ["also_high", "high", "low"]

    def test_parent_runs_before_higher_priority_dependent(self):
        configs = [config(1, "parent", 10), config(2, "child", 100)]
        graph = DependencyGraph(configs, [edge(1, 2)])

        ordered = graph.execution_order(configs)

        assert [c.table_name for c in ordered] == ["parent", "child"]

    def test_soft_edges_also_order(self):
        configs = [config(1, "parent", 10), config(2, "child", 100)]
        graph = DependencyGraph(configs, [edge(1, 2, DependencyType.SOFT)])

        assert [c.table_name for c in graph.execution_order(configs)] == ["parent", "child"]
        assert graph.soft_parents(2) == [1]
        assert graph.hard_parents(2) == []

    def test_edges_to_tables_outside_the_due_set_are_ignored_for_order(self):
        configs = [config(1, "parent"), config(2, "child")]
        graph = DependencyGraph(configs, [edge(1, 2)])

        ordered = graph.execution_order([configs[1]])

        assert [c.table_name for c in ordered] == ["child"]

    def test_cycle_is_detected(self):
        configs = [config(1, "a"), config(2, "b"), config(3, "c")]
        graph = DependencyGraph(configs, [edge(1, 2), edge(2, 3), edge(3, 1)])

        cycle = graph.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {1, 2, 3}

        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate()
        assert "public.a" in exc_info.value.message

    def test_acyclic_graph_validates(self):
        configs = [config(1, "a"), config(2, "b"), config(3, "c")]
        graph = DependencyGraph(configs, [edge(1, 2), edge(1, 3), edge(2, 3)])

        graph.validate()
        assert [c.table_name for c in graph.execution_order(configs)] == ["a", "b", "c"]

    def test_edges_with_unknown_configs_are_dropped(self):
        graph = DependencyGraph([config(1, "a")], [edge(1, 99)])

        assert graph.parents(99) == {}
        assert graph.find_cycle() == []
