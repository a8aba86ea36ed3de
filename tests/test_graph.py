import pytest

from goalflow.errors import (
    CircularDependencyError,
    DuplicateTaskError,
    PlanValidationError,
    UnknownDependencyError,
)
from goalflow.graph import DependencyGraph, find_cycle


@pytest.fixture
def diamond(make_task):
    # a -> (b, c) -> d, with c the longer branch
    return [
        make_task("a", 10),
        make_task("b", 20, deps=["a"]),
        make_task("c", 40, deps=["a"]),
        make_task("d", 5, deps=["b", "c"], soft=["b"]),
    ]


def test_cycle_is_reported_with_path(make_task) -> None:
    tasks = [
        make_task("a", deps=["c"]),
        make_task("b", deps=["a"]),
        make_task("c", deps=["b"]),
    ]

    with pytest.raises(CircularDependencyError) as excinfo:
        DependencyGraph(tasks)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert find_cycle(tasks)


def test_self_dependency_is_a_cycle(make_task) -> None:
    with pytest.raises(CircularDependencyError):
        DependencyGraph([make_task("a", deps=["a"])])


def test_unknown_dependency_is_rejected(make_task) -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        DependencyGraph([make_task("a", deps=["ghost"])])

    assert excinfo.value.missing == "ghost"
    assert isinstance(excinfo.value, PlanValidationError)


def test_duplicate_ids_are_rejected(make_task) -> None:
    with pytest.raises(DuplicateTaskError):
        DependencyGraph([make_task("a"), make_task("a")])


def test_layers_and_topological_order(diamond) -> None:
    graph = DependencyGraph(diamond)

    assert graph.layers == [["a"], ["b", "c"], ["d"]]
    order = graph.topological_order
    assert order.index("a") < order.index("b") < order.index("d")
    assert order.index("c") < order.index("d")


def test_critical_path_and_slack(diamond) -> None:
    graph = DependencyGraph(diamond)

    assert graph.total_minutes == 55
    assert graph.critical_path == ["a", "c", "d"]
    assert graph.slack("b") == 20
    assert graph.is_critical("c")
    assert not graph.is_critical("b")
    assert graph.critical_tasks == ["a", "c", "d"]


def test_descendants_can_follow_data_edges_only(diamond) -> None:
    graph = DependencyGraph(diamond)

    assert graph.descendants("a") == ["b", "c", "d"]
    assert graph.descendants("b") == ["d"]
    assert graph.descendants("b", data_only=True) == []
    assert graph.has_path("a", "d")
    assert not graph.has_path("d", "a")


def test_empty_graph() -> None:
    graph = DependencyGraph([])

    assert graph.total_minutes == 0
    assert graph.layers == []
    assert graph.critical_path == []
