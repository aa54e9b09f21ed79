import pytest

from relayci.dag import build_dag, build_graph, topo_levels
from relayci.errors import CyclicDependency, DuplicateJobName, UnknownDependency
from relayci.model import CommandStep, Job


def _job(name, needs=()):
    return Job(name=name, steps=(CommandStep(name="s", run="true"),), needs=tuple(needs))


def test_build_dag_adjacency_and_indegree():
    adj, indeg = build_dag([_job("lint"), _job("test", ["lint"]), _job("deploy", ["lint", "test"])])
    assert adj == {"lint": ["test", "deploy"], "test": ["deploy"], "deploy": []}
    assert indeg == {"lint": 0, "test": 1, "deploy": 2}


def test_repeated_need_counts_once():
    adj, indeg = build_dag([_job("a"), _job("b", ["a", "a"])])
    assert adj["a"] == ["b"]
    assert indeg["b"] == 1


def test_build_dag_rejects_duplicates_and_unknown_needs():
    with pytest.raises(DuplicateJobName):
        build_dag([_job("a"), _job("a")])
    with pytest.raises(UnknownDependency) as exc:
        build_dag([_job("a", ["ghost"])])
    assert exc.value.known == ["a"]


def test_levels_keep_declaration_order():
    jobs = [_job("z"), _job("a"), _job("m", ["z"]), _job("b", ["a"]), _job("end", ["m", "b"])]
    adj, indeg = build_dag(jobs)
    levels = topo_levels(adj, indeg, [j.name for j in jobs])
    assert levels == [["z", "a"], ["m", "b"], ["end"]]


def test_levels_report_cycle_members():
    jobs = [_job("root"), _job("x", ["y"]), _job("y", ["x"])]
    adj, indeg = build_dag(jobs)
    with pytest.raises(CyclicDependency) as exc:
        topo_levels(adj, indeg, [j.name for j in jobs])
    assert exc.value.nodes == ["x", "y"]


def test_build_graph_rejects_cycles():
    with pytest.raises(CyclicDependency):
        build_graph([_job("a", ["b"]), _job("b", ["a"])])


def test_graph_dependents_and_in_degree():
    graph = build_graph([_job("a"), _job("b", ["a"]), _job("c", ["a", "b"])], name="g")
    assert len(graph) == 3
    assert graph.dependents() == {"a": ["b", "c"], "b": ["c"], "c": []}
    assert graph.in_degree() == {"a": 0, "b": 1, "c": 2}
