# dag.py
from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from .errors import CyclicDependency, DuplicateJobName, UnknownDependency
from .model import Job, WorkflowGraph


def build_dag(jobs: Sequence[Job]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build adjacency (dep -> dependents) and in-degree maps from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must succeed BEFORE this job
    """
    names: List[str] = []
    seen = set()
    for job in jobs:
        if job.name in seen:
            raise DuplicateJobName(job.name)
        seen.add(job.name)
        names.append(job.name)

    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs:
            if dep not in seen:
                raise UnknownDependency(job=job.name, dependency=dep, known=list(names))
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].append(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, List[str]],
    indeg: Dict[str, int],
    order: Iterable[str] | None = None,
) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Jobs inside one stage have no dependency on each other. Within a stage,
    jobs keep their declaration order.
    """
    order = list(order) if order is not None else list(indeg)
    position = {name: i for i, name in enumerate(order)}
    indeg = dict(indeg)  # copy (we mutate it)

    level = [n for n in order if indeg[n] == 0]
    levels: List[List[str]] = []
    processed = 0

    while level:
        levels.append(level)
        processed += len(level)
        nxt: List[str] = []
        for node in level:
            for child in adj.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        level = sorted(nxt, key=position.__getitem__)

    if processed != len(indeg):
        raise CyclicDependency([n for n in order if indeg[n] > 0])

    return levels


def build_graph(
    jobs: Sequence[Job],
    *,
    name: str = "workflow",
    fail_fast: bool = True,
    env: Dict[str, str] | None = None,
    source: str = "<memory>",
) -> WorkflowGraph:
    """Validate jobs as a DAG and freeze them into a WorkflowGraph."""
    adj, indeg = build_dag(jobs)
    order = [j.name for j in jobs]
    topo_levels(adj, indeg, order)  # raises CyclicDependency
    return WorkflowGraph(
        name=name,
        jobs={j.name: j for j in jobs},
        order=tuple(order),
        fail_fast=fail_fast,
        env=env or {},
        source=source,
    )
