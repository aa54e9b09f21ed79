# runner.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from .executor import StepExecutor
from .git_facts.git import correlation_id as git_correlation_id
from .model import RunResult, WorkflowGraph
from .notifier import Notifier
from .scheduler import Scheduler
from .ui.console import Console, get_console

# Loader -> Scheduler -> Executor (per job, concurrently) -> Notifier


def run_workflow(
    graph: WorkflowGraph,
    *,
    executor: Optional[StepExecutor] = None,
    max_parallel: int | None = None,
    fail_fast: bool | None = None,
    notifier: Optional[Notifier] = None,
    correlation_id: str | None = None,
    workdir: str | Path = ".",
    console: Optional[Console] = None,
) -> RunResult:
    """
    Execute a loaded graph to completion and notify once.

    fail_fast=None uses the graph's own policy. correlation_id=None derives
    one from git (HEAD sha) or falls back to "local".
    """
    console = console or get_console()
    if correlation_id is None:
        correlation_id = git_correlation_id(workdir)
    if executor is None:
        executor = StepExecutor(workdir=workdir, console=console)
    executor = executor.for_graph(graph)

    console.print_run_started(workflow=graph.name, job_count=len(graph), correlation_id=correlation_id)

    scheduler = Scheduler(
        max_parallel=max_parallel,
        fail_fast=graph.fail_fast if fail_fast is None else fail_fast,
        console=console,
    )
    jobs = scheduler.run(graph, executor)
    result = RunResult(workflow=graph.name, correlation_id=correlation_id, jobs=jobs)

    console.print_results({name: r.status.value for name, r in jobs.items()}, result.outcome.value)

    if notifier is not None:
        notifier.notify(result)
    return result
