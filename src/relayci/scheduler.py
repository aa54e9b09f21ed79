# scheduler.py
from __future__ import annotations

import heapq
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple

from .model import Job, JobResult, JobStatus, WorkflowGraph
from .ui.console import Console, get_console

JobRunner = Callable[[Job], JobResult]


def default_parallelism() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Dependency scheduler (Kahn's algorithm with dynamic readiness).

    - A job is dispatched the moment every job it needs has succeeded.
    - At most `max_parallel` jobs are in flight; ready jobs wait for a slot
      and leave the queue in declaration order.
    - When a job does not succeed, all of its transitive dependents are
      marked skipped and never dispatched.
    - With fail_fast, in-flight jobs finish but nothing new is dispatched;
      every job that never started is marked skipped.

    The scheduler knows nothing about steps: it only calls `run_fn(job)`.
    """

    def __init__(
        self,
        max_parallel: Optional[int] = None,
        fail_fast: bool = True,
        console: Optional[Console] = None,
    ):
        if max_parallel is not None and max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
        self.max_parallel = max_parallel or default_parallelism()
        self.fail_fast = fail_fast
        self.console = console

    def run(self, graph: WorkflowGraph, run_fn: JobRunner) -> Dict[str, JobResult]:
        console = self.console or get_console()
        position = {name: i for i, name in enumerate(graph.order)}
        adj = graph.dependents()
        indeg = graph.in_degree()

        ready: List[Tuple[int, str]] = [(position[n], n) for n in graph.order if indeg[n] == 0]
        heapq.heapify(ready)

        results: Dict[str, JobResult] = {}
        in_flight: Dict[Future, str] = {}
        halted = False

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="relayci-job") as pool:
            while True:
                # dispatch everything that is ready while there are free slots
                while ready and len(in_flight) < self.max_parallel and not halted:
                    _, name = heapq.heappop(ready)
                    in_flight[pool.submit(run_fn, graph.jobs[name])] = name

                if not in_flight:
                    break

                # wait for at least one completion, then loop to dispatch newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: position[in_flight[f]]):
                    name = in_flight.pop(fut)
                    result = self._collect(name, fut)
                    results[name] = result

                    if result.status is JobStatus.SUCCESS:
                        for child in adj[name]:
                            indeg[child] -= 1
                            if indeg[child] == 0 and child not in results:
                                heapq.heappush(ready, (position[child], child))
                        continue

                    self._skip_dependents(name, adj, results, console)
                    if result.status is JobStatus.FAILED and self.fail_fast and not halted:
                        halted = True
                        console.print_debug(f"fail-fast: no new jobs after '{name}' failed")

        for name in graph.order:
            if name not in results:
                reason = "not started: run halted by fail-fast"
                results[name] = JobResult(name=name, status=JobStatus.SKIPPED, reason=reason)
                console.print_job_skipped(name, reason)

        return {name: results[name] for name in graph.order}

    @staticmethod
    def _collect(name: str, fut: Future) -> JobResult:
        try:
            result = fut.result()
        except Exception as e:
            return JobResult(name=name, status=JobStatus.FAILED, reason=f"{type(e).__name__}: {e}")
        if not isinstance(result, JobResult):
            return JobResult(name=name, status=JobStatus.FAILED, reason=f"job runner returned {result!r}")
        return result

    @staticmethod
    def _skip_dependents(
        failed: str,
        adj: Dict[str, List[str]],
        results: Dict[str, JobResult],
        console: Console,
    ) -> None:
        stack = [(child, failed) for child in reversed(adj[failed])]
        while stack:
            name, cause = stack.pop()
            if name in results:
                continue
            reason = f"dependency '{cause}' did not succeed"
            results[name] = JobResult(name=name, status=JobStatus.SKIPPED, reason=reason)
            console.print_job_skipped(name, reason)
            stack.extend((child, name) for child in reversed(adj[name]))
