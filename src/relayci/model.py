# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_LOAD_ERROR = 3  # 2 is taken by click usage errors


# ---------------------------------------------------------------------
# Definition side (immutable once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CommandStep:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Tuple[str, ...] = ()
    continue_on_error: bool = False
    timeout: float | None = None


@dataclass(frozen=True)
class WorkflowRef:
    """A step that runs another workflow definition to completion."""
    name: str
    uses: str
    secrets: Tuple[str, ...] = ()
    continue_on_error: bool = False
    graph: Optional["WorkflowGraph"] = field(default=None, compare=False, repr=False)


Step = Union[CommandStep, WorkflowRef]


@dataclass(frozen=True)
class CacheConfig:
    key: str
    paths: Tuple[str, ...]
    inputs: Tuple[str, ...] = ()
    restore_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    One schedulable node of the graph.

    Matrix jobs are expanded by the loader: every instance is its own Job
    with its own `matrix` values and the same `needs` as its definition.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    matrix: Mapping[str, str] = field(default_factory=dict)
    cache: CacheConfig | None = None
    base_name: str = ""

    @property
    def required_secrets(self) -> List[str]:
        seen: Dict[str, None] = {}
        for step in self.steps:
            for name in step.secrets:
                seen.setdefault(name, None)
        return list(seen)


@dataclass(frozen=True)
class WorkflowGraph:
    name: str
    jobs: Mapping[str, Job]
    order: Tuple[str, ...]
    fail_fast: bool = True
    env: Mapping[str, str] = field(default_factory=dict)
    source: str = "<memory>"

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", MappingProxyType(dict(self.jobs)))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def __len__(self) -> int:
        return len(self.order)

    def dependents(self) -> Dict[str, List[str]]:
        """dep -> jobs that need it, each list in declaration order."""
        adj: Dict[str, List[str]] = {name: [] for name in self.order}
        for name in self.order:
            for dep in self.jobs[name].needs:
                if name not in adj[dep]:
                    adj[dep].append(name)
        return adj

    def in_degree(self) -> Dict[str, int]:
        return {name: len(set(self.jobs[name].needs)) for name in self.order}


# ---------------------------------------------------------------------
# Execution side
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {JobStatus.SUCCESS: 0, JobStatus.SKIPPED: 1, JobStatus.FAILED: 2}


def worst_status(statuses) -> JobStatus:
    worst = JobStatus.SUCCESS
    for status in statuses:
        if status.severity > worst.severity:
            worst = status
    return worst


@dataclass
class StepResult:
    name: str
    status: JobStatus
    exit_code: int | None = None
    output: str = ""
    best_effort: bool = False


@dataclass
class JobResult:
    name: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    reason: str | None = None
    cache_restored: str | None = None  # key that was restored (exact or fallback)
    cache_saved: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS


@dataclass
class RunResult:
    workflow: str
    correlation_id: str
    jobs: Dict[str, JobResult]

    @property
    def outcome(self) -> JobStatus:
        return worst_status(r.status for r in self.jobs.values())

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.outcome is JobStatus.SUCCESS else EXIT_FAILED

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobStatus}
        for r in self.jobs.values():
            out[r.status.value] += 1
        return out

    def summary(self) -> str:
        c = self.counts()
        return (
            f"workflow '{self.workflow}' {self.outcome.value}: "
            f"{c['success']} succeeded, {c['failed']} failed, {c['skipped']} skipped"
        )
