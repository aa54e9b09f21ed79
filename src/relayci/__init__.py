from .dsl import wf, job, sh, uses
from .loader import load_workflow, load_text, load_document
from .model import Job, CommandStep, WorkflowRef, WorkflowGraph, JobStatus, JobResult, RunResult
from .runner import run_workflow

__all__ = [
    "wf", "job", "sh", "uses",
    "load_workflow", "load_text", "load_document",
    "Job", "CommandStep", "WorkflowRef", "WorkflowGraph", "JobStatus", "JobResult", "RunResult",
    "run_workflow",
]
