# executor.py
from __future__ import annotations

import os
import re
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .cache import CacheStore, compute_cache_key, default_env_tag, pack_paths, unpack_blob
from .errors import CacheUnavailable, SecretMissing, StepCommandFailed
from .model import CommandStep, Job, JobResult, JobStatus, StepResult, WorkflowGraph, WorkflowRef, worst_status
from .scheduler import Scheduler
from .secretstore import MappingSecretStore, Redactor, SecretStore
from .ui.console import Console, get_console

OUTPUT_TAIL = 8000  # chars of captured output kept per step


def matrix_env(values: Mapping[str, str]) -> Dict[str, str]:
    """{"python": "3.12"} -> {"MATRIX_PYTHON": "3.12"}"""
    return {"MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", k).upper(): v for k, v in values.items()}


class StepExecutor:
    """
    Runs one job: secrets -> cache restore -> steps (in order) -> cache save.

    Instances are shared by every worker thread; all per-job state lives on
    the stack of run_job().
    """

    def __init__(
        self,
        *,
        workdir: str | Path = ".",
        secret_store: Optional[SecretStore] = None,
        cache_store: Optional[CacheStore] = None,
        env_tag: Optional[str] = None,
        workflow_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.workdir = Path(workdir).resolve()
        self.secret_store = secret_store if secret_store is not None else MappingSecretStore()
        self.cache_store = cache_store
        self.env_tag = env_tag or default_env_tag()
        self.workflow_env = dict(workflow_env or {})
        self.console = console

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    def for_graph(self, graph: WorkflowGraph, secret_store: Optional[SecretStore] = None) -> "StepExecutor":
        """Same collaborators, with the graph's workflow-level env (and optionally other secrets)."""
        return StepExecutor(
            workdir=self.workdir,
            secret_store=secret_store if secret_store is not None else self.secret_store,
            cache_store=self.cache_store,
            env_tag=self.env_tag,
            workflow_env=graph.env,
            console=self.console,
        )

    def __call__(self, job: Job) -> JobResult:
        return self.run_job(job)

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run_job(self, job: Job) -> JobResult:
        console = self._console
        started = time.monotonic()
        console.print_job_start(job.name)
        result = JobResult(name=job.name, status=JobStatus.SUCCESS)

        # ---- secrets (resolved once per job invocation) ----
        try:
            secrets = self._resolve_secrets(job)
        except SecretMissing as e:
            return self._finish(job, result, started, JobStatus.FAILED, str(e))
        redactor = Redactor(secrets.values())

        # ---- restore ----
        cache_key = self._restore_cache(job, result)

        # ---- run steps ----
        failure: Optional[StepCommandFailed] = None
        for step in job.steps:
            if failure is not None:
                result.steps.append(StepResult(name=step.name, status=JobStatus.SKIPPED))
                continue

            console.print_step(job.name, step.name)
            try:
                if isinstance(step, WorkflowRef):
                    output = self._run_workflow_ref(job, step, secrets, redactor)
                else:
                    output = self._run_step(job, step, secrets, redactor)
            except StepCommandFailed as e:
                result.steps.append(
                    StepResult(
                        name=step.name,
                        status=JobStatus.FAILED,
                        exit_code=e.exit_code,
                        output=e.output,
                        best_effort=step.continue_on_error,
                    )
                )
                console.print_step_output(job.name, e.output)
                if step.continue_on_error:
                    console.print_warning(f"best-effort step failed, continuing: {e}")
                    continue
                failure = e
                continue

            result.steps.append(StepResult(name=step.name, status=JobStatus.SUCCESS, exit_code=0, output=output))
            console.print_step_output(job.name, output)

        if failure is not None:
            return self._finish(job, result, started, JobStatus.FAILED, str(failure))

        # ---- save ----
        if cache_key is not None:
            self._save_cache(job, cache_key, result)

        return self._finish(job, result, started, JobStatus.SUCCESS, None)

    def _finish(
        self,
        job: Job,
        result: JobResult,
        started: float,
        status: JobStatus,
        reason: Optional[str],
    ) -> JobResult:
        result.status = status
        result.reason = reason
        result.duration = time.monotonic() - started
        if status is JobStatus.FAILED and reason:
            self._console.print_failure(job.name, reason, is_job=True)
        self._console.print_job_finished(job.name, status.value, result.duration)
        return result

    def _resolve_secrets(self, job: Job) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for name in job.required_secrets:
            value = self.secret_store.resolve(name)
            if value is None:
                raise SecretMissing(job=job.name, secret=name)
            values[name] = value
        return values

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _restore_cache(self, job: Job, result: JobResult) -> Optional[str]:
        """Returns the key to save under after success, or None when caching is off."""
        if job.cache is None or self.cache_store is None:
            return None
        console = self._console
        try:
            key = compute_cache_key(job.cache, workdir=self.workdir, env_tag=self.env_tag)
        except CacheUnavailable as e:
            console.print_warning(f"[{job.name}] cache unavailable, running without it: {e}")
            return None

        try:
            entry = self.cache_store.get(key, job.cache.restore_keys)
            if entry is None:
                console.print_cache_miss(job.name)
                return key
            unpack_blob(entry.blob, self.workdir)
        except CacheUnavailable as e:
            console.print_warning(f"[{job.name}] cache unavailable, running without it: {e}")
            return key

        result.cache_restored = entry.key
        console.print_cache_hit(job.name, entry.key, exact=entry.key == key)
        return key

    def _save_cache(self, job: Job, key: str, result: JobResult) -> None:
        try:
            blob = pack_paths(job.cache.paths, self.workdir)
            self.cache_store.put(key, blob)
        except CacheUnavailable as e:
            self._console.print_warning(f"[{job.name}] cache not saved: {e}")
            return
        result.cache_saved = key
        self._console.print_cache_saved(job.name, key)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _step_env(self, job: Job, step: CommandStep, secrets: Mapping[str, str]) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.workflow_env)
        env.update(job.env)
        env.update(matrix_env(job.matrix))
        env.update(step.env)
        env.update({name: secrets[name] for name in step.secrets})
        return env

    def _run_step(self, job: Job, step: CommandStep, secrets: Mapping[str, str], redactor: Redactor) -> str:
        cwd = (self.workdir / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise StepCommandFailed(
                job=job.name,
                step=step.name,
                command=redactor.redact(step.run),
                exit_code=None,
                output=f"working directory not found: {cwd}",
            )

        try:
            proc = subprocess.run(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=self._step_env(job, step, secrets),
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=step.timeout,
            )
        except subprocess.TimeoutExpired as e:
            partial = e.output.decode("utf-8", "replace") if isinstance(e.output, bytes) else (e.output or "")
            raise StepCommandFailed(
                job=job.name,
                step=step.name,
                command=redactor.redact(step.run),
                exit_code=None,
                output=redactor.redact(partial)[-OUTPUT_TAIL:] + f"\ntimed out after {step.timeout}s",
            ) from None

        # redact before anything else sees the output
        output = redactor.redact(proc.stdout or "")[-OUTPUT_TAIL:]
        if proc.returncode != 0:
            raise StepCommandFailed(
                job=job.name,
                step=step.name,
                command=redactor.redact(step.run),
                exit_code=proc.returncode,
                output=output,
            )
        return output

    def _run_workflow_ref(self, job: Job, step: WorkflowRef, secrets: Mapping[str, str], redactor: Redactor) -> str:
        graph = step.graph
        if graph is None:
            raise StepCommandFailed(
                job=job.name,
                step=step.name,
                command=f"uses {step.uses}",
                exit_code=None,
                output="referenced workflow was not loaded",
            )

        # the referenced workflow sees exactly the secrets this step passes to it
        passed = MappingSecretStore({name: secrets[name] for name in step.secrets})
        # no intra-job parallelism: the sub-workflow runs on this worker, one job at a time
        nested = self.for_graph(graph, secret_store=passed)
        results = Scheduler(max_parallel=1, fail_fast=graph.fail_fast, console=self.console).run(graph, nested)

        lines: List[str] = []
        for name, r in results.items():
            lines.append(f"{name}: {r.status.value}" + (f" ({r.reason})" if r.reason else ""))
        output = redactor.redact("\n".join(lines))
        outcome = worst_status(r.status for r in results.values())
        if outcome is not JobStatus.SUCCESS:
            raise StepCommandFailed(
                job=job.name,
                step=step.name,
                command=f"uses {step.uses}",
                exit_code=1,
                output=output,
            )
        return output
