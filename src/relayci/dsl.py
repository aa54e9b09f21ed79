# src/relayci/dsl.py
"""
Python helpers for writing workflows without YAML.

Every helper returns plain definition-document pieces, so a python workflow
goes through exactly the same validation as a YAML one:

    from relayci.dsl import wf, job, sh, cache

    def workflow():
        return wf(
            job("lint", sh("Ruff", "ruff check .")),
            job(
                "test",
                sh("Pytest", "pytest -q"),
                needs=["lint"],
                matrix={"python": ["3.11", "3.12"]},
                cache=cache("pip-${{ matrix.python }}", ".venv", inputs=["requirements.txt"]),
            ),
        )
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    secrets: Optional[List[str]] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Dict[str, Any]:
    """Create a shell step."""
    step: Dict[str, Any] = {"name": name, "run": cmd}
    if cwd is not None:
        step["cwd"] = cwd
    if env:
        step["env"] = dict(env)
    if secrets:
        step["secrets"] = list(secrets)
    if continue_on_error:
        step["continue-on-error"] = True
    if timeout is not None:
        step["timeout-seconds"] = timeout
    return step


def uses(
    name: str,
    ref: str,
    *,
    secrets: Optional[List[str]] = None,
    continue_on_error: bool = False,
) -> Dict[str, Any]:
    """Create a step that runs another workflow file."""
    step: Dict[str, Any] = {"name": name, "uses": ref}
    if secrets:
        step["secrets"] = list(secrets)
    if continue_on_error:
        step["continue-on-error"] = True
    return step


def cache(
    key: str,
    *paths: str,
    inputs: Optional[Iterable[str]] = None,
    restore_keys: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """cache("deps", ".venv", inputs=["requirements.txt"], restore_keys=["deps-"])"""
    return {
        "key": key,
        "paths": list(paths),
        "inputs": list(inputs or []),
        "restore-keys": list(restore_keys or []),
    }


# ---------------------------------------------------------------------
# Job / workflow helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Dict[str, Any],
    needs: Optional[List[str]] = None,
    matrix: Optional[Dict[str, Iterable[Any]]] = None,
    env: Optional[Dict[str, Any]] = None,
    cache: Optional[Dict[str, Any]] = None,
    cwd: str | None = None,  # default cwd applied to run steps missing cwd
) -> Dict[str, Any]:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    steps_final = [dict(s) for s in steps]
    if cwd is not None:
        for s in steps_final:
            if "run" in s:
                s.setdefault("cwd", cwd)

    body: Dict[str, Any] = {"name": name, "steps": steps_final}
    if needs:
        body["needs"] = list(needs)
    if matrix:
        body["matrix"] = {k: list(v) for k, v in matrix.items()}
    if env:
        body["env"] = dict(env)
    if cache is not None:
        body["cache"] = cache
    return body


def wf(
    *jobs: Dict[str, Any],
    name: str = "workflow",
    env: Optional[Dict[str, Any]] = None,
    fail_fast: bool = True,
) -> Dict[str, Any]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)) in a workflow file.
    """
    doc: Dict[str, Any] = {"name": name, "fail-fast": fail_fast, "jobs": list(jobs)}
    if env:
        doc["env"] = dict(env)
    return doc


workflow = wf  # alias (avoid naming your function workflow if you import it)
