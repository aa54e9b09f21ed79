# relayci_workflow.py
# Workflow for relayci itself: lint, tests on several interpreters, packaging
from __future__ import annotations
from relayci.dsl import wf, job, sh, cache


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests", continue_on_error=True),
            sh("Ruff format check", "ruff format --check src tests", continue_on_error=True),
        ),

        # Test job - one instance per interpreter, each with its own venv cache
        job(
            "test",
            sh("Create venv", "test -x .venv-${{ matrix.python }}/bin/python || python${{ matrix.python }} -m venv .venv-${{ matrix.python }}"),
            sh("Install package", ".venv-${{ matrix.python }}/bin/pip install -q -e '.[test]'"),
            sh("Run pytest", ".venv-${{ matrix.python }}/bin/pytest -q", timeout=900),
            needs=["lint"],
            matrix={"python": ["3.10", "3.11", "3.12"]},
            cache=cache(
                "venv-${{ matrix.python }}",
                ".venv-${{ matrix.python }}",
                inputs=["pyproject.toml"],
                restore_keys=["venv-${{ matrix.python }}-"],
            ),
        ),

        # Build job - sdist and wheel once every test instance passed
        job(
            "build",
            sh("Build distributions", "python -m build --outdir dist ."),
            needs=["test"],
        ),
        name="relayci",
    )
