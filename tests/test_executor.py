import sys

import pytest

from relayci.cache import MemoryCacheStore, pack_paths
from relayci.errors import CacheUnavailable
from relayci.executor import OUTPUT_TAIL, matrix_env
from relayci.loader import load_document, load_workflow
from relayci.model import JobStatus

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="steps use POSIX shell syntax")


def _single_job(steps, base_dir, **job_fields):
    graph = load_document({"jobs": {"job": {"steps": steps, **job_fields}}}, base_dir=base_dir)
    return graph, graph.jobs["job"]


class BrokenStore:
    def get(self, key, restore_keys=()):
        raise CacheUnavailable("backend down")

    def put(self, key, blob):
        raise CacheUnavailable("backend down")


BUILD_OR_RESTORE = (
    "if [ -f .venv/marker ]; then echo restored; "
    "else mkdir -p .venv && echo built > .venv/marker && echo built; fi"
)


class TestSteps:
    def test_steps_run_in_order(self, tmp_path, make_executor):
        _, job = _single_job([{"run": "echo one"}, {"run": "echo two"}], tmp_path)

        result = make_executor().run_job(job)

        assert result.status is JobStatus.SUCCESS
        assert [s.output.strip() for s in result.steps] == ["one", "two"]
        assert [s.exit_code for s in result.steps] == [0, 0]

    def test_failing_step_fails_job_and_skips_the_rest(self, tmp_path, make_executor):
        _, job = _single_job(
            [{"run": "true"}, {"name": "broken", "run": "echo oops; exit 3"}, {"run": "touch never"}],
            tmp_path,
        )

        result = make_executor().run_job(job)

        assert result.status is JobStatus.FAILED
        assert [s.status for s in result.steps] == [JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED]
        assert result.steps[1].exit_code == 3
        assert "oops" in result.steps[1].output
        assert "broken" in result.reason and "exit=3" in result.reason
        assert not (tmp_path / "never").exists()

    def test_best_effort_failure_does_not_fail_the_job(self, tmp_path, make_executor, console):
        _, job = _single_job(
            [{"run": "exit 1", "continue-on-error": True}, {"run": "echo after"}],
            tmp_path,
        )

        result = make_executor().run_job(job)

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].status is JobStatus.FAILED
        assert result.steps[0].best_effort is True
        assert result.steps[1].output.strip() == "after"
        assert "best-effort step failed" in console.text

    def test_step_cwd_is_relative_to_workdir(self, tmp_path, make_executor):
        (tmp_path / "sub").mkdir()
        _, job = _single_job([{"run": "pwd", "cwd": "sub"}], tmp_path)

        result = make_executor().run_job(job)

        assert result.steps[0].output.strip().endswith("sub")

    def test_missing_cwd_fails_the_step(self, tmp_path, make_executor):
        _, job = _single_job([{"run": "true", "cwd": "nowhere"}], tmp_path)

        result = make_executor().run_job(job)

        assert result.status is JobStatus.FAILED
        assert result.steps[0].exit_code is None
        assert "working directory not found" in result.steps[0].output

    def test_timeout_fails_the_step(self, tmp_path, make_executor):
        _, job = _single_job([{"run": "sleep 3", "timeout-seconds": 0.2}], tmp_path)

        result = make_executor().run_job(job)

        assert result.status is JobStatus.FAILED
        assert result.steps[0].exit_code is None
        assert "timed out" in result.steps[0].output

    def test_env_layers(self, tmp_path, make_executor):
        graph = load_document(
            {
                "env": {"LAYER": "workflow", "FROM_WORKFLOW": "w"},
                "jobs": {
                    "job": {
                        "env": {"LAYER": "job", "FROM_JOB": "j"},
                        "steps": [
                            {"run": 'echo "$LAYER $FROM_WORKFLOW $FROM_JOB"'},
                            {"run": 'echo "$LAYER"', "env": {"LAYER": "step"}},
                        ],
                    }
                },
            },
            base_dir=tmp_path,
        )

        result = make_executor().for_graph(graph).run_job(graph.jobs["job"])

        assert result.steps[0].output.strip() == "job w j"
        assert result.steps[1].output.strip() == "step"

    def test_matrix_values_reach_the_environment(self, tmp_path, make_executor):
        graph = load_document(
            {"jobs": {"t": {"matrix": {"python": ["3.11"]}, "steps": [{"run": "echo $MATRIX_PYTHON ${{ matrix.python }}"}]}}},
            base_dir=tmp_path,
        )

        result = make_executor().run_job(graph.jobs["t (3.11)"])

        assert result.steps[0].output.strip() == "3.11 3.11"


def test_matrix_env_names():
    assert matrix_env({"python": "3.12", "node-version": "20"}) == {
        "MATRIX_PYTHON": "3.12",
        "MATRIX_NODE_VERSION": "20",
    }


class TestSecrets:
    def test_missing_secret_fails_before_any_step(self, tmp_path, make_executor):
        _, job = _single_job([{"run": "touch ran"}, {"run": "true", "secrets": ["DEPLOY_KEY"]}], tmp_path)

        result = make_executor().run_job(job)

        assert result.status is JobStatus.FAILED
        assert result.steps == []
        assert "DEPLOY_KEY" in result.reason
        assert not (tmp_path / "ran").exists()

    def test_secret_is_injected_and_redacted(self, tmp_path, make_executor, console):
        _, job = _single_job(
            [{"run": 'echo "token is $RELAYCI_TEST_TOKEN"', "secrets": ["RELAYCI_TEST_TOKEN"]}],
            tmp_path,
        )

        result = make_executor(secrets={"RELAYCI_TEST_TOKEN": "s3cr3t-value"}).run_job(job)

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].output.strip() == "token is ***"
        assert "s3cr3t-value" not in console.text

    def test_failed_step_output_is_redacted(self, tmp_path, make_executor, console):
        _, job = _single_job(
            [{"run": 'echo "$RELAYCI_TEST_TOKEN"; exit 2', "secrets": ["RELAYCI_TEST_TOKEN"]}],
            tmp_path,
        )

        result = make_executor(secrets={"RELAYCI_TEST_TOKEN": "s3cr3t-value"}).run_job(job)

        assert result.status is JobStatus.FAILED
        assert "***" in result.steps[0].output
        assert "s3cr3t-value" not in result.steps[0].output
        assert "s3cr3t-value" not in console.text

    def test_timed_out_output_is_redacted_before_truncation(self, tmp_path, make_executor, console):
        token = "s3cr3t-TVALUE1234567"
        filler = OUTPUT_TAIL - 10  # the secret straddles the start of the kept tail
        _, job = _single_job(
            [
                {
                    "run": f"printf '%s' \"$RELAYCI_TEST_TOKEN\"; head -c {filler} /dev/zero | tr '\\0' x; exec sleep 5",
                    "secrets": ["RELAYCI_TEST_TOKEN"],
                    "timeout-seconds": 1.5,
                }
            ],
            tmp_path,
        )

        result = make_executor(secrets={"RELAYCI_TEST_TOKEN": token}).run_job(job)

        output = result.steps[0].output
        assert result.status is JobStatus.FAILED
        assert output.startswith("***x")
        assert "TVALUE1234" not in output
        assert "TVALUE1234" not in console.text

    def test_secret_only_reaches_steps_that_declare_it(self, tmp_path, make_executor):
        _, job = _single_job(
            [
                {"run": "true", "secrets": ["RELAYCI_TEST_TOKEN"]},
                {"run": 'echo "[${RELAYCI_TEST_TOKEN:-unset}]"'},
            ],
            tmp_path,
        )

        result = make_executor(secrets={"RELAYCI_TEST_TOKEN": "s3cr3t-value"}).run_job(job)

        assert result.steps[1].output.strip() == "[unset]"

    def test_secret_values_are_resolved_once_per_job(self, tmp_path, console):
        from relayci.executor import StepExecutor

        class CountingStore:
            calls = 0

            def resolve(self, name):
                CountingStore.calls += 1
                return "v"

        _, job = _single_job(
            [{"run": "true", "secrets": ["A"]}, {"run": "true", "secrets": ["A"]}],
            tmp_path,
        )
        StepExecutor(workdir=tmp_path, secret_store=CountingStore(), console=console).run_job(job)
        assert CountingStore.calls == 1


class TestCache:
    def _job(self, tmp_path, restore_keys=()):
        (tmp_path / "requirements.txt").write_text("click\n")
        _, job = _single_job(
            [{"run": BUILD_OR_RESTORE}],
            tmp_path,
            cache={"key": "deps", "paths": [".venv"], "inputs": ["requirements.txt"], "restore-keys": list(restore_keys)},
        )
        return job

    def test_saved_after_success_and_restored_next_run(self, tmp_path, make_executor):
        store = MemoryCacheStore()
        job = self._job(tmp_path)
        executor = make_executor(cache_store=store)

        first = executor.run_job(job)
        assert first.steps[0].output.strip() == "built"
        assert first.cache_restored is None
        assert first.cache_saved.startswith("deps-test-os-")
        assert len(store) == 1

        (tmp_path / ".venv" / "marker").unlink()
        second = executor.run_job(job)
        assert second.cache_restored == first.cache_saved
        assert second.steps[0].output.strip() == "restored"

    def test_restore_key_fallback(self, tmp_path, make_executor, console):
        seed = tmp_path / "seed"
        (seed / ".venv").mkdir(parents=True)
        (seed / ".venv" / "marker").write_text("old build\n")
        store = MemoryCacheStore()
        store.put("deps-test-os-previous", pack_paths([".venv"], seed))

        result = make_executor(cache_store=store).run_job(self._job(tmp_path, restore_keys=["deps-test-os-"]))

        assert result.cache_restored == "deps-test-os-previous"
        assert result.steps[0].output.strip() == "restored"
        assert "restored from fallback" in console.text

    def test_unavailable_cache_is_soft(self, tmp_path, make_executor, console):
        result = make_executor(cache_store=BrokenStore()).run_job(self._job(tmp_path))

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].output.strip() == "built"
        assert result.cache_restored is None
        assert result.cache_saved is None
        assert "backend down" in console.text

    def test_nothing_saved_when_job_fails(self, tmp_path, make_executor):
        store = MemoryCacheStore()
        _, job = _single_job(
            [{"run": "mkdir -p .venv && exit 1"}],
            tmp_path,
            cache={"key": "deps", "paths": [".venv"]},
        )

        result = make_executor(cache_store=store).run_job(job)

        assert result.status is JobStatus.FAILED
        assert result.cache_saved is None
        assert len(store) == 0


class TestWorkflowRef:
    def test_referenced_workflow_runs_to_completion(self, tmp_path, write_file, make_executor):
        write_file(
            "shared/checks.yml",
            """
            name: checks
            jobs:
              format:
                steps:
                  - run: touch formatted
              lint:
                needs: format
                steps:
                  - run: test -f formatted
            """,
        )
        graph = load_workflow(
            write_file("ci.yml", "jobs:\n  main:\n    steps:\n      - uses: ./shared/checks.yml\n")
        )

        result = make_executor().run_job(graph.jobs["main"])

        assert result.status is JobStatus.SUCCESS
        assert result.steps[0].output.splitlines() == ["format: success", "lint: success"]

    def test_referenced_workflow_only_sees_passed_secrets(self, tmp_path, write_file, make_executor, console):
        write_file(
            "deploy.yml",
            """
            fail-fast: false
            jobs:
              publish:
                steps:
                  - run: echo "publishing with $PUBLISH_TOKEN" > published.txt
                    secrets: [PUBLISH_TOKEN]
              admin:
                steps:
                  - run: touch admin-ran
                    secrets: [ADMIN_TOKEN]
            """,
        )
        graph = load_workflow(
            write_file(
                "ci.yml",
                "jobs:\n  main:\n    steps:\n      - uses: ./deploy.yml\n        secrets: [PUBLISH_TOKEN]\n",
            )
        )
        executor = make_executor(secrets={"PUBLISH_TOKEN": "pub-value-123", "ADMIN_TOKEN": "admin-value-456"})

        result = executor.run_job(graph.jobs["main"])

        assert (tmp_path / "published.txt").read_text().strip() == "publishing with pub-value-123"
        assert not (tmp_path / "admin-ran").exists()
        assert result.status is JobStatus.FAILED
        assert "publish: success" in result.steps[0].output
        assert "admin: failed" in result.steps[0].output
        assert "ADMIN_TOKEN" in result.steps[0].output
        assert "admin-value-456" not in console.text

    def test_failing_referenced_workflow_fails_the_step(self, tmp_path, write_file, make_executor):
        write_file("bad.yml", "jobs:\n  a:\n    steps:\n      - run: exit 4\n  b:\n    needs: a\n    steps:\n      - run: 'true'\n")
        graph = load_workflow(
            write_file("ci.yml", "jobs:\n  main:\n    steps:\n      - uses: ./bad.yml\n      - run: touch after\n")
        )

        result = make_executor().run_job(graph.jobs["main"])

        assert result.status is JobStatus.FAILED
        assert result.steps[0].exit_code == 1
        assert "a: failed" in result.steps[0].output
        assert "b: skipped" in result.steps[0].output
        assert result.steps[1].status is JobStatus.SKIPPED
        assert not (tmp_path / "after").exists()
