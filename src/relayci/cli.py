# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

from . import settings
from .cache import FileCacheStore, RedisCacheStore
from .dag import topo_levels
from .errors import LoadError
from .executor import StepExecutor
from .loader import load_workflow
from .model import EXIT_FAILED, EXIT_LOAD_ERROR
from .notifier import ConsoleChannel, Notifier, WebhookChannel
from .runner import run_workflow
from .secretstore import ChainSecretStore, EnvSecretStore, load_secret_file
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("relayci.yml", "relayci.yaml", "relayci_workflow.py")


def find_workflow_files(root: Path) -> list[Path]:
    """Default workflow files present in `root`."""
    return [root / name for name in DEFAULT_WORKFLOW_FILES if (root / name).is_file()]


def discover_workflow(workflow_arg: Optional[str], root: Path) -> Path:
    """
    Resolve the workflow file from --workflow or from the defaults in root.

    Raises:
        SystemExit: If no workflow (or more than one default) is found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.is_absolute() and not workflow_path.exists():
            workflow_path = root / workflow_path
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  relayci run --workflow ci.yml",
            )
            sys.exit(EXIT_LOAD_ERROR)
        return workflow_path

    workflow_files = find_workflow_files(root)

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            f"Could not find any workflow file in {root}.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_WORKFLOW_FILES)],
            suggestion="Create relayci.yml or specify a workflow explicitly:\n  relayci run --workflow ci.yml",
        )
        sys.exit(EXIT_LOAD_ERROR)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  relayci run --workflow {workflow_files[0].name}",
        )
        sys.exit(EXIT_LOAD_ERROR)

    return workflow_files[0]


def _load_or_exit(workflow_path: Path):
    try:
        return load_workflow(workflow_path)
    except LoadError as e:
        get_console().print_error(
            f"Invalid workflow ({type(e).__name__})",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(EXIT_LOAD_ERROR)


def _cache_store(backend: str, cache_dir: str, redis_url: str, root: Path):
    if backend == "none":
        return None
    if backend == "redis":
        return RedisCacheStore(redis_url)
    path = Path(cache_dir).expanduser()
    return FileCacheStore(path if path.is_absolute() else root / path)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
def cli(debug):
    """relayci: run declarative CI workflows locally."""
    set_console(Console(debug=debug))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); defaults to relayci.yml if present")
@click.option(
    "--workdir",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False, exists=True),
    help="Directory steps run in",
)
@click.option("--workers", default=settings.MAX_PARALLEL, type=click.IntRange(min=1), help="Max parallel jobs")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Stop dispatching after the first failure (default: the workflow's fail-fast)",
)
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="File cache directory")
@click.option(
    "--cache-backend",
    type=click.Choice(["file", "redis", "none"]),
    default=settings.CACHE_BACKEND,
    show_default=True,
)
@click.option("--redis-url", default=settings.REDIS_URL, show_default=True, help="Used with --cache-backend redis")
@click.option("--env-tag", default=settings.ENV_TAG, help="Environment tag baked into cache keys (default: os-arch)")
@click.option("--secrets-file", default=settings.SECRETS_FILE, type=click.Path(dir_okay=False), help="YAML/JSON NAME: value file")
@click.option("--secret-prefix", default=settings.SECRET_PREFIX, help="Environment variable prefix for secrets")
@click.option("--correlation-id", default=None, help="Run identifier for notifications (default: git HEAD sha)")
@click.option("--notify-webhook", "webhooks", multiple=True, default=settings.WEBHOOK_URLS, help="Webhook URL (repeatable)")
def run(
    workflow,
    workdir,
    workers,
    fail_fast,
    cache_dir,
    cache_backend,
    redis_url,
    env_tag,
    secrets_file,
    secret_prefix,
    correlation_id,
    webhooks,
):
    """Run a relayci workflow."""
    console = get_console()
    root = Path(workdir).resolve()
    workflow_path = discover_workflow(workflow, root)
    graph = _load_or_exit(workflow_path)

    try:
        stores = [EnvSecretStore(prefix=secret_prefix)]
        if secrets_file:
            stores.insert(0, load_secret_file(secrets_file))
        executor = StepExecutor(
            workdir=root,
            secret_store=ChainSecretStore(*stores),
            cache_store=_cache_store(cache_backend, cache_dir, redis_url, root),
            env_tag=env_tag,
            console=console,
        )
        notifier = Notifier(
            [ConsoleChannel(console), *(WebhookChannel(url) for url in webhooks)],
            console=console,
        )
        result = run_workflow(
            graph,
            executor=executor,
            max_parallel=workers,
            fail_fast=fail_fast,
            notifier=notifier,
            correlation_id=correlation_id,
            workdir=root,
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except LoadError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_LOAD_ERROR)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); defaults to relayci.yml if present")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False, exists=True))
def validate(workflow, workdir):
    """Load a workflow and print its execution plan without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow, Path(workdir).resolve())
    graph = _load_or_exit(workflow_path)

    adj = graph.dependents()
    console.print_info(f"Workflow '{graph.name}' is valid: {len(graph)} job(s)")
    console.print_plan(topo_levels(adj, graph.in_degree(), graph.order))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
