# loader.py
from __future__ import annotations

import itertools
import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .dag import build_graph
from .errors import CyclicDependency, DuplicateJobName, MalformedDefinition, UnknownDependency
from .model import CacheConfig, CommandStep, Job, Step, WorkflowGraph, WorkflowRef
from .schema import JobSchema, StepSchema, WorkflowSchema, scalar_to_str

YAML_SUFFIXES = (".yml", ".yaml")

_MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowGraph:
    """
    Load a workflow from a .yml/.yaml document or a python file.

    A python workflow file must define either:
      - workflow() -> dict   (usually built with relayci.dsl.wf)
      - WORKFLOW = {...}

    Raises a LoadError subclass when the definition is rejected.
    """
    return _Loader().load_path(Path(path))


def load_text(text: str, *, base_dir: str | Path | None = None, source: str = "<string>") -> WorkflowGraph:
    """Load a YAML document from a string. `uses:` paths resolve against base_dir."""
    doc = parse_yaml(text, source=source)
    return _Loader().build(doc, base_dir=_base(base_dir), source=source)


def load_document(
    document: Mapping[str, Any],
    *,
    base_dir: str | Path | None = None,
    source: str = "<memory>",
) -> WorkflowGraph:
    """Load an already-parsed definition document (e.g. from relayci.dsl)."""
    return _Loader().build(document, base_dir=_base(base_dir), source=source)


def parse_yaml(text: str, *, source: str = "<string>") -> Any:
    loader = yaml.SafeLoader(text)
    try:
        node = loader.get_single_node()
        if node is None:
            raise MalformedDefinition(f"{source}: empty workflow document")
        _check_duplicate_jobs(node)
        return loader.construct_document(node)
    except yaml.YAMLError as e:
        raise MalformedDefinition(f"{source}: invalid YAML: {e}") from e
    finally:
        loader.dispose()


def expand_matrix(matrix: Mapping[str, List[Any]]) -> List[Dict[str, str]]:
    """
    Cartesian product of the matrix axes, in declared key/value order.
    An empty matrix yields a single empty combination.
    """
    if not matrix:
        return [{}]
    axes = [[(key, scalar_to_str(v)) for v in values] for key, values in matrix.items()]
    return [dict(combo) for combo in itertools.product(*axes)]


def instance_name(base: str, values: Mapping[str, str]) -> str:
    if not values:
        return base
    return f"{base} ({', '.join(str(v) for v in values.values())})"


def interpolate(text: str, values: Mapping[str, str], *, where: str) -> str:
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in values:
            raise MalformedDefinition(f"{where}: unknown matrix parameter '{key}'")
        return values[key]

    return _MATRIX_REF.sub(_sub, text)


# ----------------------------------------------------------------------
# Internals
# ----------------------------------------------------------------------

def _base(base_dir: str | Path | None) -> Path:
    return Path(base_dir).expanduser().resolve() if base_dir is not None else Path.cwd()


def _check_duplicate_jobs(root: yaml.Node) -> None:
    # yaml.safe_load keeps the last of two equal keys; job names must be unique
    if not isinstance(root, yaml.MappingNode):
        return
    for key_node, value_node in root.value:
        if getattr(key_node, "value", None) != "jobs" or not isinstance(value_node, yaml.MappingNode):
            continue
        seen = set()
        for job_key, _ in value_node.value:
            name = getattr(job_key, "value", None)
            if name in seen:
                raise DuplicateJobName(str(name))
            seen.add(name)


def _format_validation(err: ValidationError, source: str) -> str:
    lines = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "<root>"
        lines.append(f"{loc}: {e.get('msg')}")
    return f"{source}: invalid workflow definition\n  " + "\n  ".join(lines)


def _run_python_workflow(path: Path) -> Any:
    module_name = f"relayci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except SyntaxError as e:
        raise MalformedDefinition(f"{path}: {e}") from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        doc = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        doc = globals_dict["WORKFLOW"]
    else:
        raise MalformedDefinition(
            f"{path}: python workflows must define workflow() -> dict or WORKFLOW = {{...}}. "
            "Build the document with relayci.dsl.wf(job(...), ...)."
        )
    return doc


class _Loader:
    """One top-level load. Referenced workflows are loaded once and checked for cycles."""

    def __init__(self) -> None:
        self._loaded: Dict[Path, WorkflowGraph] = {}
        self._stack: List[Path] = []

    def load_path(self, path: Path) -> WorkflowGraph:
        path = path.expanduser().resolve()
        if path in self._stack:
            chain = self._stack[self._stack.index(path):] + [path]
            raise CyclicDependency([str(p) for p in chain])
        if path in self._loaded:
            return self._loaded[path]
        if not path.is_file():
            raise MalformedDefinition(f"Workflow file not found: {path}")

        self._stack.append(path)
        try:
            if path.suffix in YAML_SUFFIXES:
                try:
                    text = path.read_text(encoding="utf-8")
                except OSError as e:
                    raise MalformedDefinition(f"Could not read workflow {path}: {e}") from e
                doc = parse_yaml(text, source=str(path))
            elif path.suffix == ".py":
                doc = _run_python_workflow(path)
            else:
                raise MalformedDefinition(f"Workflow must be .yml, .yaml or .py, got: {path.name}")
            graph = self.build(doc, base_dir=path.parent, source=str(path))
        finally:
            self._stack.pop()

        self._loaded[path] = graph
        return graph

    def build(self, document: Any, *, base_dir: Path, source: str) -> WorkflowGraph:
        if not isinstance(document, Mapping):
            raise MalformedDefinition(f"{source}: workflow document must be a mapping")
        try:
            schema = WorkflowSchema.model_validate(dict(document))
        except ValidationError as e:
            raise MalformedDefinition(_format_validation(e, source)) from e

        # ---- matrix expansion: one definition -> N nodes ----
        expanded: List[Tuple[JobSchema, Dict[str, str], str]] = []
        targets: Dict[str, List[str]] = {}
        for definition in schema.jobs:
            if definition.name in targets:
                raise DuplicateJobName(definition.name)
            names = []
            for values in expand_matrix(definition.matrix):
                name = instance_name(definition.name, values)
                expanded.append((definition, values, name))
                names.append(name)
            targets[definition.name] = names
        for _, _, name in expanded:
            targets.setdefault(name, [name])

        jobs: List[Job] = []
        for definition, values, name in expanded:
            needs: List[str] = []
            for dep in definition.needs:
                if dep not in targets:
                    raise UnknownDependency(job=name, dependency=dep, known=[s.name for s in schema.jobs])
                for t in targets[dep]:
                    if t not in needs:
                        needs.append(t)
            jobs.append(self._build_job(definition, values, name, needs, base_dir))

        return build_graph(
            jobs,
            name=schema.name,
            fail_fast=schema.fail_fast,
            env=dict(schema.env),
            source=source,
        )

    def _build_job(
        self,
        definition: JobSchema,
        values: Dict[str, str],
        name: str,
        needs: List[str],
        base_dir: Path,
    ) -> Job:
        where = f"job '{name}'"

        def sub(text: Optional[str]) -> Optional[str]:
            return None if text is None else interpolate(text, values, where=where)

        cache = None
        if definition.cache is not None:
            cache = CacheConfig(
                key=sub(definition.cache.key),
                paths=tuple(sub(p) for p in definition.cache.paths),
                inputs=tuple(sub(p) for p in definition.cache.inputs),
                restore_keys=tuple(sub(p) for p in definition.cache.restore_keys),
            )

        return Job(
            name=name,
            steps=tuple(self._build_step(s, sub, base_dir) for s in definition.steps),
            needs=tuple(needs),
            env={k: sub(v) for k, v in definition.env.items()},
            matrix=dict(values),
            cache=cache,
            base_name=definition.name,
        )

    def _build_step(self, definition: StepSchema, sub, base_dir: Path) -> Step:
        if definition.run is not None:
            return CommandStep(
                name=sub(definition.display_name),
                run=sub(definition.run),
                cwd=sub(definition.cwd),
                env={k: sub(v) for k, v in definition.env.items()},
                secrets=tuple(definition.secrets),
                continue_on_error=definition.continue_on_error,
                timeout=definition.timeout,
            )

        ref = sub(definition.uses)
        target = Path(ref).expanduser()
        if not target.is_absolute():
            target = base_dir / target
        return WorkflowRef(
            name=sub(definition.display_name),
            uses=ref,
            secrets=tuple(definition.secrets),
            continue_on_error=definition.continue_on_error,
            graph=self.load_path(target),
        )
