# schema.py
"""
Pydantic models for the raw workflow definition document.

These only describe the *shape* of the document. Graph-level rules
(unique names, known dependencies, no cycles) and matrix expansion live
in loader.py / dag.py.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

Scalar = Union[str, int, float, bool]


def scalar_to_str(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _stringify_mapping(value: Any) -> Any:
    # env values are written as YAML scalars; the process env only takes strings
    if isinstance(value, dict):
        return {str(k): scalar_to_str(v) for k, v in value.items()}
    return value


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


EnvMap = Annotated[Dict[str, str], BeforeValidator(_stringify_mapping)]
NameList = Annotated[List[str], BeforeValidator(_as_list)]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class StepSchema(_Schema):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    cwd: Optional[str] = None
    env: EnvMap = Field(default_factory=dict)
    secrets: NameList = Field(default_factory=list)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout: Optional[float] = Field(default=None, alias="timeout-seconds", gt=0)

    @model_validator(mode="after")
    def _exactly_one_action(self) -> "StepSchema":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.uses is not None and (self.cwd is not None or self.env or self.timeout is not None):
            raise ValueError("'cwd', 'env' and 'timeout-seconds' only apply to 'run' steps")
        return self

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return self.run if self.run is not None else f"uses {self.uses}"


class CacheSchema(_Schema):
    key: str = Field(min_length=1)
    paths: NameList = Field(min_length=1)
    inputs: NameList = Field(default_factory=list)
    restore_keys: NameList = Field(default_factory=list, alias="restore-keys")


class JobSchema(_Schema):
    name: str = Field(min_length=1)
    needs: NameList = Field(default_factory=list)
    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)
    env: EnvMap = Field(default_factory=dict)
    cache: Optional[CacheSchema] = None
    steps: List[StepSchema] = Field(min_length=1)

    @field_validator("matrix")
    @classmethod
    def _non_empty_axes(cls, value: Dict[str, List[Scalar]]) -> Dict[str, List[Scalar]]:
        for axis, values in value.items():
            if not values:
                raise ValueError(f"matrix parameter '{axis}' has no values")
        return value


class WorkflowSchema(_Schema):
    name: str = "workflow"
    env: EnvMap = Field(default_factory=dict)
    fail_fast: bool = Field(default=True, alias="fail-fast")
    jobs: List[JobSchema] = Field(min_length=1)

    @field_validator("jobs", mode="before")
    @classmethod
    def _jobs_mapping_to_list(cls, value: Any) -> Any:
        # `jobs: {build: {...}}` is the usual form; `jobs: [{name: build, ...}]` also works
        if isinstance(value, dict):
            out = []
            for name, body in value.items():
                if body is None:
                    body = {}
                if not isinstance(body, dict):
                    raise ValueError(f"job '{name}' must be a mapping")
                if "name" in body and body["name"] != name:
                    raise ValueError(f"job '{name}' declares a different name {body['name']!r}")
                out.append({**body, "name": str(name)})
            return out
        return value
