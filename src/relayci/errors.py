# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class RelayCIError(Exception):
    """Base class for every error raised by relayci."""


# ----------------------------------------------------------------------
# Load-time errors (fatal, nothing runs)
# ----------------------------------------------------------------------

class LoadError(RelayCIError):
    """The workflow definition was rejected before any job executed."""


class MalformedDefinition(LoadError):
    pass


@dataclass
class DuplicateJobName(LoadError):
    name: str

    def __str__(self) -> str:
        return f"Duplicate job name: {self.name!r}"


@dataclass
class UnknownDependency(LoadError):
    job: str
    dependency: str
    known: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {self.known}"
        )


@dataclass
class CyclicDependency(LoadError):
    nodes: list[str]

    def __str__(self) -> str:
        return f"Dependency cycle detected. Stuck nodes: {self.nodes}"


# ----------------------------------------------------------------------
# Run-time errors
# ----------------------------------------------------------------------

@dataclass
class StepCommandFailed(RelayCIError):
    job: str
    step: str
    command: str
    exit_code: int | None
    output: str = ""

    def __str__(self) -> str:
        code = "did not complete" if self.exit_code is None else f"exit={self.exit_code}"
        return f"[{self.job}] step '{self.step}' failed ({code}): {self.command}"


@dataclass
class SecretMissing(RelayCIError):
    job: str
    secret: str

    def __str__(self) -> str:
        return f"[{self.job}] required secret '{self.secret}' is not available"


class CacheUnavailable(RelayCIError):
    """Cache store or archive failure. Callers treat it as a soft failure."""


class NotificationError(RelayCIError):
    pass
