# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence


class ChainCIError(Exception):
    """Base class for every error chainci raises on purpose."""


class BuildError(ChainCIError):
    """
    Raised while loading or building a pipeline.

    Build errors are always raised before any job is started, so a pipeline
    that fails to build never has side effects.
    """


@dataclass(eq=False)
class ParseError(BuildError):
    source: str
    message: str

    def __str__(self) -> str:
        return f"{self.source}: {self.message}"


@dataclass(eq=False)
class NotFoundError(BuildError):
    path: str
    root: Optional[str] = None

    def __str__(self) -> str:
        if self.root:
            return f"Workflow not found: {self.path} (looked in {self.root})"
        return f"Workflow not found: {self.path}"


@dataclass(eq=False)
class UnresolvedReferenceError(BuildError):
    job: str
    reference: str
    reason: str

    def __str__(self) -> str:
        return f"Job '{self.job}' uses '{self.reference}': {self.reason}"


@dataclass(eq=False)
class InvalidReferenceError(BuildError):
    job: str
    needs: str
    known: Sequence[str] = field(default_factory=tuple)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.needs}'. "
            f"Known jobs in scope: {sorted(self.known)}"
        )


@dataclass(eq=False)
class CyclicDependencyError(BuildError):
    cycle: Sequence[str]

    def __str__(self) -> str:
        return "Dependency cycle: " + " -> ".join(self.cycle)


@dataclass(eq=False)
class PermissionEscalationError(BuildError):
    job: str
    scope: str
    requested: str
    allowed: str

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' requests {self.scope}: {self.requested} "
            f"but its caller only allows {self.scope}: {self.allowed}"
        )


@dataclass(eq=False)
class StepFailure(ChainCIError):
    job: str
    step: str
    cmd: str
    exit_code: Optional[int] = None
    timed_out: bool = False

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
