# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from .permissions import PermissionSet

CALL_TRIGGER = "workflow_call"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    # When set, the step runs inside this container image.
    image: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Job:
    """
    A CI job as declared in a workflow document.

    A job either has steps or a ``uses`` reference to a callable workflow
    (a call-job), never both. ``needs`` names sibling jobs in the same
    workflow. ``permissions`` is ``None`` when the job inherits from its
    caller.
    """
    name: str
    steps: Tuple[Step, ...] = ()
    needs: Tuple[str, ...] = ()
    uses: Optional[str] = None
    permissions: Optional[PermissionSet] = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    enabled: bool = True

    @property
    def is_call(self) -> bool:
        return self.uses is not None


@dataclass(frozen=True)
class Workflow:
    """
    A loaded workflow document. Immutable once loaded.

    ``outputs`` maps an output name to ``(job, key)``; it is how a callable
    workflow exposes values to the job that called it.
    """
    path: str
    name: str
    jobs: Tuple[Job, ...]
    triggers: FrozenSet[str] = frozenset()
    callable: bool = False
    permissions: Optional[PermissionSet] = None
    outputs: Mapping[str, Tuple[str, str]] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> list[str]:
        return [j.name for j in self.jobs]


def is_callable(workflow: Workflow) -> bool:
    return workflow.callable or CALL_TRIGGER in workflow.triggers


def env_dict(env: Mapping[str, str] | None) -> Dict[str, str]:
    # force values to str for env compatibility
    return {str(k): str(v) for k, v in (env or {}).items()}
