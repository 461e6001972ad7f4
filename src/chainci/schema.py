# schema.py
"""
On-disk workflow document schema.

Documents are validated eagerly with pydantic and converted into the
immutable model types in ``chainci.model``. Everything that is a string in
YAML (``needs``, ``uses``, ``permissions``, ``on``, output expressions) is
turned into typed values here, once.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .model import CALL_TRIGGER, Job, Step, Workflow, env_dict
from .permissions import PermissionSet

JOB_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
OUTPUT_EXPR = re.compile(
    r"^(?:\$\{\{\s*)?jobs\.([A-Za-z_][A-Za-z0-9_-]*)\.outputs\.([A-Za-z0-9_.-]+)(?:\s*\}\})?$"
)


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class StepDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run: str
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    image: Optional[str] = None
    env: Dict[str, Any] = Field(default_factory=dict)

    def to_step(self, index: int) -> Step:
        return Step(
            name=self.name or f"step-{index + 1}",
            run=self.run,
            cwd=self.cwd,
            image=self.image,
            env=env_dict(self.env),
        )


class JobDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    uses: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    permissions: Optional[Any] = None
    steps: List[StepDocument] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", ge=0)
    enabled: bool = Field(default=True, alias="if")
    # Accepted for compatibility with hosted CI documents; runners are not provisioned here.
    runs_on: Optional[Any] = Field(default=None, alias="runs-on")

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return _as_list(v)

    @model_validator(mode="after")
    def _uses_or_steps(self) -> "JobDocument":
        if self.uses is not None and self.steps:
            raise ValueError("a job with 'uses' cannot also declare 'steps'")
        if self.uses is None and not self.steps:
            raise ValueError("a job needs at least one step or a 'uses' reference")
        if self.uses is not None and not self.uses.strip():
            raise ValueError("'uses' must not be empty")
        return self

    def to_job(self, name: str) -> Job:
        return Job(
            name=name,
            steps=tuple(s.to_step(i) for i, s in enumerate(self.steps)),
            needs=tuple(dict.fromkeys(self.needs)),
            uses=self.uses.strip() if self.uses else None,
            permissions=PermissionSet.parse(self.permissions) if self.permissions is not None else None,
            env=env_dict(self.env),
            timeout=self.timeout_minutes * 60 if self.timeout_minutes is not None else None,
            enabled=self.enabled,
        )


def _triggers(on: Any) -> Tuple[frozenset, Dict[str, Any]]:
    """Trigger names plus the ``workflow_call`` block, if it is a mapping."""
    if on is None:
        return frozenset(), {}
    if isinstance(on, str):
        return frozenset([on]), {}
    if isinstance(on, list):
        if not all(isinstance(t, str) for t in on):
            raise ValueError("'on' list entries must be trigger names")
        return frozenset(on), {}
    if isinstance(on, dict):
        call_block = on.get(CALL_TRIGGER) or {}
        if not isinstance(call_block, dict):
            raise ValueError(f"'on.{CALL_TRIGGER}' must be a mapping")
        return frozenset(str(k) for k in on), call_block
    raise ValueError("'on' must be a trigger name, a list or a mapping")


def _output_ref(name: str, value: Any) -> Tuple[str, str]:
    if isinstance(value, dict):
        value = value.get("value")
    if not isinstance(value, str):
        raise ValueError(f"output '{name}' must be a 'jobs.<job>.outputs.<key>' expression")
    m = OUTPUT_EXPR.match(value.strip())
    if not m:
        raise ValueError(f"output '{name}' must be a 'jobs.<job>.outputs.<key>' expression, got {value!r}")
    return m.group(1), m.group(2)


class WorkflowDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    on: Any = None
    callable: bool = False
    permissions: Optional[Any] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDocument]

    @field_validator("jobs")
    @classmethod
    def _job_ids(cls, v: Dict[str, JobDocument]) -> Dict[str, JobDocument]:
        if not v:
            raise ValueError("a workflow needs at least one job")
        for job_id in v:
            if not JOB_ID.match(job_id):
                raise ValueError(f"invalid job id {job_id!r}")
        return v

    def to_workflow(self, path: str) -> Workflow:
        triggers, call_block = _triggers(self.on)

        raw_outputs = dict(call_block.get("outputs") or {})
        raw_outputs.update(self.outputs)
        outputs = {name: _output_ref(name, value) for name, value in raw_outputs.items()}
        for name, (job, _key) in outputs.items():
            if job not in self.jobs:
                raise ValueError(f"output '{name}' refers to unknown job '{job}'")

        return Workflow(
            path=path,
            name=self.name or path,
            jobs=tuple(doc.to_job(job_id) for job_id, doc in self.jobs.items()),
            triggers=triggers,
            callable=self.callable or CALL_TRIGGER in triggers,
            permissions=PermissionSet.parse(self.permissions) if self.permissions is not None else None,
            outputs=outputs,
        )
