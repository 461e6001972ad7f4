# src/chainci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from .errors import ParseError
from .model import CALL_TRIGGER, Job, Step, Workflow, env_dict
from .permissions import PermissionSet
from .schema import JOB_ID


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env_dict(env))


def _permissions(value: Any) -> Optional[PermissionSet]:
    if value is None or isinstance(value, PermissionSet):
        return value
    return PermissionSet.parse(value)


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    permissions: Any = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    enabled: bool = True,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or []),
        permissions=_permissions(permissions),
        env=env_dict(env),
        timeout=timeout,
        enabled=enabled,
    )


def call(
    name: str,
    uses: str,
    *,
    needs: Optional[List[str]] = None,
    permissions: Any = None,
    env: Optional[Dict[str, str]] = None,
    enabled: bool = True,
) -> Job:
    """A call-job: runs the callable workflow at ``uses`` as one job."""
    if not uses.strip():
        raise ValueError(f"call({name!r}) needs a 'uses' reference")
    return Job(
        name=name,
        uses=uses.strip(),
        needs=tuple(needs or []),
        permissions=_permissions(permissions),
        env=env_dict(env),
        enabled=enabled,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    callable: bool = False,
    permissions: Any = None,
    outputs: Optional[Mapping[str, str]] = None,
    path: Optional[str] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from chainci import wf, job, call, sh

        def workflow():
            return wf(
                "pipeline",
                call("integration", "./integration.yml"),
                job("build", sh("Build", "make"), needs=["integration"]),
            )

    ``outputs`` maps an output name to ``"<job>.<key>"``.
    """
    source = path or name
    names = [j.name for j in jobs]
    if not names:
        raise ParseError(source, "a workflow needs at least one job")
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ParseError(source, f"Duplicate job names found: {dupes}")
    bad = [n for n in names if not JOB_ID.match(n)]
    if bad:
        raise ParseError(source, f"Invalid job ids: {bad}")

    refs: Dict[str, tuple] = {}
    for out_name, ref in (outputs or {}).items():
        job_name, _, key = ref.partition(".")
        if not key or job_name not in names:
            raise ParseError(source, f"output '{out_name}' must be '<job>.<key>' naming a job of this workflow")
        refs[out_name] = (job_name, key)

    return Workflow(
        path=source,
        name=name,
        jobs=tuple(jobs),
        triggers=frozenset([CALL_TRIGGER]) if callable else frozenset(),
        callable=callable,
        permissions=_permissions(permissions),
        outputs=refs,
    )
