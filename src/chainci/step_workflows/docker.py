# step_workflows/docker.py
from __future__ import annotations

import shlex
from typing import Dict, List, Optional

from ..dsl import job, sh
from ..model import Job, Step, env_dict

# Permissions a container publish job asks its caller for.
PUBLISH_PERMISSIONS = {"contents": "read", "packages": "write"}


# ---------------------------------------------------------------------
# Docker step helpers
# ---------------------------------------------------------------------

def docker_step(
    name: str,
    cmd: str,
    image: str,
    *,
    cwd: str | None = None,
    env: Dict[str, str] | None = None,
) -> Step:
    """Create a shell step that runs in a Docker container."""
    return Step(name=name, run=cmd, cwd=cwd, image=image, env=env_dict(env))


def _emit(key: str, value: str) -> str:
    return f'echo {shlex.quote(f"{key}={value}")} >> "$CHAINCI_OUTPUT"'


def docker_build_step(
    name: str,
    image: str,
    *,
    context: str = ".",
    dockerfile: str | None = None,
    build_args: Dict[str, str] | None = None,
    cwd: str | None = None,
) -> Step:
    """
    Build ``image`` from ``context``.

    Emits an ``image`` output with the built reference so later jobs (or a
    push step) can pick it up.
    """
    parts: List[str] = ["docker", "build", "-t", shlex.quote(image)]
    if dockerfile:
        parts.extend(["-f", shlex.quote(dockerfile)])
    for key, value in (build_args or {}).items():
        parts.extend(["--build-arg", shlex.quote(f"{key}={value}")])
    parts.append(shlex.quote(context))
    return sh(name, " ".join(parts) + " && " + _emit("image", image), cwd=cwd)


def docker_push_step(name: str, image: str) -> Step:
    """Push ``image`` to its registry and emit the pushed reference as ``image``."""
    return sh(name, f"docker push {shlex.quote(image)} && " + _emit("image", image))


def publish_job(
    name: str,
    image: str,
    *,
    needs: Optional[List[str]] = None,
    context: str = ".",
    dockerfile: str | None = None,
    push: bool = True,
) -> Job:
    """
    A build-and-publish job for a container image.

    Requests ``packages: write``; the caller has to grant it or the build
    fails with a permission escalation.
    """
    steps = [docker_build_step("Build image", image, context=context, dockerfile=dockerfile)]
    if push:
        steps.append(docker_push_step("Push image", image))
    return job(name, *steps, needs=needs, permissions=dict(PUBLISH_PERMISSIONS))
