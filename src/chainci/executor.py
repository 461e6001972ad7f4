# executor.py
from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .dag import JobNode
from .errors import StepFailure
from .runner import StepResult

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"
CONTAINER_OUTPUT_DIR = "/chainci"

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "sh": "A POSIX shell is required to run steps.",
}


def _env_key(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", text).upper()


def read_outputs(path: Path) -> Dict[str, str]:
    """
    Parse an output file written by steps.

    One ``key=value`` per line, or a multi-line value written as::

        key<<EOF
        line one
        line two
        EOF
    """
    if not path.exists():
        return {}
    outputs: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # delimiter
            outputs[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
        elif line.strip():
            logger.debug("ignoring malformed output line %r in %s", line, path)
    return outputs


class ShellStepExecutor:
    """
    Runs a job's steps through the shell, in order, stopping at the first
    failure.

    Each job sees ``os.environ`` plus its own env, the step env and:

      CHAINCI_JOB           node id of the job
      CHAINCI_PERMISSIONS   effective permissions, ``scope=level`` pairs
      CHAINCI_OUTPUT        file to append ``key=value`` outputs to
      NEEDS_<JOB>_<KEY>     outputs of the jobs it needs

    Steps with an ``image`` run in ``docker run --rm`` with the working
    directory mounted at /workspace.
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        *,
        default_timeout: Optional[float] = None,
        docker: str = "docker",
    ):
        self.workdir = Path(workdir).resolve()
        self.default_timeout = default_timeout
        self.docker = docker

    def _job_env(self, node: JobNode, needs_outputs: Mapping[str, Mapping[str, str]]) -> Dict[str, str]:
        env: Dict[str, str] = {
            "CHAINCI_JOB": node.id,
            "CHAINCI_PERMISSIONS": ",".join(f"{s}={lvl}" for s, lvl in node.permissions.as_dict().items()),
        }
        for pred, outputs in needs_outputs.items():
            job_key = _env_key(pred.rsplit("/", 1)[-1])
            for key, value in outputs.items():
                env[f"NEEDS_{job_key}_{_env_key(key)}"] = value
        env.update(node.env)
        return env

    def _command(self, step_env: Dict[str, str], step, output_dir: Path) -> tuple[list[str] | str, Dict[str, str], Path]:
        """(command, process env, cwd) for one step."""
        cwd = (self.workdir / (step.cwd or ".")).resolve()
        if step.image is None:
            env = os.environ.copy()
            env.update(step_env)
            env["CHAINCI_OUTPUT"] = str(output_dir / "output")
            return step.run, env, cwd

        container_cwd = f"{CONTAINER_WORKDIR}/{step.cwd or '.'}".replace("//", "/")
        cmd = [
            self.docker, "run", "--rm",
            "-v", f"{self.workdir}:{CONTAINER_WORKDIR}",
            "-v", f"{output_dir}:{CONTAINER_OUTPUT_DIR}",
            "-w", container_cwd,
        ]
        for key, value in {**step_env, "CHAINCI_OUTPUT": f"{CONTAINER_OUTPUT_DIR}/output"}.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(step.image)
        cmd.extend(["sh", "-c", step.run])
        return cmd, os.environ.copy(), self.workdir

    def _run_step(self, node: JobNode, step, env: Dict[str, str], output_dir: Path, timeout: Optional[float]) -> None:
        cmd, proc_env, cwd = self._command({**env, **step.env}, step, output_dir)
        if not cwd.exists():
            raise FileNotFoundError(f"[{node.id}] step '{step.name}' cwd not found: {cwd}")

        logger.info("[%s] ▶ %s", node.id, step.name)
        try:
            proc = subprocess.run(
                cmd,
                shell=isinstance(cmd, str),
                cwd=str(cwd),
                env=proc_env,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise StepFailure(job=node.id, step=step.name, cmd=step.run, timed_out=True) from None
        except FileNotFoundError as e:
            tool = cmd[0] if isinstance(cmd, list) else "sh"
            hint = TOOL_HINTS.get(tool, "")
            raise FileNotFoundError(f"[{node.id}] {e}. {hint}".strip()) from e

        if proc.stdout:
            logger.debug("[%s] %s stdout:\n%s", node.id, step.name, proc.stdout[-4000:])
        if proc.returncode != 0:
            if proc.stderr:
                logger.warning("[%s] %s stderr:\n%s", node.id, step.name, proc.stderr[-4000:])
            raise StepFailure(job=node.id, step=step.name, cmd=step.run, exit_code=proc.returncode)

    def execute(self, node: JobNode, needs_outputs: Mapping[str, Mapping[str, str]]) -> StepResult:
        timeout = node.timeout if node.timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        env = self._job_env(node, needs_outputs)

        with tempfile.TemporaryDirectory(prefix="chainci-") as tmp:
            output_dir = Path(tmp)
            (output_dir / "output").touch()
            for step in node.steps:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        err = StepFailure(job=node.id, step=step.name, cmd=step.run, timed_out=True)
                        return StepResult.failed(str(err), read_outputs(output_dir / "output"))
                try:
                    self._run_step(node, step, env, output_dir, remaining)
                except StepFailure as e:
                    return StepResult.failed(str(e), read_outputs(output_dir / "output"))
            return StepResult.ok(read_outputs(output_dir / "output"))
