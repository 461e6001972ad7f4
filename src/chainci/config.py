# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .permissions import DEFAULT_PERMISSIONS, PermissionSet
from .runner import default_workers


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if number < 1:
        raise ValueError(f"{name} must be at least 1, got {number}")
    return number


def _env_float(env: Mapping[str, str], name: str) -> Optional[float]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {value!r}") from None


def _env_permissions(env: Mapping[str, str], name: str) -> PermissionSet:
    value = env.get(name)
    if value is None:
        return DEFAULT_PERMISSIONS
    try:
        return PermissionSet.parse(value)
    except ValueError as e:
        raise ValueError(f"{name}: {e}") from None


@dataclass(frozen=True)
class Settings:
    """Runtime settings. CLI options override these."""
    max_workers: int = field(default_factory=default_workers)
    job_timeout: Optional[float] = None
    default_permissions: PermissionSet = DEFAULT_PERMISSIONS
    workflows_dir: Path = Path(".")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Raises ``ValueError`` naming the variable when a value is malformed."""
        env = os.environ if environ is None else environ
        return cls(
            max_workers=_env_int(env, "CHAINCI_MAX_WORKERS", default_workers()),
            job_timeout=_env_float(env, "CHAINCI_JOB_TIMEOUT"),
            default_permissions=_env_permissions(env, "CHAINCI_DEFAULT_PERMISSIONS"),
            workflows_dir=Path(env.get("CHAINCI_WORKFLOWS_DIR", ".")),
        )
