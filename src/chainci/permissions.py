# permissions.py
"""
Permission sets and least-privilege scoping.

A permission set maps a scope (``contents``, ``packages``, ``id-token`` ...)
to a level. Levels are ordered ``none < read < write`` and ``write`` implies
``read``. Scopes that are not listed are ``none``.

Scoping walks the built graph caller-first: every node's effective set is
its explicit grant clipped to its caller's effective set, or the caller's set
when it declares nothing. Asking for more than the caller has is an error,
never a silent clip.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple

from .errors import PermissionEscalationError

if TYPE_CHECKING:
    from .dag import JobGraph, JobNode

logger = logging.getLogger(__name__)


class Level(IntEnum):
    NONE = 0
    READ = 1
    WRITE = 2

    @classmethod
    def parse(cls, value: str) -> "Level":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown permission level {value!r} (expected none, read or write)") from None

    def __str__(self) -> str:
        return self.name.lower()


# Scopes expanded by the read-all / write-all shorthands.
KNOWN_SCOPES = (
    "actions",
    "checks",
    "contents",
    "deployments",
    "id-token",
    "issues",
    "packages",
    "pull-requests",
    "statuses",
)


@dataclass(frozen=True)
class PermissionSet:
    """Immutable scope -> level mapping. Missing scopes are ``Level.NONE``."""
    levels: Tuple[Tuple[str, Level], ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, levels: Mapping[str, Level | str]) -> "PermissionSet":
        clean: Dict[str, Level] = {}
        for scope, level in levels.items():
            lvl = level if isinstance(level, Level) else Level.parse(level)
            if lvl is not Level.NONE:
                clean[scope] = lvl
        return cls(tuple(sorted(clean.items())))

    @classmethod
    def none(cls) -> "PermissionSet":
        return cls()

    @classmethod
    def parse(cls, value: Any) -> "PermissionSet":
        """
        Parse a declared permission block.

        Accepts a mapping (``{contents: read}``), ``read-all``, ``write-all``,
        or an empty mapping / ``none`` for no permissions at all.
        """
        if value is None:
            return cls.none()
        if isinstance(value, str):
            shorthand = value.strip().lower()
            if shorthand == "read-all":
                return cls.of({s: Level.READ for s in KNOWN_SCOPES})
            if shorthand == "write-all":
                return cls.of({s: Level.WRITE for s in KNOWN_SCOPES})
            if shorthand in ("", "none"):
                return cls.none()
            # "contents=read,packages=write" (env var form)
            pairs: Dict[str, str] = {}
            for part in shorthand.split(","):
                if not part.strip():
                    continue
                if "=" not in part:
                    raise ValueError(f"Invalid permission entry {part!r} (expected scope=level)")
                scope, level = part.split("=", 1)
                pairs[scope.strip()] = level.strip()
            return cls.of(pairs)
        if isinstance(value, Mapping):
            for scope, level in value.items():
                if not isinstance(scope, str) or not isinstance(level, str):
                    raise ValueError(f"Invalid permission entry {scope!r}: {level!r}")
            return cls.of(value)
        raise ValueError(f"Permissions must be a mapping or read-all/write-all, got {type(value).__name__}")

    def level(self, scope: str) -> Level:
        for name, lvl in self.levels:
            if name == scope:
                return lvl
        return Level.NONE

    def as_dict(self) -> Dict[str, str]:
        return {scope: str(level) for scope, level in self.levels}

    def __iter__(self) -> Iterator[Tuple[str, Level]]:
        return iter(self.levels)

    def __bool__(self) -> bool:
        return bool(self.levels)

    def is_subset_of(self, other: "PermissionSet") -> bool:
        return all(level <= other.level(scope) for scope, level in self.levels)

    def intersect(self, other: "PermissionSet") -> "PermissionSet":
        return PermissionSet.of(
            {scope: min(level, other.level(scope)) for scope, level in self.levels}
        )

    def escalations(self, caller: "PermissionSet") -> list[Tuple[str, Level, Level]]:
        """(scope, requested, allowed) for every scope above the caller's level."""
        return [
            (scope, level, caller.level(scope))
            for scope, level in self.levels
            if level > caller.level(scope)
        ]

    def __str__(self) -> str:
        if not self.levels:
            return "{}"
        return ", ".join(f"{scope}: {level}" for scope, level in self.levels)


# Least privilege: what a root workflow gets when it declares nothing.
DEFAULT_PERMISSIONS = PermissionSet.of({"contents": Level.READ})


def clip(job: str, grant: Optional[PermissionSet], caller: PermissionSet) -> PermissionSet:
    """Effective set for one declaration under ``caller``."""
    if grant is None:
        return caller
    bad = grant.escalations(caller)
    if bad:
        scope, requested, allowed = bad[0]
        raise PermissionEscalationError(
            job=job, scope=scope, requested=str(requested), allowed=str(allowed)
        )
    return grant.intersect(caller)


def scope_permissions(graph: "JobGraph", default: PermissionSet = DEFAULT_PERMISSIONS) -> "JobGraph":
    """
    Return a copy of ``graph`` with every node's effective permissions set.

    Nodes are visited in build order, which always places a call node before
    its members, so a member's caller is resolved by the time it is reached.
    """
    root_set = graph.root_permissions if graph.root_permissions is not None else default
    # Caller set seen by a call node's members (after the callee's own top-level block).
    member_base: Dict[str, PermissionSet] = {}

    nodes: Dict[str, "JobNode"] = {}
    for node in graph.nodes.values():
        caller_set = root_set if node.caller is None else member_base[node.caller]
        eff = clip(node.id, node.declared_permissions, caller_set)
        if node.kind == "call":
            member_base[node.id] = clip(node.id, node.callee_permissions, eff)
        logger.debug("permissions %s: %s", node.id, eff)
        nodes[node.id] = replace(node, permissions=eff)

    return replace(graph, nodes=nodes)
