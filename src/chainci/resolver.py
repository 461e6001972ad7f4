# resolver.py
"""
Resolution of ``uses`` references to workflows.

Two reference forms are recognised:

  ./path/to/workflow.yml              local, relative to the store root
  owner/repo/path/to/workflow.yml@ref remote repository at a git ref

Only local references are resolved here. Remote references go to an
optional remote resolver supplied by the caller; without one they fail to
resolve.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .errors import NotFoundError
from .model import Workflow
from .store import WorkflowStore

logger = logging.getLogger(__name__)

REMOTE_REF = re.compile(r"^(?P<repo>[\w.-]+/[\w.-]+)/(?P<path>[^@]+)@(?P<ref>[^@\s]+)$")


@dataclass(frozen=True)
class Reference:
    text: str
    path: str
    repo: Optional[str] = None
    ref: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.repo is None


def parse_reference(text: str) -> Reference:
    """Raises ``ValueError`` for references that are neither local nor remote."""
    text = text.strip()
    if text.startswith("./"):
        if "@" in text:
            raise ValueError("local references cannot pin a ref")
        return Reference(text=text, path=text[2:])
    m = REMOTE_REF.match(text)
    if m:
        return Reference(text=text, path=m.group("path"), repo=m.group("repo"), ref=m.group("ref"))
    raise ValueError("expected './path/to/workflow.yml' or 'owner/repo/path/to/workflow.yml@ref'")


class WorkflowResolver(Protocol):
    def resolve(self, reference: Reference) -> Workflow:
        """
        Return the workflow ``reference`` points at.

        Raise ``NotFoundError`` when nothing exists there and ``ParseError``
        when it exists but is malformed.
        """
        ...


class LocalResolver:
    """
    Resolves local references through a ``WorkflowStore``.

    Results are cached per reference text, so resolving the same reference
    twice within one build returns the identical workflow.
    """

    def __init__(self, store: WorkflowStore, remote: Optional[WorkflowResolver] = None):
        self.store = store
        self.remote = remote
        self._cache: Dict[str, Workflow] = {}
        self._lock = threading.Lock()

    def resolve(self, reference: Reference) -> Workflow:
        with self._lock:
            hit = self._cache.get(reference.text)
        if hit is not None:
            return hit

        if reference.is_local:
            workflow = self.store.get(reference.path)
        elif self.remote is not None:
            workflow = self.remote.resolve(reference)
        else:
            raise NotFoundError(reference.text, "remote repositories (no remote resolver configured)")

        with self._lock:
            workflow = self._cache.setdefault(reference.text, workflow)
        logger.debug("Resolved %s -> %s", reference.text, workflow.path)
        return workflow


__all__ = [
    "Reference",
    "parse_reference",
    "WorkflowResolver",
    "LocalResolver",
]
