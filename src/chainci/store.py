# store.py
"""
Workflow Definition Store.

Loads workflow documents (YAML or Python) into immutable ``Workflow``
records and looks them up by path. Loading is side-effect free with respect
to the store until a workflow is cached, and loading the same path twice
returns the same record.

Two failure kinds are kept apart on purpose: ``ParseError`` means the
document exists but is malformed, ``NotFoundError`` means there is no
document at that path.
"""
from __future__ import annotations

import logging
import posixpath
import runpy
import threading
from collections.abc import Hashable
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .errors import NotFoundError, ParseError
from .model import Workflow, is_callable
from .schema import WorkflowDocument

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")

__all__ = ["WorkflowStore", "load_workflow", "parse_document", "is_callable"]


def _format_validation(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_document(data: Any, source: str) -> Workflow:
    """Validate an already-parsed document and convert it into a Workflow."""
    if not isinstance(data, Mapping):
        raise ParseError(source, "a workflow document must be a mapping")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as the boolean True.
    if True in data:
        if "on" in data:
            raise ParseError(source, "'on' declared twice")
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDocument.model_validate(data)
        return doc.to_workflow(source)
    except ValidationError as e:
        raise ParseError(source, _format_validation(e)) from e
    except ValueError as e:
        raise ParseError(source, str(e)) from e


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, Hashable):
                if key in seen:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping", node.start_mark,
                        f"found duplicate key {key!r}", key_node.start_mark,
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _load_yaml(path: Path, source: str) -> Workflow:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(source, f"not valid UTF-8: {e}") from e
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ParseError(source, f"invalid YAML: {e}") from e
    return parse_document(data, source)


def _load_python(path: Path, source: str) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = wf(...)
    """
    module_name = f"chainci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            result = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            result = globals_dict["WORKFLOW"]
        else:
            result = None
    except ParseError:
        raise
    except Exception as e:
        # anything raised by workflow code
        raise ParseError(source, f"{type(e).__name__}: {e}") from e

    if not isinstance(result, Workflow):
        raise ParseError(
            source,
            "Workflow file must define workflow() -> Workflow or WORKFLOW = wf(...).",
        )
    return replace(result, path=source)


def load_workflow(source: str | Path | Mapping[str, Any], *, path: Optional[str] = None) -> Workflow:
    """
    Load one workflow.

    ``source`` is a YAML/Python file path or an already-parsed mapping.
    ``path`` overrides the identity recorded on the workflow (the store
    passes its normalised lookup key here).
    """
    if isinstance(source, Mapping):
        return parse_document(source, path or "<memory>")

    file = Path(source).expanduser()
    ident = path or str(source)
    if not file.is_file():
        raise NotFoundError(ident)

    if file.suffix in YAML_SUFFIXES:
        return _load_yaml(file, ident)
    if file.suffix == ".py":
        return _load_python(file, ident)
    raise ParseError(ident, f"unsupported workflow file type {file.suffix!r} (expected .yml, .yaml or .py)")


class WorkflowStore:
    """Path -> Workflow lookup rooted at one directory, with caching."""

    def __init__(self, root: str | Path = "."):
        self.root = Path(root).expanduser().resolve()
        self._cache: Dict[str, Workflow] = {}
        self._lock = threading.Lock()

    def key(self, path: str | Path) -> str:
        """Normalised, root-relative posix path used as the workflow identity."""
        raw = Path(path)
        if raw.is_absolute():
            try:
                raw = raw.resolve().relative_to(self.root)
            except ValueError:
                raise NotFoundError(str(path), str(self.root)) from None
        norm = posixpath.normpath(raw.as_posix())
        if norm == ".." or norm.startswith("../"):
            raise NotFoundError(str(path), str(self.root))
        return norm

    def get(self, path: str | Path) -> Workflow:
        key = self.key(path)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        file = self.root / key
        if not file.is_file():
            raise NotFoundError(key, str(self.root))

        workflow = load_workflow(file, path=key)
        with self._lock:
            # keep the first record if another thread loaded it meanwhile
            workflow = self._cache.setdefault(key, workflow)
        logger.debug("Loaded workflow %s (callable=%s)", key, is_callable(workflow))
        return workflow

    def register(self, workflow: Workflow, path: Optional[str] = None) -> Workflow:
        """Register a workflow under ``path`` (defaults to its own path)."""
        key = self.key(path or workflow.path)
        workflow = replace(workflow, path=key)
        with self._lock:
            self._cache[key] = workflow
        logger.debug("Registered workflow %s", key)
        return workflow

    def discover(self) -> List[str]:
        """Workflow files directly under the root, sorted."""
        found = []
        for pattern in ("*.yml", "*.yaml", "*_workflow.py"):
            found.extend(self.key(p) for p in self.root.glob(pattern) if p.is_file())
        return sorted(set(found))
