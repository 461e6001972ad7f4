from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Mapping, Optional

import pytest

from chainci.dag import JobNode
from chainci.resolver import LocalResolver
from chainci.runner import StepResult
from chainci.store import WorkflowStore, parse_document


class FakeExecutor:
    """
    Step executor for scheduler tests.

    ``outcomes`` maps a node id to a StepResult, an exception to raise, or a
    callable(node, needs_outputs) -> StepResult. Anything not listed succeeds.
    """

    def __init__(self, outcomes: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls: List[str] = []
        self.seen_needs: Dict[str, Mapping[str, Mapping[str, str]]] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, node: JobNode, needs_outputs):
        with self._lock:
            self.calls.append(node.id)
            self.seen_needs[node.id] = needs_outputs
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = self.outcomes.get(node.id)
            if outcome is None:
                return StepResult.ok()
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return outcome(node, needs_outputs)
            return outcome
        finally:
            with self._lock:
                self.active -= 1


def step(run: str = "true") -> dict:
    return {"run": run}


def add_workflow(store: WorkflowStore, path: str, doc: dict):
    return store.register(parse_document(doc, path), path)


@pytest.fixture
def store(tmp_path) -> WorkflowStore:
    return WorkflowStore(tmp_path)


@pytest.fixture
def resolver(store) -> LocalResolver:
    return LocalResolver(store)


@pytest.fixture
def lesson(store):
    """
    The reusable-workflow lesson: W1 is callable with one job A; W2 calls
    it as `integration` and gates `build` on it.
    """
    add_workflow(store, "w1.yml", {
        "on": {"workflow_call": {}},
        "jobs": {"A": {"steps": [step()]}},
    })
    return add_workflow(store, "w2.yml", {
        "on": ["push"],
        "jobs": {
            "integration": {"uses": "./w1.yml"},
            "build": {"needs": ["integration"], "steps": [step()]},
        },
    })
