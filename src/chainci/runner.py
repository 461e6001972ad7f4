# runner.py
"""
Scheduler / executor for one pipeline run.

The scheduler walks the job graph on a thread pool. A node is ready once
every node it needs has succeeded; ready nodes are dispatched to the pool
up to ``max_workers`` at a time. Job bodies are opaque: they are handed to
a ``StepExecutor`` which reports one terminal outcome plus named outputs.

Failure only blocks the failing branch. Everything that transitively needs
a failed node is cancelled at once; unrelated branches keep running until
the graph drains. Running jobs are never interrupted.
"""
from __future__ import annotations

import logging
import os
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from .dag import JobGraph, JobNode, build_pipeline
from .model import Workflow
from .permissions import DEFAULT_PERMISSIONS, PermissionSet
from .resolver import WorkflowResolver
from .results import PipelineResult, aggregate
from .status import Status, StatusMap

logger = logging.getLogger(__name__)

Listener = Callable[[JobNode, Status], None]


@dataclass(frozen=True)
class StepResult:
    status: Status
    outputs: Mapping[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, outputs: Optional[Mapping[str, str]] = None) -> "StepResult":
        return cls(Status.SUCCEEDED, dict(outputs or {}))

    @classmethod
    def failed(cls, error: str, outputs: Optional[Mapping[str, str]] = None) -> "StepResult":
        return cls(Status.FAILED, dict(outputs or {}), error)


class StepExecutor(Protocol):
    def execute(self, node: JobNode, needs_outputs: Mapping[str, Mapping[str, str]]) -> StepResult:
        """
        Run the job body of ``node``.

        ``needs_outputs`` maps each predecessor id to the outputs it
        produced. Timeouts are the executor's business and are reported as
        a failed result.
        """
        ...


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class PipelineRun:
    """
    One invocation of a built graph.

    Every run owns its own status map, so several runs can execute in the
    same process without sharing state.
    """

    def __init__(
        self,
        graph: JobGraph,
        executor: StepExecutor,
        *,
        max_workers: Optional[int] = None,
        listener: Optional[Listener] = None,
        run_id: Optional[str] = None,
    ):
        self.graph = graph
        self.executor = executor
        self.max_workers = max(1, max_workers) if max_workers else default_workers()
        self.listener = listener
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self.status = StatusMap(graph.nodes)
        self.outputs: Dict[str, Dict[str, str]] = {}
        self.errors: Dict[str, str] = {}
        # needs not yet succeeded, per node
        self._waiting: Dict[str, int] = {n: len(node.needs) for n, node in graph.nodes.items()}
        self._started = False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(self, node_id: str, expected: Status, new: Status) -> bool:
        if not self.status.compare_and_set(node_id, expected, new):
            return False
        logger.debug("[%s] %s: %s -> %s", self.run_id, node_id, expected, new)
        if self.listener is not None:
            self.listener(self.graph.node(node_id), new)
        return True

    def _release(self, node_id: str) -> List[str]:
        """Count ``node_id``'s success towards its dependents; return newly ready ones."""
        ready = []
        for nxt in self.graph.node(node_id).dependents:
            self._waiting[nxt] -= 1
            if self._waiting[nxt] == 0 and self.status.get(nxt) is Status.PENDING:
                ready.append(nxt)
        return ready

    def _cancel_dependents(self, node_id: str) -> None:
        for nxt in sorted(self.graph.reachable(node_id)):
            if self._move(nxt, Status.PENDING, Status.CANCELLED):
                logger.info("[%s] %s cancelled (needs %s)", self.run_id, nxt, node_id)

    def _skip_dependents(self, node_id: str) -> List[str]:
        skipped = []
        for nxt in sorted(self.graph.reachable(node_id)):
            if self._move(nxt, Status.PENDING, Status.SKIPPED):
                skipped.append(nxt)
        return skipped

    def _settle_calls(self, node_id: str) -> List[str]:
        """
        Complete enclosing call nodes whose members have all finished cleanly.

        Returns nodes made ready by those completions.
        """
        ready: List[str] = []
        for call_id in self.graph.enclosing_calls(node_id):
            if self.status.get(call_id) is not Status.RUNNING:
                break
            call = self.graph.node(call_id)
            states = [self.status.get(m) for m in call.members]
            if not all(s in (Status.SUCCEEDED, Status.SKIPPED) for s in states):
                break
            outputs = {}
            for name, (member, key) in call.outputs.items():
                value = self.outputs.get(member, {}).get(key)
                if value is not None:
                    outputs[name] = value
            self.outputs[call_id] = outputs
            self._move(call_id, Status.RUNNING, Status.SUCCEEDED)
            ready.extend(self._release(call_id))
        return ready

    def _fail(self, node_id: str, error: str) -> None:
        self.errors[node_id] = error
        logger.warning("[%s] %s failed: %s", self.run_id, node_id, error)
        self._cancel_dependents(node_id)
        for call_id in self.graph.enclosing_calls(node_id):
            if self._move(call_id, Status.RUNNING, Status.FAILED):
                self.errors[call_id] = f"member {node_id} failed"
                self._cancel_dependents(call_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, node: JobNode, needs_outputs: Mapping[str, Mapping[str, str]]) -> StepResult:
        try:
            result = self.executor.execute(node, needs_outputs)
        except Exception as e:
            return StepResult.failed(f"{type(e).__name__}: {e}")
        if result.status not in (Status.SUCCEEDED, Status.FAILED):
            return StepResult.failed(f"step executor returned non-terminal status {result.status}")
        return result

    def _start(self, node_id: str, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> List[str]:
        """Start one ready node. Returns nodes that became ready without running anything."""
        node = self.graph.node(node_id)

        if not node.enabled:
            if not self._move(node_id, Status.PENDING, Status.SKIPPED):
                return []
            ready: List[str] = []
            for skipped in [node_id, *self._skip_dependents(node_id)]:
                ready.extend(self._settle_calls(skipped))
            return ready

        if not self._move(node_id, Status.PENDING, Status.RUNNING):
            return []

        if node.is_call:
            # members carry the work; the call node completes with them
            return []

        needs_outputs = {n: dict(self.outputs[n]) for n in node.needs if n in self.outputs}
        fut = pool.submit(self._execute, node, needs_outputs)
        in_flight[fut] = node_id
        return []

    def _finish(self, node_id: str, result: StepResult) -> List[str]:
        if result.status is Status.SUCCEEDED:
            self.outputs[node_id] = dict(result.outputs)
            self._move(node_id, Status.RUNNING, Status.SUCCEEDED)
            return self._release(node_id) + self._settle_calls(node_id)

        self._move(node_id, Status.RUNNING, Status.FAILED)
        self._fail(node_id, result.error or "job failed")
        return []

    def run(self) -> PipelineResult:
        if self._started:
            raise RuntimeError("A PipelineRun can only be run once")
        self._started = True

        logger.info(
            "[%s] run %s: %d nodes, %d workers",
            self.run_id, self.graph.root, len(self.graph), self.max_workers,
        )
        ready: List[str] = [n for n, count in self._waiting.items() if count == 0]
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"chainci-{self.run_id}") as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready:
                    ready.extend(self._start(ready.pop(0), pool, in_flight))

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                name = in_flight.pop(fut)
                ready.extend(self._finish(name, fut.result()))

        statuses = self.status.snapshot()
        stuck = sorted(n for n, s in statuses.items() if not s.terminal)
        if stuck:
            raise RuntimeError(f"Scheduler stopped with unfinished nodes: {stuck}")

        result = aggregate(self.graph, statuses, self.outputs, self.errors)
        logger.info("[%s] run %s: %s", self.run_id, self.graph.root, result.verdict)
        return result


def run_pipeline(
    root: Workflow,
    resolver: WorkflowResolver,
    executor: StepExecutor,
    *,
    max_workers: Optional[int] = None,
    default_permissions: PermissionSet = DEFAULT_PERMISSIONS,
    listener: Optional[Listener] = None,
) -> PipelineResult:
    """Build, scope and run ``root``. Build errors propagate before anything runs."""
    graph = build_pipeline(root, resolver, default_permissions)
    return PipelineRun(graph, executor, max_workers=max_workers, listener=listener).run()
