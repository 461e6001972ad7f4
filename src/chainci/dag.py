# dag.py
"""
Job graph construction.

A root workflow plus everything it reaches through ``uses`` is flattened into
one DAG of ``JobNode`` objects. Node ids are the call path joined with
``/``: a job ``A`` inside the workflow called by job ``integration`` becomes
``integration/A``.

A call-job stays in the graph as a *call node*. It needs the same
predecessors as the call-job declared and is only completed once every node
inlined below it (its *members*) has completed, so jobs that need the
call-job wait for the reused workflow as a unit. The callee's entry jobs
inherit the call-job's predecessors.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import (
    CyclicDependencyError,
    InvalidReferenceError,
    NotFoundError,
    UnresolvedReferenceError,
)
from .model import Step, Workflow, is_callable
from .permissions import DEFAULT_PERMISSIONS, PermissionSet, scope_permissions
from .resolver import WorkflowResolver, parse_reference

logger = logging.getLogger(__name__)

SEP = "/"


@dataclass(frozen=True)
class JobNode:
    id: str
    name: str
    workflow: str
    kind: str = "job"  # "job" | "call"
    needs: Tuple[str, ...] = ()
    dependents: Tuple[str, ...] = ()
    caller: Optional[str] = None
    members: Tuple[str, ...] = ()
    uses: Optional[str] = None
    steps: Tuple[Step, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    enabled: bool = True
    declared_permissions: Optional[PermissionSet] = None
    # Top-level permissions block of the called workflow (call nodes only).
    callee_permissions: Optional[PermissionSet] = None
    # Effective set, filled in by the permission scoper.
    permissions: PermissionSet = field(default_factory=PermissionSet)
    # Call nodes: output name -> (member id, member output key).
    outputs: Mapping[str, Tuple[str, str]] = field(default_factory=dict)

    @property
    def is_call(self) -> bool:
        return self.kind == "call"


@dataclass(frozen=True)
class JobGraph:
    root: str
    nodes: Mapping[str, JobNode]
    root_permissions: Optional[PermissionSet] = None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def node(self, node_id: str) -> JobNode:
        return self.nodes[node_id]

    def enclosing_calls(self, node_id: str) -> List[str]:
        """Call nodes ``node_id`` was inlined under, innermost first."""
        out = []
        caller = self.nodes[node_id].caller
        while caller is not None:
            out.append(caller)
            caller = self.nodes[caller].caller
        return out

    def reachable(self, node_id: str) -> Set[str]:
        """Every node that transitively needs ``node_id``."""
        seen: Set[str] = set()
        q = deque(self.nodes[node_id].dependents)
        while q:
            nxt = q.popleft()
            if nxt in seen:
                continue
            seen.add(nxt)
            q.extend(self.nodes[nxt].dependents)
        return seen

    def subgraph(self, call_id: str) -> Dict[str, Tuple[str, ...]]:
        """
        Members of a call node with ids and needs relative to the call node.

        Two call-jobs that use the same workflow yield equal subgraphs.
        """
        prefix = call_id + SEP
        call = self.nodes[call_id]

        def rel(ref: str) -> str:
            return ref[len(prefix):] if ref.startswith(prefix) else "^"

        return {
            rel(m): tuple(sorted(rel(n) for n in self.nodes[m].needs))
            for m in call.members
        }

    def topo_levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages). Each stage can run in parallel.

        A call node is placed after its members, at the point where it
        completes.
        """
        after: Dict[str, List[str]] = {n: list(node.dependents) for n, node in self.nodes.items()}
        indeg = {n: len(node.needs) for n, node in self.nodes.items()}
        for n, node in self.nodes.items():
            for m in node.members:
                after[m].append(n)
                indeg[n] += 1
        q = deque(sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        while q:
            level_size = len(q)
            level: List[str] = []

            for _ in range(level_size):
                name = q.popleft()
                level.append(name)
                for child in sorted(after[name]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(level)
        return levels


def find_cycle(edges: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """
    Depth-first search with a recursion stack.

    Returns the first cycle found as a list of nodes that starts and ends
    with the same node, or ``None`` for an acyclic graph.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in edges}

    for start in edges:
        if color[start] != WHITE:
            continue
        color[start] = GREY
        path = [start]
        stack = [iter(edges[start])]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(edges[nxt]))
    return None


class _GraphBuilder:
    def __init__(self, resolver: WorkflowResolver):
        self.resolver = resolver
        # node id -> JobNode fields; finalised into JobNode at the end
        self.specs: Dict[str, dict] = {}

    def inline(
        self,
        workflow: Workflow,
        prefix: str,
        caller: Optional[str],
        entry_needs: Tuple[str, ...],
        stack: Tuple[str, ...],
        env: Mapping[str, str],
        enabled: bool,
    ) -> None:
        names = workflow.job_names
        for job in workflow.jobs:
            for need in job.needs:
                if need not in names:
                    raise InvalidReferenceError(job=prefix + job.name, needs=need, known=tuple(names))

        for job in workflow.jobs:
            node_id = prefix + job.name
            needs = tuple(prefix + n for n in job.needs) or entry_needs
            spec = dict(
                id=node_id,
                name=job.name,
                workflow=workflow.path,
                needs=needs,
                caller=caller,
                env={**env, **job.env},
                timeout=job.timeout,
                enabled=enabled and job.enabled,
                declared_permissions=job.permissions,
            )
            self.specs[node_id] = spec

            if not job.is_call:
                spec["steps"] = job.steps
                continue

            callee = self._resolve(node_id, job.uses)
            if callee.path in stack:
                chain = list(stack[stack.index(callee.path):]) + [callee.path]
                raise CyclicDependencyError(cycle=chain)

            spec.update(
                kind="call",
                uses=job.uses,
                callee_permissions=callee.permissions,
                outputs={
                    out: (node_id + SEP + member, key)
                    for out, (member, key) in callee.outputs.items()
                },
            )
            before = len(self.specs)
            self.inline(
                callee,
                prefix=node_id + SEP,
                caller=node_id,
                entry_needs=needs,
                stack=stack + (callee.path,),
                env=spec["env"],
                enabled=spec["enabled"],
            )
            spec["members"] = tuple(list(self.specs)[before:])

    def _resolve(self, node_id: str, uses: str) -> Workflow:
        try:
            ref = parse_reference(uses)
        except ValueError as e:
            raise UnresolvedReferenceError(job=node_id, reference=uses, reason=str(e)) from e
        try:
            callee = self.resolver.resolve(ref)
        except NotFoundError as e:
            raise UnresolvedReferenceError(job=node_id, reference=uses, reason=str(e)) from e
        if not is_callable(callee):
            raise UnresolvedReferenceError(
                job=node_id,
                reference=uses,
                reason="target workflow is not callable (declare the workflow_call trigger)",
            )
        return callee

    def finish(self, root: Workflow) -> JobGraph:
        dependents: Dict[str, List[str]] = {n: [] for n in self.specs}
        for node_id, spec in self.specs.items():
            for need in spec["needs"]:
                dependents[need].append(node_id)

        cycle = find_cycle(dependents)
        if cycle:
            raise CyclicDependencyError(cycle=cycle)

        nodes = {
            node_id: JobNode(dependents=tuple(dependents[node_id]), **spec)
            for node_id, spec in self.specs.items()
        }
        return JobGraph(root=root.path, nodes=nodes, root_permissions=root.permissions)


def build_graph(root: Workflow, resolver: WorkflowResolver) -> JobGraph:
    """
    Flatten ``root`` and every workflow it calls into one JobGraph.

    Raises a ``BuildError`` subclass on any problem; a partial graph is never
    returned.
    """
    builder = _GraphBuilder(resolver)
    builder.inline(
        root,
        prefix="",
        caller=None,
        entry_needs=(),
        stack=(root.path,),
        env={},
        enabled=True,
    )
    graph = builder.finish(root)
    logger.debug("Built graph for %s: %d nodes", root.path, len(graph))
    return graph


def build_pipeline(
    root: Workflow,
    resolver: WorkflowResolver,
    default_permissions: PermissionSet = DEFAULT_PERMISSIONS,
) -> JobGraph:
    """Build the graph and scope permissions. Nothing runs if this raises."""
    return scope_permissions(build_graph(root, resolver), default_permissions)
