# results.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .dag import JobGraph
from .status import Status


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of one pipeline run.

    The verdict is binary for gating: ``succeeded`` or ``failed``. The
    per-node statuses carry the detail (including partial completion).
    Outputs are only exposed for nodes that succeeded.
    """
    workflow: str
    verdict: Status
    statuses: Mapping[str, Status]
    outputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.verdict is Status.SUCCEEDED

    @property
    def partial(self) -> bool:
        """Some nodes succeeded while others were cancelled."""
        c = self.counts()
        return c[Status.SUCCEEDED] > 0 and c[Status.CANCELLED] > 0

    def counts(self) -> Counter:
        return Counter(self.statuses.values())

    def output(self, node_id: str, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.outputs.get(node_id, {}).get(key, default)

    def failed_nodes(self) -> list[str]:
        return [n for n, s in self.statuses.items() if s is Status.FAILED]


def aggregate(
    graph: JobGraph,
    statuses: Mapping[str, Status],
    outputs: Mapping[str, Mapping[str, str]],
    errors: Optional[Mapping[str, str]] = None,
) -> PipelineResult:
    """
    Fold terminal node statuses into a pipeline verdict.

    The pipeline succeeds only if every node succeeded. A skipped node
    counts against the verdict like a cancelled one, so a run where nothing
    executed never reports success.
    """
    unfinished = [n for n, s in statuses.items() if not s.terminal]
    if unfinished:
        raise ValueError(f"Cannot aggregate a run with unfinished nodes: {sorted(unfinished)}")

    verdict = Status.SUCCEEDED if all(s is Status.SUCCEEDED for s in statuses.values()) else Status.FAILED
    visible: Dict[str, Mapping[str, str]] = {
        n: dict(outputs.get(n, {}))
        for n in graph.nodes
        if statuses.get(n) is Status.SUCCEEDED
    }
    return PipelineResult(
        workflow=graph.root,
        verdict=verdict,
        statuses=dict(statuses),
        outputs=visible,
        errors=dict(errors or {}),
    )
