from .dsl import sh, job, call, wf
from .dag import JobGraph, JobNode, build_graph, build_pipeline
from .errors import (
    BuildError,
    ChainCIError,
    CyclicDependencyError,
    InvalidReferenceError,
    NotFoundError,
    ParseError,
    PermissionEscalationError,
    StepFailure,
    UnresolvedReferenceError,
)
from .model import Job, Step, Workflow, is_callable
from .permissions import PermissionSet
from .resolver import LocalResolver
from .results import PipelineResult
from .runner import PipelineRun, StepResult, run_pipeline
from .status import Status
from .store import WorkflowStore, load_workflow

__all__ = [
    "sh", "job", "call", "wf",
    "JobGraph", "JobNode", "build_graph", "build_pipeline",
    "BuildError", "ChainCIError", "CyclicDependencyError", "InvalidReferenceError",
    "NotFoundError", "ParseError", "PermissionEscalationError", "StepFailure",
    "UnresolvedReferenceError",
    "Job", "Step", "Workflow", "is_callable",
    "PermissionSet", "LocalResolver", "PipelineResult",
    "PipelineRun", "StepResult", "run_pipeline", "Status",
    "WorkflowStore", "load_workflow",
]
