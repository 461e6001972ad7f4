"""Console output formatting utilities for chainci."""

from __future__ import annotations

import sys
from typing import Optional

from ..dag import JobGraph, JobNode
from ..results import PipelineResult
from ..status import Status


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, workflow: str, node_count: int, workers: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow}")
        print(f"Jobs: {node_count}")
        print(f"Workers: {workers}")
        print()

    def print_job_event(self, node: JobNode, status: Status) -> None:
        """Print one job state change."""
        label = "CALL" if node.is_call else "JOB"
        print(f"{label} {status.value.upper()}: {node.id}")

    def print_plan(self, graph: JobGraph) -> None:
        """Print stages with needs and effective permissions."""
        self.print_header(f"PLAN: {graph.root}")
        for idx, level in enumerate(graph.topo_levels()):
            print(f"Stage {idx + 1}:")
            for node_id in level:
                node = graph.node(node_id)
                kind = f" (uses {node.uses})" if node.is_call else ""
                skipped = " [disabled]" if not node.enabled else ""
                print(f"  {node_id}{kind}{skipped}")
                if node.needs:
                    print(f"    needs: {', '.join(node.needs)}")
                print(f"    permissions: {node.permissions}")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, status in result.statuses.items():
            print(f"  {job}: {status.value.upper()}")
            if job in result.errors and status is Status.FAILED:
                error_line = result.errors[job].split("\n")[0]
                print(f"    error: {error_line}")
        counts = result.counts()
        summary = ", ".join(f"{counts[s]} {s.value}" for s in Status if counts[s])
        print(f"\nVerdict: {result.verdict.value.upper()} ({summary})")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
