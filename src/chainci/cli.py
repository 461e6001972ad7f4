# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from chainci.config import Settings
from chainci.dag import JobGraph, build_pipeline
from chainci.errors import BuildError
from chainci.executor import ShellStepExecutor
from chainci.model import Workflow, is_callable
from chainci.permissions import PermissionSet
from chainci.resolver import LocalResolver
from chainci.runner import PipelineRun
from chainci.store import WorkflowStore
from chainci.ui.console import Console, get_console, set_console


def discover_workflow(store: WorkflowStore, workflow_arg: str | None) -> Workflow:
    """
    Pick the root workflow: the explicit argument, or the only non-callable
    workflow file in the workflows directory.

    Raises:
        SystemExit: If no single root workflow can be chosen
    """
    console = get_console()

    if workflow_arg:
        return store.get(Path(workflow_arg))

    candidates = store.discover()
    roots = [w for w in (store.get(c) for c in candidates) if not is_callable(w)]

    if len(roots) == 0:
        console.print_error(
            "No workflow file found",
            f"Could not find a root (non-callable) workflow in {store.root}.",
            details=["Looked for:", "  *.yml", "  *.yaml", "  *_workflow.py"],
            suggestion="Specify a workflow explicitly:\n  chainci run pipeline.yml",
        )
        sys.exit(1)

    if len(roots) > 1:
        file_list = "\n".join(f"  {w.path}" for w in roots)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple root workflows. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  chainci run pipeline.yml",
        )
        sys.exit(1)

    return roots[0]


def _build(ctx, workflow_arg: Optional[str]) -> JobGraph:
    settings: Settings = ctx.obj["settings"]
    store = WorkflowStore(settings.workflows_dir)
    root = discover_workflow(store, workflow_arg)
    return build_pipeline(root, LocalResolver(store), settings.default_permissions)


def _handle_build_error(ctx, e: BuildError) -> None:
    console = get_console()
    console.print_error("Pipeline build failed", str(e), details=[type(e).__name__])
    if ctx.obj.get("debug", False):
        import traceback
        traceback.print_exc()
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--root",
    "workflows_dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory workflow paths and 'uses' references are resolved against",
)
@click.option(
    "--default-permissions",
    default=None,
    help="Permissions for root workflows that declare none, e.g. 'contents=read'",
)
@click.pass_context
def cli(ctx, debug, workflows_dir, default_permissions):
    """chainci: workflow orchestration with reusable workflows and job gates."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e), ctx=ctx)
    overrides = {}
    if workflows_dir is not None:
        overrides["workflows_dir"] = workflows_dir
    if default_permissions is not None:
        try:
            overrides["default_permissions"] = PermissionSet.parse(default_permissions)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--default-permissions")
    if overrides:
        settings = replace(settings, **overrides)

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings
    console.print_debug(
        f"workflows dir={settings.workflows_dir} workers={settings.max_workers} "
        f"timeout={settings.job_timeout} default permissions={settings.default_permissions}"
    )


@cli.command()
@click.argument("workflow", required=False)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.pass_context
def run(ctx, workflow, workers, timeout):
    """Build and run a workflow."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    try:
        graph = _build(ctx, workflow)
    except BuildError as e:
        _handle_build_error(ctx, e)
        return

    max_workers = workers or settings.max_workers
    executor = ShellStepExecutor(
        settings.workflows_dir,
        default_timeout=timeout if timeout is not None else settings.job_timeout,
    )
    console.print_run_started(workflow=graph.root, node_count=len(graph), workers=max_workers)

    try:
        result = PipelineRun(
            graph,
            executor,
            max_workers=max_workers,
            listener=console.print_job_event,
        ).run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result)
    if not result.succeeded:
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Show stages, needs and effective permissions without running anything."""
    try:
        graph = _build(ctx, workflow)
    except BuildError as e:
        _handle_build_error(ctx, e)
        return
    get_console().print_plan(graph)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Load and build a workflow; exit non-zero if it would not start."""
    try:
        graph = _build(ctx, workflow)
    except BuildError as e:
        _handle_build_error(ctx, e)
        return
    get_console().print_info(f"OK: {graph.root} ({len(graph)} jobs)")


if __name__ == "__main__":
    cli()
