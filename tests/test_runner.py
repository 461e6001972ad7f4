from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from chainci.dag import build_pipeline
from chainci.runner import PipelineRun, StepResult, run_pipeline
from chainci.status import InvalidTransition, Status, StatusMap

from .conftest import FakeExecutor, add_workflow, step

S = Status


def run(graph, executor, **kw):
    return PipelineRun(graph, executor, **kw).run()


def test_scenario_called_workflow_succeeds_then_build_runs(resolver, lesson):
    executor = FakeExecutor()
    result = run_pipeline(lesson, resolver, executor)

    assert result.succeeded
    assert result.statuses == {"integration": S.SUCCEEDED, "integration/A": S.SUCCEEDED, "build": S.SUCCEEDED}
    # call nodes never reach the step executor
    assert executor.calls == ["integration/A", "build"]


def test_scenario_called_workflow_fails_and_build_is_cancelled(resolver, lesson):
    executor = FakeExecutor({"integration/A": StepResult.failed("tests failed")})
    result = run_pipeline(lesson, resolver, executor)

    assert result.verdict is S.FAILED
    assert result.statuses["integration/A"] is S.FAILED
    assert result.statuses["integration"] is S.FAILED
    assert result.statuses["build"] is S.CANCELLED
    assert "build" not in executor.calls
    assert result.errors["integration/A"] == "tests failed"
    assert set(result.failed_nodes()) == {"integration", "integration/A"}


def test_dependents_of_failed_job_are_cancelled_transitively(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "a": {"steps": [step()]},
            "b": {"needs": ["a"], "steps": [step()]},
            "c": {"needs": ["b"], "steps": [step()]},
        },
    })
    executor = FakeExecutor({"a": StepResult.failed("boom")})
    result = run(build_pipeline(root, resolver), executor)

    assert result.statuses == {"a": S.FAILED, "b": S.CANCELLED, "c": S.CANCELLED}
    assert executor.calls == ["a"]


def test_independent_branch_finishes_when_sibling_fails(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "unit": {"steps": [step()]},
            "publish": {"needs": ["unit"], "steps": [step()]},
            "docs": {"steps": [step()]},
            "docs_deploy": {"needs": ["docs"], "steps": [step()]},
        },
    })
    executor = FakeExecutor({"unit": StepResult.failed("red")}, delay=0.01)
    result = run(build_pipeline(root, resolver), executor, max_workers=4)

    assert result.statuses["unit"] is S.FAILED
    assert result.statuses["publish"] is S.CANCELLED
    assert result.statuses["docs"] is S.SUCCEEDED
    assert result.statuses["docs_deploy"] is S.SUCCEEDED
    assert result.verdict is S.FAILED
    assert result.partial


def test_sibling_members_of_a_failed_call_still_drain(store, resolver):
    add_workflow(store, "lib.yml", {
        "on": "workflow_call",
        "jobs": {
            "fast_fail": {"steps": [step()]},
            "slow_ok": {"steps": [step()]},
            "after_fail": {"needs": ["fast_fail"], "steps": [step()]},
        },
    })
    root = add_workflow(store, "pipeline.yml", {"jobs": {"checks": {"uses": "./lib.yml"}}})
    executor = FakeExecutor({"checks/fast_fail": StepResult.failed("x")})
    result = run(build_pipeline(root, resolver), executor, max_workers=2)

    assert result.statuses == {
        "checks": S.FAILED,
        "checks/fast_fail": S.FAILED,
        "checks/slow_ok": S.SUCCEEDED,
        "checks/after_fail": S.CANCELLED,
    }


def test_executor_exception_counts_as_failure(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "a": {"steps": [step()]},
            "b": {"needs": ["a"], "steps": [step()]},
        },
    })
    executor = FakeExecutor({"a": RuntimeError("runner lost")})
    result = run(build_pipeline(root, resolver), executor)

    assert result.statuses == {"a": S.FAILED, "b": S.CANCELLED}
    assert "RuntimeError: runner lost" in result.errors["a"]


def test_job_never_runs_before_its_needs_succeed(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "a": {"steps": [step()]},
            "b": {"steps": [step()]},
            "c": {"needs": ["a", "b"], "steps": [step()]},
            "d": {"needs": ["c"], "steps": [step()]},
        },
    })
    graph = build_pipeline(root, resolver)
    pipeline = None

    def check(node, needs_outputs):
        for pred in node.needs:
            assert pipeline.status.get(pred) is S.SUCCEEDED
        assert set(needs_outputs) == set(node.needs)
        return StepResult.ok({"done": node.id})

    executor = FakeExecutor({n: check for n in graph.nodes})
    pipeline = PipelineRun(graph, executor, max_workers=3)
    result = pipeline.run()

    assert result.succeeded
    assert executor.calls.index("c") > max(executor.calls.index("a"), executor.calls.index("b"))
    assert executor.seen_needs["d"] == {"c": {"done": "c"}}


def test_concurrency_limit_is_respected(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {f"j{i}": {"steps": [step()]} for i in range(8)},
    })
    executor = FakeExecutor(delay=0.02)
    result = run(build_pipeline(root, resolver), executor, max_workers=2)

    assert result.succeeded
    assert len(executor.calls) == 8
    assert executor.max_active <= 2


def test_ready_jobs_run_concurrently(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {"left": {"steps": [step()]}, "right": {"steps": [step()]}},
    })
    barrier = threading.Barrier(2, timeout=5)

    def meet(node, needs_outputs):
        barrier.wait()
        return StepResult.ok()

    executor = FakeExecutor({"left": meet, "right": meet})
    assert run(build_pipeline(root, resolver), executor, max_workers=2).succeeded


def test_disabled_job_is_skipped_with_its_dependents(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "build": {"steps": [step()]},
            "deploy": {"if": False, "needs": ["build"], "steps": [step()]},
            "notify": {"needs": ["deploy"], "steps": [step()]},
        },
    })
    executor = FakeExecutor()
    result = run(build_pipeline(root, resolver), executor)

    assert result.statuses == {"build": S.SUCCEEDED, "deploy": S.SKIPPED, "notify": S.SKIPPED}
    assert executor.calls == ["build"]
    assert result.verdict is S.FAILED
    assert not result.failed_nodes()


def test_skipped_member_lets_call_complete(store, resolver):
    add_workflow(store, "lib.yml", {
        "on": "workflow_call",
        "jobs": {
            "always": {"steps": [step()]},
            "optional": {"if": False, "steps": [step()]},
        },
    })
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "checks": {"uses": "./lib.yml"},
            "after": {"needs": ["checks"], "steps": [step()]},
        },
    })
    result = run(build_pipeline(root, resolver), FakeExecutor())
    assert result.statuses["checks/optional"] is S.SKIPPED
    assert result.statuses["checks"] is S.SUCCEEDED
    assert result.statuses["after"] is S.SUCCEEDED
    assert result.verdict is S.FAILED


def test_disabled_call_job_skips_whole_subgraph(resolver, store, lesson):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "integration": {"uses": "./w1.yml", "if": False},
            "build": {"needs": ["integration"], "steps": [step()]},
        },
    })
    executor = FakeExecutor()
    result = run(build_pipeline(root, resolver), executor)
    assert set(result.statuses.values()) == {S.SKIPPED}
    assert executor.calls == []
    assert result.verdict is S.FAILED


def test_pipeline_where_nothing_ran_is_not_a_success(store, resolver):
    root = add_workflow(store, "pipeline.yml", {"jobs": {"only": {"if": False, "steps": [step()]}}})
    executor = FakeExecutor()
    result = run(build_pipeline(root, resolver), executor)

    assert result.statuses == {"only": S.SKIPPED}
    assert executor.calls == []
    assert result.verdict is S.FAILED


def test_call_outputs_reach_downstream_jobs(store, resolver):
    add_workflow(store, "image.yml", {
        "on": {"workflow_call": {"outputs": {"image": "jobs.build.outputs.ref"}}},
        "jobs": {"build": {"steps": [step()]}},
    })
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "image": {"uses": "./image.yml"},
            "publish": {"needs": ["image"], "steps": [step()]},
        },
    })
    executor = FakeExecutor({"image/build": StepResult.ok({"ref": "app:1.0"})})
    result = run(build_pipeline(root, resolver), executor)

    assert result.output("image", "image") == "app:1.0"
    assert executor.seen_needs["publish"] == {"image": {"image": "app:1.0"}}


def test_outputs_only_exposed_for_succeeded_nodes(store, resolver):
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {"ok": {"steps": [step()]}, "bad": {"steps": [step()]}},
    })
    executor = FakeExecutor({
        "ok": StepResult.ok({"image": "app:1"}),
        "bad": StepResult.failed("nope", {"image": "half-built"}),
    })
    result = run(build_pipeline(root, resolver), executor)
    assert result.outputs == {"ok": {"image": "app:1"}}
    assert result.output("bad", "image") is None


def test_nested_member_failure_fails_every_enclosing_call(store, resolver):
    add_workflow(store, "inner.yml", {"on": "workflow_call", "jobs": {"leaf": {"steps": [step()]}}})
    add_workflow(store, "outer.yml", {"on": "workflow_call", "jobs": {"nested": {"uses": "./inner.yml"}}})
    root = add_workflow(store, "pipeline.yml", {
        "jobs": {
            "top": {"uses": "./outer.yml"},
            "after": {"needs": ["top"], "steps": [step()]},
            "unrelated": {"steps": [step()]},
        },
    })
    executor = FakeExecutor({"top/nested/leaf": StepResult.failed("x")})
    result = run(build_pipeline(root, resolver), executor)

    assert result.statuses == {
        "top": S.FAILED,
        "top/nested": S.FAILED,
        "top/nested/leaf": S.FAILED,
        "after": S.CANCELLED,
        "unrelated": S.SUCCEEDED,
    }


def test_runs_do_not_share_state(resolver, lesson):
    graph = build_pipeline(lesson, resolver)
    failing = FakeExecutor({"integration/A": StepResult.failed("x")}, delay=0.01)
    passing = FakeExecutor(delay=0.01)

    with ThreadPoolExecutor(max_workers=2) as pool:
        bad = pool.submit(run, graph, failing)
        good = pool.submit(run, graph, passing)

    assert bad.result().verdict is S.FAILED
    assert good.result().verdict is S.SUCCEEDED


def test_pipeline_run_is_single_use(resolver, lesson):
    pipeline = PipelineRun(build_pipeline(lesson, resolver), FakeExecutor())
    pipeline.run()
    with pytest.raises(RuntimeError):
        pipeline.run()


def test_listener_sees_every_transition(resolver, lesson):
    events = []
    graph = build_pipeline(lesson, resolver)
    run(graph, FakeExecutor(), listener=lambda node, status: events.append((node.id, status)))

    assert ("integration", S.RUNNING) in events
    assert events.index(("integration", S.SUCCEEDED)) < events.index(("build", S.RUNNING))
    assert events[-1] == ("build", S.SUCCEEDED)


def test_status_map_compare_and_set():
    statuses = StatusMap(["a"])
    assert statuses.compare_and_set("a", S.PENDING, S.RUNNING)
    assert not statuses.compare_and_set("a", S.PENDING, S.CANCELLED)
    assert statuses.compare_and_set("a", S.RUNNING, S.FAILED)
    with pytest.raises(InvalidTransition):
        statuses.compare_and_set("a", S.FAILED, S.RUNNING)
    with pytest.raises(InvalidTransition):
        statuses.compare_and_set("a", S.PENDING, S.SUCCEEDED)
    assert statuses.get("a") is S.FAILED
    assert statuses.snapshot() == {"a": S.FAILED}
