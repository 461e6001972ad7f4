from __future__ import annotations

import pytest

from chainci.dsl import call, job, sh, wf
from chainci.errors import ParseError
from chainci.model import is_callable


def test_job_collects_steps_from_list_and_args():
    j = job("test", sh("unit", "pytest -q"), steps_list=[sh("deps", "pip install -e .")])
    assert [s.name for s in j.steps] == ["deps", "unit"]


def test_job_cwd_fills_only_missing_step_cwd():
    j = job("build", sh("a", "make"), sh("b", "make docs", cwd="docs"), cwd="app")
    assert [s.cwd for s in j.steps] == ["app", "docs"]


def test_job_without_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_call_job():
    c = call("integration", " ./integration.yml ", needs=["lint"], permissions="read-all")
    assert c.is_call
    assert c.uses == "./integration.yml"
    assert c.needs == ("lint",)
    with pytest.raises(ValueError):
        call("broken", "  ")


def test_wf_validation_and_outputs():
    lib = wf("lib", job("test", sh("t", "true")), callable=True, outputs={"report": "test.report"})
    assert is_callable(lib)
    assert lib.outputs == {"report": ("test", "report")}

    with pytest.raises(ParseError, match="Duplicate job names"):
        wf("dupes", job("a", sh("x", "true")), job("a", sh("y", "true")))
    with pytest.raises(ParseError):
        wf("none")
    with pytest.raises(ParseError):
        wf("bad-output", job("a", sh("x", "true")), outputs={"o": "missing.key"})
