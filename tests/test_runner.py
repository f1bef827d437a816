import json

import pytest

from stepflow.errors import CompileError, ResumeError, StepFailure, StepflowError
from stepflow.instantiate import Instance
from stepflow.model import BuiltinOp
from stepflow.runner import run_workflow


class FakeOperations:
    """Stands in for the built-in operations; records every call."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def handler(self, op):
        def run(**params):
            self.calls.append((op, params))
            if op in self.fail_on:
                raise RuntimeError(f"{op.value} backend crashed")
        return run

    @property
    def handlers(self):
        return {op: self.handler(op) for op in BuiltinOp}


def four_steps(third_program="echo"):
    return {
        "meta_info": {"project": "demo"},
        "reference": {
            "index": {
                "Execution Order": "1",
                "Program Name": "stepflow index",
                "--fasta": "genome.fa",
                "--output": "idx",
            },
        },
        "notes": {
            "Execution Order": "2",
            "Program Name": "echo",
            "0": "indexed",
        },
        "check": {
            "Execution Order": "3",
            "Program Name": third_program,
            "0": "checked",
        },
        "quant": {
            "Execution Order": "4",
            "Program Name": "stepflow quant",
            "--map-dir": "mapped",
            "--chemistry": "10xv3",
            "--t2g-map": "t2g.tsv",
            "--resolution": "cr-like",
            "--knee": "",
            "--output": "counts",
        },
    }


def instance(doc, tmp_path, name="demo"):
    return Instance(name=name, source=tmp_path / f"{name}.json", manifest=doc)


def orders_in_log(path):
    doc = json.loads(path.read_text())
    return [
        doc["reference"]["index"]["Execution Order"],
        doc["notes"]["Execution Order"],
        doc["check"]["Execution Order"],
        doc["quant"]["Execution Order"],
    ]


def test_full_run_marks_every_step(tmp_path):
    ops = FakeOperations()
    out = tmp_path / "out"

    log = run_workflow(instance(four_steps(), tmp_path), out, handlers=ops.handlers)

    assert log.path == out / "demo.json"
    assert log.writes == 1
    assert orders_in_log(log.path) == ["-1", "-2", "-3", "-4"]
    assert [op for op, _ in ops.calls] == [BuiltinOp.INDEX, BuiltinOp.QUANT]
    assert ops.calls[1][1]["knee"] is True

    info = json.loads(log.info_path.read_text())
    assert info["Succeed"] is True
    assert info["Latest Run"]["Number of Succeed Commands"] == 4
    assert info["Workflow Meta Info"] == {"project": "demo"}


def test_start_at_leaves_earlier_steps_pending(tmp_path):
    ops = FakeOperations()
    log = run_workflow(instance(four_steps(), tmp_path), tmp_path / "out", start_at=3, handlers=ops.handlers)

    assert orders_in_log(log.path) == ["1", "2", "-3", "-4"]
    assert [op for op, _ in ops.calls] == [BuiltinOp.QUANT]


def test_skip_step(tmp_path):
    ops = FakeOperations()
    log = run_workflow(instance(four_steps(), tmp_path), tmp_path / "out", skip_steps=[3], handlers=ops.handlers)

    assert orders_in_log(log.path) == ["-1", "-2", "3", "-4"]


def test_failing_builtin_stops_the_run(tmp_path):
    ops = FakeOperations(fail_on=[BuiltinOp.INDEX])
    out = tmp_path / "out"

    with pytest.raises(StepFailure) as exc_info:
        run_workflow(instance(four_steps(), tmp_path), out, handlers=ops.handlers)

    assert exc_info.value.order == 1
    assert "index backend crashed" in str(exc_info.value)
    assert orders_in_log(out / "demo.json") == ["1", "2", "3", "4"]
    info = json.loads((out / "demo_run_info.json").read_text())
    assert info["Succeed"] is False
    assert info["Latest Run"]["Execution Terminated Step"] == 1


def test_failing_external_after_shell_fallback(tmp_path):
    ops = FakeOperations()
    out = tmp_path / "out"

    with pytest.raises(StepFailure) as exc_info:
        run_workflow(instance(four_steps(third_program="false"), tmp_path), out, handlers=ops.handlers)

    assert exc_info.value.order == 3
    assert exc_info.value.exit_code == 1
    assert orders_in_log(out / "demo.json") == ["-1", "-2", "3", "4"]


def test_shell_fallback_runs_shell_builtins(tmp_path):
    doc = {"leave": {"Execution Order": "1", "Program Name": "exit", "0": "0"}}

    log = run_workflow(instance(doc, tmp_path), tmp_path / "out")

    assert json.loads(log.path.read_text())["leave"]["Execution Order"] == "-1"


def test_direct_spawn_comes_before_the_shell(tmp_path):
    doc = {"say": {"Execution Order": "1", "Program Name": "echo", "0": "hi", "1": ">", "2": "said.txt"}}

    run_workflow(instance(doc, tmp_path), tmp_path / "out", cwd=tmp_path)

    assert not (tmp_path / "said.txt").exists()


def test_resume_continues_after_last_completed_step(tmp_path):
    ops = FakeOperations()
    out = tmp_path / "out"
    with pytest.raises(StepFailure):
        run_workflow(instance(four_steps(third_program="false"), tmp_path), out, handlers=ops.handlers)

    ops = FakeOperations()
    log = run_workflow(instance(four_steps(), tmp_path), out, resume=True, handlers=ops.handlers)

    assert log.start_at == 3
    assert orders_in_log(log.path) == ["-1", "-2", "-3", "-4"]
    assert [op for op, _ in ops.calls] == [BuiltinOp.QUANT]
    info = json.loads(log.info_path.read_text())
    assert len(info["Previous Runs"]) == 1


def test_resume_without_previous_log(tmp_path):
    with pytest.raises(ResumeError):
        run_workflow(instance(four_steps(), tmp_path), tmp_path / "out", resume=True)


def test_resume_of_finished_run(tmp_path):
    ops = FakeOperations()
    out = tmp_path / "out"
    run_workflow(instance(four_steps(), tmp_path), out, handlers=ops.handlers)

    with pytest.raises(ResumeError):
        run_workflow(instance(four_steps(), tmp_path), out, resume=True, handlers=ops.handlers)


def test_resume_and_start_at_conflict(tmp_path):
    with pytest.raises(StepflowError):
        run_workflow(instance(four_steps(), tmp_path), tmp_path / "out", resume=True, start_at=2)


def test_compile_errors_write_no_log(tmp_path):
    doc = {"bad": {"Execution Order": "x", "Program Name": "echo", "0": "a"}}
    out = tmp_path / "out"

    with pytest.raises(CompileError):
        run_workflow(instance(doc, tmp_path), out)

    assert not (out / "demo.json").exists()


def test_no_execution_writes_the_log_only(tmp_path):
    ops = FakeOperations()
    log = run_workflow(instance(four_steps(), tmp_path), tmp_path / "out", no_execution=True, handlers=ops.handlers)

    assert ops.calls == []
    assert orders_in_log(log.path) == ["1", "2", "3", "4"]
    assert json.loads(log.info_path.read_text())["Succeed"] is False


def builtins_then_externals():
    doc = four_steps()
    return {
        "reference": doc["reference"],
        "quant": dict(doc["quant"], **{"Execution Order": "2"}),
        "notes": dict(doc["notes"], **{"Execution Order": "3"}),
        "check": dict(doc["check"], **{"Execution Order": "4"}),
    }


def test_start_at_runs_only_the_trailing_externals(tmp_path):
    ops = FakeOperations()
    log = run_workflow(instance(builtins_then_externals(), tmp_path), tmp_path / "out", start_at=3, handlers=ops.handlers)

    doc = json.loads(log.path.read_text())
    assert ops.calls == []
    assert [doc[k]["Execution Order"] for k in ("reference", "quant", "notes", "check")] == ["1", "2", "-3", "-4"]


def test_undecodable_output_does_not_break_the_step(tmp_path):
    doc = {
        "ok": {"Execution Order": "1", "Program Name": "echo", "0": "ok"},
        "bytes": {"Execution Order": "2", "Program Name": "printf", "0": "\\377"},
    }

    log = run_workflow(instance(doc, tmp_path), tmp_path / "out")

    out = json.loads(log.path.read_text())
    assert [out[k]["Execution Order"] for k in ("ok", "bytes")] == ["-1", "-2"]


def test_unspawnable_argument_fails_the_step_and_keeps_the_log(tmp_path):
    doc = {
        "ok": {"Execution Order": "1", "Program Name": "echo", "0": "ok"},
        "nul": {"Execution Order": "2", "Program Name": "echo", "0": "a\x00b"},
    }
    out = tmp_path / "out"

    with pytest.raises(StepFailure) as exc_info:
        run_workflow(instance(doc, tmp_path), out)

    assert exc_info.value.order == 2
    log = json.loads((out / "demo.json").read_text())
    assert [log[k]["Execution Order"] for k in ("ok", "nul")] == ["-1", "2"]
    assert json.loads((out / "demo_run_info.json").read_text())["Succeed"] is False


def test_unexpected_error_still_writes_the_log(tmp_path, monkeypatch):
    import stepflow.runner as runner

    def explode(rec, cwd):
        raise MemoryError

    monkeypatch.setattr(runner, "_run_external", explode)
    out = tmp_path / "out"

    with pytest.raises(MemoryError):
        run_workflow(instance({"a": {"Execution Order": "1", "Program Name": "echo", "0": "a"}}, tmp_path), out)

    assert (out / "demo.json").exists()


def test_inactive_step_is_never_run_or_marked(tmp_path):
    ops = FakeOperations()
    doc = four_steps()
    doc["reference"]["index"]["Active"] = False

    log = run_workflow(instance(doc, tmp_path), tmp_path / "out", handlers=ops.handlers)

    assert orders_in_log(log.path) == ["1", "-2", "-3", "-4"]
    assert [op for op, _ in ops.calls] == [BuiltinOp.QUANT]
    assert json.loads(log.path.read_text())["reference"]["index"]["Active"] is False


def test_resume_with_corrupt_previous_log(tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    doc = four_steps()
    doc["notes"]["Execution Order"] = "abc"
    (out / "demo.json").write_text(json.dumps(doc))

    with pytest.raises(ResumeError):
        run_workflow(instance(four_steps(), tmp_path), out, resume=True)
