import pytest

from minilab.deploy.records import (
    ExecutionRecord,
    RecordTable,
    RunStatus,
    StepStatus,
    compare_runs,
    load_records,
    overall_status,
    save_records,
)
from minilab.errors import ConfigurationError


def _rec(node, step, status, attempts=1, err=None):
    return ExecutionRecord(node=node, step=step, status=StepStatus(status), attempts=attempts, last_error=err)


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "run.jsonl"
    records = [
        _rec("head", "install", "succeeded"),
        _rec("compute2", "keys", "failed", attempts=3, err="rc=1"),
    ]
    save_records(records, path)
    loaded = load_records(path)
    assert [(r.node, r.step, r.status, r.attempts, r.last_error) for r in loaded] == [
        ("head", "install", StepStatus.SUCCEEDED, 1, None),
        ("compute2", "keys", StepStatus.FAILED, 3, "rc=1"),
    ]


def test_load_missing_file_is_empty(tmp_path):
    assert load_records(tmp_path / "nope.jsonl") == []


def test_load_malformed_line(tmp_path):
    p = tmp_path / "bad.jsonl"
    p.write_text('{"node": "head", "step": "x", "status": "weird"}\n')
    with pytest.raises(ConfigurationError) as ei:
        load_records(p)
    assert "bad.jsonl:1" in str(ei.value)


def test_overall_status_precedence():
    ok = [_rec("a", "s", "succeeded"), _rec("b", "s", "skipped")]
    assert overall_status(ok) == RunStatus.SUCCESS
    failed = ok + [_rec("c", "s", "failed"), _rec("c", "t", "skipped-due-to-dependency")]
    assert overall_status(failed) == RunStatus.PARTIAL_FAILURE
    assert overall_status(failed + [_rec("c", "u", "cancelled")]) == RunStatus.CANCELLED
    assert overall_status(ok, cancelled=True) == RunStatus.CANCELLED
    assert [s.exit_code for s in RunStatus] == [0, 1, 3]


def test_compare_runs_reports_drift_and_regressions():
    before = [_rec("head", "a", "succeeded"), _rec("head", "b", "skipped"), _rec("head", "c", "succeeded")]
    after = [
        _rec("head", "a", "skipped"),
        _rec("head", "b", "succeeded"),       # had to run again
        _rec("head", "c", "failed"),
        _rec("head", "d", "succeeded"),
    ]
    drift = compare_runs(before, after)
    assert not drift.no_op
    assert drift.drifted == [("head", "b")]
    assert drift.regressed == [("head", "c")]
    assert drift.new == [("head", "d")]


def test_record_table_is_keyed_by_node_and_step():
    t = RecordTable()
    r = t.create("head", "a")
    t.create("compute1", "a")
    with pytest.raises(ValueError):
        t.create("head", "a")
    t.update(r, status=StepStatus.RUNNING, attempts=1)
    assert t.get("head", "a").status == StepStatus.RUNNING
    assert [x.node for x in t.for_node("compute1")] == ["compute1"]
    assert len(t) == 2


def test_status_properties():
    assert StepStatus.SKIPPED.ok and StepStatus.SUCCEEDED.ok
    assert not StepStatus.BLOCKED.ok
    assert StepStatus.BLOCKED.value == "skipped-due-to-dependency"
    assert not StepStatus.RUNNING.terminal and StepStatus.CANCELLED.terminal
