import pytest
from typer.testing import CliRunner

from minilab.cli.app import app
from minilab.deploy.records import ExecutionRecord, StepStatus, load_records, save_records

cli = CliRunner()

NODES = """
nodes:
  - {name: head, role: head, port: 2221, credential: null}
  - {name: compute1, role: compute, port: 2222, credential: null}
  - {name: compute2, role: compute, port: 2223, credential: null}
"""

EXECUTION = """
execution:
  max_attempts: 2
  base_delay: 0
  probe_interval: 0.01
  probe_timeout: 1
"""


@pytest.fixture
def fake_lab(monkeypatch, connector, ready):
    monkeypatch.setattr("minilab.cli.app.SSHConnector", lambda **kw: connector)
    def login(connect):
        connector.login_via = connect
        return ready

    monkeypatch.setattr("minilab.cli.app.SshLogin", login)
    return connector


def test_dry_run_prints_plan(fake_home, topology_file, fake_lab):
    path = topology_file("name: lab\n" + NODES)
    result = cli.invoke(app, ["provision", "-t", str(path), "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "Plan for 'lab' (3 nodes, 6 steps)" in result.output
    assert "14 (step, node) pairs; nothing was changed." in result.output
    assert fake_lab.runners == {}


def test_configuration_errors_exit_2(fake_home, topology_file, tmp_path):
    result = cli.invoke(app, ["provision", "-t", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 2

    path = topology_file(NODES + """
steps:
  - {name: a, kind: command, depends_on: [b], params: {command: "true", check: "true"}}
  - {name: b, kind: command, depends_on: [a], params: {command: "true", check: "true"}}
""")
    result = cli.invoke(app, ["provision", "-t", str(path), "--dry-run"])
    assert result.exit_code == 2
    assert "Cyclic dependency" in result.output

    path = topology_file(NODES + "steps:\n  - {name: a, kind: helm}\n", name="bad-kind.yaml")
    assert cli.invoke(app, ["provision", "-t", str(path), "--dry-run"]).exit_code == 2


def test_provision_satisfied_lab_is_a_no_op(fake_home, topology_file, fake_lab, tmp_path):
    records = tmp_path / "records.jsonl"
    path = topology_file(NODES + EXECUTION + """
steps:
  - {name: motd, kind: file, params: {path: /etc/motd, content: "lab\\n"}}
""")
    result = cli.invoke(app, ["provision", "-t", str(path), "--records", str(records), "--no-bring-up"])
    assert result.exit_code == 0, result.output
    assert "success: succeeded=0 skipped=3" in result.output
    assert fake_lab.closed
    # readiness is an SSH login through the same connector, not an open port
    assert fake_lab.login_via == fake_lab.connect

    assert {r.status for r in load_records(records)} == {StepStatus.SKIPPED}
    again = cli.invoke(app, ["provision", "-t", str(path), "--records", str(records), "--no-bring-up"])
    assert "No changes: every step was already satisfied." in again.output


def test_provision_partial_failure_exits_1(fake_home, topology_file, fake_lab, tmp_path):
    fake_lab.runner("compute1").on("verify-tool", rc=1)
    records = tmp_path / "records.jsonl"
    path = topology_file(NODES + EXECUTION + """
steps:
  - {name: tool, kind: command, params: {command: install-tool, check: verify-tool}}
  - {name: use_tool, kind: command, depends_on: [tool], params: {command: use-tool, check: "true"}}
""")
    result = cli.invoke(app, ["provision", "-t", str(path), "--records", str(records), "--no-bring-up"])
    assert result.exit_code == 1, result.output
    assert "Steps that did not complete:" in result.output

    by_key = {r.key: r for r in load_records(records)}
    assert by_key[("compute1", "tool")].status is StepStatus.FAILED
    assert by_key[("compute1", "tool")].attempts == 2
    assert by_key[("compute1", "use_tool")].status is StepStatus.BLOCKED
    assert by_key[("compute2", "use_tool")].status is StepStatus.SKIPPED
    assert fake_lab.runner("compute1").commands().count("install-tool") == 2

    status = cli.invoke(app, ["status", "--records", str(records)])
    assert status.exit_code == 1
    assert "compute1: degraded" in status.output
    assert "compute2: provisioned" in status.output


@pytest.mark.parametrize("statuses,code", [
    ([StepStatus.SUCCEEDED, StepStatus.SKIPPED], 0),
    ([StepStatus.SUCCEEDED, StepStatus.FAILED], 1),
    ([StepStatus.SUCCEEDED, StepStatus.CANCELLED], 3),
])
def test_status_exit_codes(tmp_path, statuses, code):
    path = tmp_path / "records.jsonl"
    save_records([ExecutionRecord("head", f"s{i}", st, attempts=1) for i, st in enumerate(statuses)], path)
    result = cli.invoke(app, ["status", "--records", str(path)])
    assert result.exit_code == code


def test_status_without_records(tmp_path):
    assert cli.invoke(app, ["status", "--records", str(tmp_path / "none.jsonl")]).exit_code == 2
    assert cli.invoke(app, ["status"]).exit_code == 2


def test_teardown_without_lab_is_harmless(fake_home, topology_file, tmp_path):
    path = topology_file(f"lab_dir: {tmp_path / 'lab'}\n" + NODES)
    result = cli.invoke(app, ["teardown", "-t", str(path)])
    assert result.exit_code == 0, result.output
    assert "Lab 'hpc' stopped." in result.output
