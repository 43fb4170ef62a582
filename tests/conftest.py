from typing import Dict, List, Optional

import pytest

from minilab.errors import ActionError, ConnectivityError
from minilab.inventory.models import Endpoint, Node
from minilab.inventory.registry import NodeRegistry
from minilab.remote.ssh import CommandResult


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)
    def of(self, cls): return [e for e in self.events if isinstance(e, cls)]


class ScriptedRunner:
    """
    RemoteRunner fake. Records every command; the result comes from the
    most recently added rule whose needle is a substring of the command,
    else rc=0 with empty output.
    """

    def __init__(self, name: str = "node"):
        self.name = name
        self.calls: List[tuple] = []
        self.copies: List[tuple] = []
        self._rules: List[tuple] = []

    def on(self, needle: str, stdout: str = "", stderr: str = "", rc: int = 0) -> "ScriptedRunner":
        self._rules.insert(0, (needle, CommandResult(stdout, stderr, rc)))
        return self

    def commands(self) -> List[str]:
        return [c for c, _ in self.calls]

    def run(self, cmd, *, sudo=False, timeout=None):
        self.calls.append((cmd, sudo))
        for needle, res in self._rules:
            if needle in cmd:
                return res
        return CommandResult("", "", 0)

    def check(self, cmd, *, sudo=False, timeout=None):
        res = self.run(cmd, sudo=sudo, timeout=timeout)
        if not res.ok:
            raise ActionError(f"[{self.name}] command failed: {cmd}", command=cmd, exit_code=res.exit_code, stderr=res.stderr)
        return res

    def test(self, cmd, *, sudo=False):
        return self.run(cmd, sudo=sudo).ok

    def copy(self, content, remote_path, *, mode=0o644, owner=None, sudo=True):
        self.copies.append((remote_path, content, mode, owner))

    def read(self, remote_path, *, sudo=False):
        return self.check(f"cat {remote_path}", sudo=sudo).stdout


class FakeConnector:
    def __init__(self):
        self.runners: Dict[str, ScriptedRunner] = {}
        self.invalidated: List[str] = []
        self.closed = False

    def runner(self, node):
        name = node if isinstance(node, str) else node.name
        return self.runners.setdefault(name, ScriptedRunner(name))

    def connect(self, endpoint):
        raise ConnectivityError(f"no SSH in tests: {endpoint}")

    def invalidate(self, node_name):
        self.invalidated.append(node_name)

    def close_all(self):
        self.closed = True


class AlwaysReady:
    name = "always"
    def check(self, node): return True


class NeverReady:
    name = "never"
    def check(self, node): return False


def lab_registry(computes: int = 2, base_port: int = 2221) -> NodeRegistry:
    reg = NodeRegistry()
    reg.register(Node("head", "head", Endpoint("127.0.0.1", base_port)))
    for i in range(1, computes + 1):
        reg.register(Node(f"compute{i}", "compute", Endpoint("127.0.0.1", base_port + i)))
    return reg


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def registry():
    return lab_registry()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def runner():
    return ScriptedRunner("head")


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("MINILAB_SECRETS_FILE", raising=False)
    return home


def write_topology(path, text: str, name: Optional[str] = None):
    p = path / (name or "topology.yaml")
    p.write_text(text)
    return p


@pytest.fixture
def topology_file(tmp_path):
    def _write(text: str, name: Optional[str] = None):
        return write_topology(tmp_path, text, name)
    return _write


@pytest.fixture
def ready():
    return AlwaysReady()


@pytest.fixture
def never_ready():
    return NeverReady()
