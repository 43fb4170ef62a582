import socket
import types

import paramiko
import pytest

from minilab.errors import ActionError, ConnectivityError
from minilab.inventory.models import Endpoint, Node
from minilab.remote.ssh import SSHConnector, SSHRunner

# ----------------- Fakes for Paramiko -----------------

class _FakeChannel:
    """Command already exited; everything is left for read()."""
    def __init__(self, rc=0): self._rc = rc
    def exit_status_ready(self): return True
    def recv_ready(self): return False
    def recv_stderr_ready(self): return False
    def recv_exit_status(self): return self._rc

class _Buf:
    def __init__(self, s=""): self._s = s
    def read(self): return self._s.encode()

class _FakeFile:
    def __init__(self, log, path):
        self._buf = []
        self.log = log
        self.path = path
    def write(self, data): self._buf.append(data)
    def __enter__(self): return self
    def __exit__(self, *exc):
        self.log.append(("sftp_write", self.path, "".join(self._buf)))

class FakeSFTP:
    def __init__(self, log): self.log = log
    def file(self, path, mode):
        return _FakeFile(self.log, path)
    def close(self): self.log.append(("sftp_close",))

class FakeSSHClient:
    def __init__(self, log=None, responses=None, connect_error=None, exec_error=None):
        self.log = log if log is not None else []
        self._responses = responses or {}
        self._connect_error = connect_error
        self._exec_error = exec_error
    def set_missing_host_key_policy(self, policy): self.log.append(("policy", type(policy).__name__))
    def connect(self, **kw):
        self.log.append(("connect", kw))
        if self._connect_error:
            raise self._connect_error
    def open_sftp(self): return FakeSFTP(self.log)
    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd, timeout))
        if self._exec_error:
            raise self._exec_error
        out, err, rc = self._responses.get(cmd, ("", "", 0))
        stdout = _Buf(out)
        stdout.channel = _FakeChannel(rc)
        return types.SimpleNamespace(), stdout, _Buf(err)
    def close(self): self.log.append(("close",))


def _execs(log):
    return [e[1] for e in log if e[0] == "exec"]

# ----------------- SSHRunner -----------------

def test_run_wraps_command_in_login_shell():
    log = []
    r = SSHRunner(FakeSSHClient(log, {"bash -lc 'echo hi'": ("hi\n", "", 0)}), node_name="head")
    res = r.run("echo hi")
    assert res.ok and res.stdout == "hi\n"
    assert _execs(log) == ["bash -lc 'echo hi'"]


def test_run_with_sudo_is_non_interactive():
    log = []
    SSHRunner(FakeSSHClient(log), node_name="head").run("id -u mpi", sudo=True)
    assert _execs(log) == ["sudo -n bash -lc 'id -u mpi'"]


def test_run_never_raises_on_nonzero_but_check_does():
    client = FakeSSHClient(responses={"bash -lc false": ("", "boom\nlast line\n", 2)})
    r = SSHRunner(client, node_name="compute1")
    assert r.run("false").exit_code == 2
    assert r.test("false") is False
    with pytest.raises(ActionError) as ei:
        r.check("false")
    assert ei.value.exit_code == 2
    assert ei.value.command == "false"
    assert "(rc=2): last line" in str(ei.value)


def test_session_errors_become_connectivity_errors():
    r = SSHRunner(FakeSSHClient(exec_error=paramiko.SSHException("channel closed")), node_name="head")
    with pytest.raises(ConnectivityError):
        r.run("true")
    r = SSHRunner(FakeSSHClient(exec_error=socket.timeout("timed out")), node_name="head")
    with pytest.raises(ConnectivityError):
        r.run("true")


def test_copy_uploads_then_installs_with_mode_and_owner():
    log = []
    r = SSHRunner(FakeSSHClient(log), node_name="head")
    r.copy("Host *\n", "/home/mpi/.ssh/config", mode=0o600, owner="mpi:mpi")

    (write,) = [e for e in log if e[0] == "sftp_write"]
    tmp = write[1]
    assert tmp.startswith("/tmp/.minilab_tmp_")
    assert write[2] == "Host *\n"
    (cmd,) = _execs(log)
    assert cmd.startswith("sudo -n bash -lc ")
    assert f"install -D -m 600 {tmp} /home/mpi/.ssh/config && chown mpi:mpi /home/mpi/.ssh/config" in cmd
    assert f"rm -f {tmp}" in cmd


def test_read_returns_stdout():
    client = FakeSSHClient(responses={"sudo -n bash -lc 'cat /home/mpi/.ssh/id_ed25519.pub'": ("ssh-ed25519 AAA mpi@head\n", "", 0)})
    assert SSHRunner(client, node_name="head").read("/home/mpi/.ssh/id_ed25519.pub", sudo=True) == "ssh-ed25519 AAA mpi@head\n"

# ----------------- SSHConnector -----------------

def _node(name="head", **ep):
    return Node(name, "head", Endpoint("127.0.0.1", 2221, **ep))


def test_connector_connects_with_password_and_agent_fallback():
    log = []
    conn = SSHConnector(connect_timeout=3, client_factory=lambda: FakeSSHClient(log))
    conn.runner(_node(password="pw"))
    (connect,) = [e[1] for e in log if e[0] == "connect"]
    assert connect["hostname"] == "127.0.0.1"
    assert connect["port"] == 2221
    assert connect["username"] == "ansible"
    assert connect["password"] == "pw"
    assert connect["pkey"] is None
    assert connect["allow_agent"] is True and connect["look_for_keys"] is True
    assert connect["timeout"] == 3
    assert ("policy", "AutoAddPolicy") in log


def test_connector_caches_and_invalidates():
    made = []

    def factory():
        c = FakeSSHClient()
        made.append(c)
        return c

    conn = SSHConnector(client_factory=factory)
    node = _node()
    first = conn.runner(node)
    assert conn.runner(node) is first
    assert len(made) == 1

    conn.invalidate("head")
    assert ("close",) in made[0].log
    assert conn.runner(node) is not first
    assert len(made) == 2

    conn.close_all()
    assert ("close",) in made[1].log


def test_connector_maps_auth_and_socket_failures():
    conn = SSHConnector(client_factory=lambda: FakeSSHClient(connect_error=paramiko.AuthenticationException("denied")))
    with pytest.raises(ConnectivityError) as ei:
        conn.runner(_node())
    assert "authentication failed" in str(ei.value)

    conn = SSHConnector(client_factory=lambda: FakeSSHClient(connect_error=ConnectionRefusedError(111, "refused")))
    with pytest.raises(ConnectivityError):
        conn.runner(_node())


def test_bad_key_fails_before_any_client_is_opened(tmp_path):
    made = []

    def factory():
        c = FakeSSHClient()
        made.append(c)
        return c

    garbage = tmp_path / "id_ed25519"
    garbage.write_text("not a key\n")
    conn = SSHConnector(client_factory=factory)
    with pytest.raises(ConnectivityError) as ei:
        conn.runner(_node(pkey_path=garbage))
    assert "Unsupported private key format" in str(ei.value)

    with pytest.raises(ConnectivityError) as ei:
        conn.runner(_node(pkey_path=tmp_path / "missing"))
    assert "Cannot read private key" in str(ei.value)
    assert made == []


class _ChattyChannel:
    """
    A command that writes far more stderr than one channel window: it only
    exits once every stderr chunk has been received.
    """

    def __init__(self):
        self.out = [b"partial\n"]
        self.err = [b"E" * 32768, b"E" * 32768, b"\nfatal: disk full\n"]
        self.polls = 0

    def exit_status_ready(self):
        self.polls += 1
        if self.polls > 1000:
            raise AssertionError("stderr never drained")
        return not self.err

    def recv_ready(self): return bool(self.out)
    def recv(self, n): return self.out.pop(0)
    def recv_stderr_ready(self): return bool(self.err)
    def recv_stderr(self, n): return self.err.pop(0)
    def recv_exit_status(self): return 3


def test_stderr_is_read_while_the_command_runs():
    class Client(FakeSSHClient):
        def exec_command(self, cmd, timeout=None):
            stdout = _Buf("")
            stdout.channel = _ChattyChannel()
            return types.SimpleNamespace(), stdout, _Buf("")

    r = SSHRunner(Client(), node_name="compute1")
    res = r.run("make install")
    assert res.stdout == "partial\n"
    assert len(res.stderr) > 65536
    assert res.exit_code == 3
    with pytest.raises(ActionError) as ei:
        r.check("make install")
    assert "(rc=3): fatal: disk full" in str(ei.value)


def test_command_that_never_exits_times_out_as_connectivity_error():
    class Stuck(_FakeChannel):
        def exit_status_ready(self): return False

    class Client(FakeSSHClient):
        def exec_command(self, cmd, timeout=None):
            stdout = _Buf("")
            stdout.channel = Stuck()
            return types.SimpleNamespace(), stdout, _Buf("")

    with pytest.raises(ConnectivityError) as ei:
        SSHRunner(Client(), node_name="head", cmd_timeout=0.1).run("sleep infinity")
    assert "still running" in str(ei.value)
