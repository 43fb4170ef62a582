# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/remote/ssh.py

from __future__ import annotations

import itertools
import logging
import os
import shlex
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import paramiko

from ..errors import ActionError, ConnectivityError
from ..inventory.models import Endpoint, Node

log = logging.getLogger("minilab")

_counter = itertools.count(1)


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _q(s: str) -> str:
    """Quote for bash -lc."""
    return shlex.quote(s)


def load_private_key(path: str) -> paramiko.PKey:
    """Try the key types we generate or commonly meet, newest first."""
    last: Optional[Exception] = None
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(path)
        except paramiko.SSHException as e:
            last = e
            continue
        except OSError as e:
            raise ConnectivityError(f"Cannot read private key {path}: {e}") from e
    raise ConnectivityError(f"Unsupported private key format for {path}: {last}")


class SSHRunner:
    """
    Remote command runner bound to one node over a paramiko client.
    """

    def __init__(self, client: paramiko.SSHClient, *, node_name: str, cmd_timeout: float = 600.0):
        self.client = client
        self.node_name = node_name
        self.cmd_timeout = cmd_timeout

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        final = f"sudo -n bash -lc {_q(cmd)}" if sudo else f"bash -lc {_q(cmd)}"
        log.debug("(%s) $ %s", self.node_name, final)
        try:
            _stdin, stdout, stderr = self.client.exec_command(final, timeout=timeout or self.cmd_timeout)
            out, err = self._drain(stdout, stderr, timeout or self.cmd_timeout)
            rc = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise ConnectivityError(f"[{self.node_name}] SSH session failed: {e}") from e

        if out.strip():
            log.debug("(%s) [stdout]\n%s", self.node_name, out.rstrip())
        if err.strip():
            log.debug("(%s) [stderr]\n%s", self.node_name, err.rstrip())
        log.debug("(%s) [exit %d]", self.node_name, rc)
        return CommandResult(stdout=out, stderr=err, exit_code=rc)

    def _drain(self, stdout, stderr, timeout: float) -> Tuple[str, str]:
        """
        Collect stdout and stderr together until the command exits.
        """
        chan = stdout.channel
        out_chunks: List[bytes] = []
        err_chunks: List[bytes] = []
        deadline = time.monotonic() + timeout
        while not chan.exit_status_ready():
            got = False
            if chan.recv_ready():
                out_chunks.append(chan.recv(32768))
                got = True
            if chan.recv_stderr_ready():
                err_chunks.append(chan.recv_stderr(32768))
                got = True
            if not got:
                if time.monotonic() > deadline:
                    raise socket.timeout(f"command still running after {timeout:g}s")
                time.sleep(0.05)
        out_chunks.append(stdout.read())
        err_chunks.append(stderr.read())
        return (
            b"".join(out_chunks).decode("utf-8", errors="replace"),
            b"".join(err_chunks).decode("utf-8", errors="replace"),
        )

    def check(self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """run() that raises ActionError on a non-zero exit."""
        res = self.run(cmd, sudo=sudo, timeout=timeout)
        if not res.ok:
            raise ActionError(
                f"[{self.node_name}] command failed: {cmd}",
                command=cmd,
                exit_code=res.exit_code,
                stderr=res.stderr,
            )
        return res

    def test(self, cmd: str, *, sudo: bool = False) -> bool:
        """True when cmd exits 0. Used by idempotency checks."""
        return self.run(cmd, sudo=sudo).ok

    def copy(
        self,
        content: str,
        remote_path: str,
        *,
        mode: int = 0o644,
        owner: Optional[str] = None,
        sudo: bool = True,
    ) -> None:
        """
        Upload content to a temp path then install it at remote_path so
        root-owned targets keep their permissions.
        """
        tmp_remote = f"/tmp/.minilab_tmp_{os.getpid()}_{next(_counter)}"
        try:
            sftp = self.client.open_sftp()
            try:
                with sftp.file(tmp_remote, "w") as f:
                    f.write(content)
            finally:
                sftp.close()
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise ConnectivityError(f"[{self.node_name}] SFTP upload failed: {e}") from e

        chown = f" && chown {owner} {_q(remote_path)}" if owner else ""
        self.check(
            f"install -D -m {oct(mode)[2:]} {tmp_remote} {_q(remote_path)}{chown}; rc=$?; rm -f {tmp_remote}; exit $rc",
            sudo=sudo,
        )

    def read(self, remote_path: str, *, sudo: bool = False) -> str:
        return self.check(f"cat {_q(remote_path)}", sudo=sudo).stdout

    def close(self) -> None:
        self.client.close()


class SSHConnector:
    """
    Opens and caches one SSH client per node. Thread-safe; each node's
    worker normally only touches its own runner.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 15.0,
        cmd_timeout: float = 600.0,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ):
        self.connect_timeout = connect_timeout
        self.cmd_timeout = cmd_timeout
        self._client_factory = client_factory or paramiko.SSHClient
        self._runners: Dict[str, SSHRunner] = {}
        self._lock = threading.Lock()

    def connect(self, endpoint: Endpoint) -> paramiko.SSHClient:
        pkey = load_private_key(str(endpoint.pkey_path)) if endpoint.pkey_path else None
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=endpoint.host,
                port=endpoint.port,
                username=endpoint.username,
                pkey=pkey,
                password=endpoint.password if not pkey else None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=pkey is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectivityError(f"SSH authentication failed for {endpoint}: {e}") from e
        except (paramiko.SSHException, socket.error, EOFError) as e:
            client.close()
            raise ConnectivityError(f"SSH connection to {endpoint} failed: {e}") from e
        return client

    def runner(self, node: Node) -> SSHRunner:
        with self._lock:
            r = self._runners.get(node.name)
        if r is not None:
            return r
        log.debug("[%s] opening SSH connection to %s", node.name, node.endpoint)
        client = self.connect(node.endpoint)
        fresh = SSHRunner(client, node_name=node.name, cmd_timeout=self.cmd_timeout)
        with self._lock:
            r = self._runners.setdefault(node.name, fresh)
        if r is not fresh:
            fresh.close()
        return r

    def invalidate(self, node_name: str) -> None:
        """Drop a cached client after a connectivity failure so the next attempt reconnects."""
        with self._lock:
            r = self._runners.pop(node_name, None)
        if r is not None:
            r.close()

    def close_all(self) -> None:
        with self._lock:
            runners, self._runners = list(self._runners.values()), {}
        for r in runners:
            r.close()
