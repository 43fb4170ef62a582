# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/credentials/keys.py
from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional

from ..errors import ActionError
from ..remote.interface import RemoteRunner
from ..utils.execution import CommandRunner

log = logging.getLogger("minilab")


def _q(s: str) -> str:
    return shlex.quote(s)


class LocalKeyStore:
    """
    The operator's keypair on the machine running minilab. Its public half
    is baked into the lab image so the first SSH login already works.
    """

    def __init__(self, path: str | Path = "~/.ssh/minilab_ed25519", runner: Optional[CommandRunner] = None):
        self.path = Path(path).expanduser()
        self.runner = runner or CommandRunner(label="ssh-keygen")

    @property
    def public_path(self) -> Path:
        return self.path.with_name(self.path.name + ".pub")

    def exists(self) -> bool:
        return self.path.exists() and self.public_path.exists()

    def ensure_keypair(self, comment: str = "minilab-operator") -> str:
        """Generate the keypair if missing; return the public key line."""
        if not self.exists():
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            log.info("generating operator key %s", self.path)
            self.runner.run(["ssh-keygen", "-t", "ed25519", "-N", "", "-C", comment, "-f", str(self.path), "-q"])
        return self.public_key()

    def public_key(self) -> str:
        return self.public_path.read_text(encoding="utf-8").strip()


class RemoteKeyStore:
    """
    A service account's keypair on a node. Only the public half is ever
    read back; the private key never leaves the node it was generated on.
    """

    def __init__(self, user: str = "mpi", key_type: str = "ed25519"):
        self.user = user
        self.key_type = key_type

    @property
    def home(self) -> str:
        return f"/home/{self.user}"

    @property
    def ssh_dir(self) -> str:
        return f"{self.home}/.ssh"

    @property
    def key_path(self) -> str:
        return f"{self.ssh_dir}/id_{self.key_type}"

    @property
    def authorized_keys(self) -> str:
        return f"{self.ssh_dir}/authorized_keys"

    def _ensure_ssh_dir(self, runner: RemoteRunner) -> None:
        runner.check(
            f"install -d -m 700 -o {_q(self.user)} -g {_q(self.user)} {_q(self.ssh_dir)}",
            sudo=True,
        )

    def key_exists(self, runner: RemoteRunner) -> bool:
        return runner.test(f"test -s {_q(self.key_path)} && test -s {_q(self.key_path)}.pub", sudo=True)

    def ensure_keypair(self, runner: RemoteRunner) -> None:
        if self.key_exists(runner):
            return
        self._ensure_ssh_dir(runner)
        runner.check(
            f"sudo -u {_q(self.user)} ssh-keygen -t {_q(self.key_type)} -N '' -q -f {_q(self.key_path)}",
            sudo=True,
        )

    def public_key(self, runner: RemoteRunner) -> str:
        key = runner.read(f"{self.key_path}.pub", sudo=True).strip()
        if not key:
            raise ActionError(f"public key {self.key_path}.pub is empty")
        return key

    def is_authorized(self, runner: RemoteRunner, public_key: str) -> bool:
        return runner.test(f"grep -qxF {_q(public_key)} {_q(self.authorized_keys)}", sudo=True)

    def authorize(self, runner: RemoteRunner, public_key: str) -> None:
        """Append public_key to authorized_keys unless already present."""
        self._ensure_ssh_dir(runner)
        ak = _q(self.authorized_keys)
        runner.check(
            f"touch {ak} && (grep -qxF {_q(public_key)} {ak} || echo {_q(public_key)} >> {ak})"
            f" && chmod 600 {ak} && chown {_q(self.user)}:{_q(self.user)} {ak}",
            sudo=True,
        )

    def client_config(self, runner: RemoteRunner) -> None:
        """Let the account ssh between lab nodes without host key prompts."""
        self._ensure_ssh_dir(runner)
        runner.copy(
            "Host *\n  StrictHostKeyChecking no\n  UserKnownHostsFile /dev/null\n  LogLevel ERROR\n",
            f"{self.ssh_dir}/config",
            mode=0o600,
            owner=f"{self.user}:{self.user}",
        )

    def has_client_config(self, runner: RemoteRunner) -> bool:
        return runner.test(f"grep -q StrictHostKeyChecking {_q(self.ssh_dir)}/config", sudo=True)
