# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/errors.py
from __future__ import annotations

from typing import Optional


class MinilabError(RuntimeError):
    """Base class for minilab failures."""


class ConfigurationError(MinilabError):
    """Bad topology or step declarations. Fatal, raised before any remote action."""


class UnknownDependencyError(ConfigurationError):
    pass


class CyclicDependencyError(ConfigurationError):
    pass


class DuplicateNodeError(ConfigurationError):
    pass


class UnknownNodeError(ConfigurationError):
    pass


class ConnectivityError(MinilabError):
    """A node could not be reached. Retried by the executor."""


class ProbeTimeoutError(ConnectivityError, TimeoutError):
    """A readiness probe did not pass before its deadline."""


class ActionError(MinilabError):
    """A remote command exited non-zero. Retried by the executor."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr

    def __str__(self) -> str:
        msg = super().__str__()
        if self.exit_code is not None:
            msg = f"{msg} (rc={self.exit_code})"
        tail = self.stderr.strip().splitlines()[-1:] if self.stderr else []
        if tail:
            msg = f"{msg}: {tail[0]}"
        return msg


class RuntimeToolError(MinilabError):
    """A local tool (docker, ssh-keygen, ansible) failed."""


class RunCancelled(MinilabError):
    """The provisioning run was cancelled while waiting."""
