# src/minilab/remote/interface.py

from __future__ import annotations

from typing import Optional, Protocol

from ..inventory.models import Node
from .ssh import CommandResult


class RemoteRunner(Protocol):
    """
    Contract for running commands on one node.
    run() never raises on a non-zero exit; check() does (ActionError).
    Connection problems surface as ConnectivityError.
    """

    def run(self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult: ...

    def check(self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult: ...

    def test(self, cmd: str, *, sudo: bool = False) -> bool: ...

    def copy(
        self,
        content: str,
        remote_path: str,
        *,
        mode: int = 0o644,
        owner: Optional[str] = None,
        sudo: bool = True,
    ) -> None: ...

    def read(self, remote_path: str, *, sudo: bool = False) -> str: ...


class Connector(Protocol):
    def runner(self, node: Node) -> RemoteRunner: ...

    def invalidate(self, node_name: str) -> None: ...

    def close_all(self) -> None: ...
