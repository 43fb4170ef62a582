# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/health/prober.py

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import paramiko

from ..errors import ConnectivityError, ProbeTimeoutError, RunCancelled
from ..inventory.models import Node
from ..observers.dispatcher import EventBus
from ..observers.events import ProbeStarted, ProbeSucceeded, ProbeTimedOut, new_ctx, stamp

log = logging.getLogger("minilab")


class Capability(Protocol):
    @property
    def name(self) -> str: ...

    def check(self, node: Node) -> bool: ...


@dataclass(frozen=True)
class TcpListener:
    """
    The node's port accepts TCP and greets with `banner` (default: the SSH
    identification string). A published container port accepts connections
    before the daemon behind it is up, so accepting alone is not enough.
    Pass banner=None for services that never speak first.
    """
    port: Optional[int] = None
    connect_timeout: float = 1.0
    banner: Optional[bytes] = b"SSH-"

    @property
    def name(self) -> str:
        return f"tcp:{self.port}" if self.port else "tcp:ssh"

    def check(self, node: Node) -> bool:
        port = self.port or node.endpoint.port
        try:
            with socket.create_connection((node.endpoint.host, port), timeout=self.connect_timeout) as sock:
                if self.banner is None:
                    return True
                greeting = sock.recv(256)
        except OSError as e:
            log.debug("[%s] %s:%d not accepting yet: %s", node.name, node.endpoint.host, port, e)
            return False
        if greeting.startswith(self.banner):
            return True
        log.debug("[%s] %s:%d accepted but sent %r", node.name, node.endpoint.host, port, greeting[:32])
        return False


@dataclass(frozen=True)
class SshLogin:
    """The node accepts an SSH login and runs a trivial command."""
    connect: Callable[[Any], Any]       # SSHConnector.connect

    @property
    def name(self) -> str:
        return "ssh-login"

    def check(self, node: Node) -> bool:
        try:
            client = self.connect(node.endpoint)
        except ConnectivityError as e:
            log.debug("[%s] ssh login not ready: %s", node.name, e)
            return False
        try:
            _stdin, stdout, _stderr = client.exec_command("true", timeout=5.0)
            return stdout.channel.recv_exit_status() == 0
        except (paramiko.SSHException, OSError, EOFError) as e:
            log.debug("[%s] ssh session not ready: %s", node.name, e)
            return False
        finally:
            client.close()


class HealthProber:
    """
    Polls a node capability at a fixed interval until it passes or the
    timeout elapses. Waits on the shared cancel event, so a run
    cancellation aborts the wait within one poll interval.
    """

    def __init__(
        self,
        *,
        interval: float = 1.0,
        cancel: Optional[threading.Event] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.cancel = cancel or threading.Event()
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx("adhoc")
        self._clock = clock

    def wait_ready(self, node: Node, capability: Capability, timeout: float) -> int:
        """
        Returns the number of polls it took. Raises ProbeTimeoutError
        (a TimeoutError) or RunCancelled.
        """
        self.bus.emit(ProbeStarted(node=node.name, capability=capability.name, timeout_s=timeout, **stamp(self.run_ctx)))
        deadline = self._clock() + timeout
        polls = 0
        while True:
            if self.cancel.is_set():
                raise RunCancelled(f"[{node.name}] probe {capability.name} cancelled")
            polls += 1
            if capability.check(node):
                self.bus.emit(ProbeSucceeded(node=node.name, capability=capability.name, polls=polls, **stamp(self.run_ctx)))
                return polls
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.bus.emit(ProbeTimedOut(node=node.name, capability=capability.name, timeout_s=timeout, **stamp(self.run_ctx)))
                raise ProbeTimeoutError(
                    f"[{node.name}] {capability.name} not ready after {timeout:g}s ({polls} polls)"
                )
            if self.cancel.wait(min(self.interval, remaining)):
                raise RunCancelled(f"[{node.name}] probe {capability.name} cancelled")
