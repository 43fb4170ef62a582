# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/runtime/compose.py
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config.models import RuntimeSpec, TopologyConfig
from ..errors import ConfigurationError, RuntimeToolError
from ..inventory.models import Endpoint
from ..observers.dispatcher import EventBus
from ..observers.events import LabReady, LabStarted, LabStopped, new_ctx, stamp
from ..utils.execution import CommandRunner
from ..utils.retry import RetryError, RetryPolicy, retry
from ..utils.templates import render_to

log = logging.getLogger("minilab")

DAEMON_JSON = Path("/etc/docker/daemon.json")


@dataclass(frozen=True)
class LabService:
    name: str               # compose service
    hostname: str           # node name inside the lab
    container_name: str
    host_port: int          # published port mapped to the container's sshd


@dataclass(frozen=True)
class LabDescriptor:
    """Everything needed to render and start the lab containers."""
    project: str
    lab_dir: Path
    services: Tuple[LabService, ...]
    base_image: str = "ubuntu:22.04"
    ssh_user: str = "ansible"
    shared_dir: str = "shared"
    authorized_keys: Tuple[str, ...] = ()
    pull_attempts: int = 2
    daemon_dns: Tuple[str, ...] = ("1.1.1.1", "8.8.8.8")
    apply_network_workaround: bool = True

    @property
    def compose_file(self) -> Path:
        return self.lab_dir / "compose.yml"

    @property
    def image_dir(self) -> Path:
        return self.lab_dir / "node_image"

    @classmethod
    def from_topology(cls, topology: TopologyConfig, authorized_keys: Sequence[str] = ()) -> "LabDescriptor":
        rt = topology.runtime or RuntimeSpec()
        users = {n.username for n in topology.nodes}
        if len(users) != 1:
            raise ConfigurationError(f"lab nodes must share one SSH user, got {sorted(users)}")
        ports = [n.port for n in topology.nodes]
        if len(set(ports)) != len(ports):
            raise ConfigurationError(f"lab nodes need distinct published ports, got {ports}")
        services = tuple(
            LabService(
                name=n.service or n.name,
                hostname=n.name,
                container_name=f"{rt.container_prefix}{n.name}",
                host_port=n.port,
            )
            for n in topology.nodes
        )
        return cls(
            project=rt.project,
            lab_dir=Path(topology.lab_dir).expanduser(),
            services=services,
            base_image=rt.base_image,
            ssh_user=users.pop(),
            shared_dir=rt.shared_dir,
            authorized_keys=tuple(authorized_keys),
            pull_attempts=rt.pull_attempts,
            daemon_dns=tuple(rt.daemon_dns),
            apply_network_workaround=rt.apply_network_workaround,
        )


def _parse_port_line(out: str) -> Tuple[str, int]:
    """'0.0.0.0:2221' / '[::]:2221' -> ('127.0.0.1', 2221)"""
    line = next((ln.strip() for ln in out.splitlines() if ln.strip()), "")
    host, sep, port = line.rpartition(":")
    if not sep or not port.isdigit():
        raise RuntimeToolError(f"unexpected 'compose port' output: {out!r}")
    host = host.strip("[]")
    if host in ("", "0.0.0.0", "::"):
        host = "127.0.0.1"
    return host, int(port)


class ComposeRuntime:
    """
    Docker compose backed lab: renders the node image and compose file,
    makes sure the base image can be pulled, starts the containers and
    reports the SSH endpoint of every service.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        cancel: Optional[threading.Event] = None,
        pull_base_delay: float = 2.0,
        daemon_json: Path = DAEMON_JSON,
    ):
        self.runner = runner or CommandRunner(label="docker")
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx("adhoc")
        self.cancel = cancel
        self.pull_base_delay = pull_base_delay
        self.daemon_json = daemon_json
        self._compose: Optional[List[str]] = None

    # ------------------------------------------------------------------
    # tooling
    # ------------------------------------------------------------------

    def compose_command(self) -> List[str]:
        """Prefer the compose plugin, fall back to standalone docker-compose."""
        if self._compose is None:
            try:
                res = self.runner.run(["docker", "compose", "version"], check=False)
                plugin = res.returncode == 0
            except RuntimeToolError:
                plugin = False
            if plugin:
                self._compose = ["docker", "compose"]
            elif self.runner.which("docker-compose"):
                self._compose = ["docker-compose"]
            else:
                raise RuntimeToolError("neither 'docker compose' nor 'docker-compose' is available")
            log.debug("compose command: %s", " ".join(self._compose))
        return self._compose

    def _compose_run(self, d: LabDescriptor, *args: str, **kwargs):
        cmd = [*self.compose_command(), "-f", str(d.compose_file), "-p", d.project, *args]
        return self.runner.run(cmd, cwd=d.lab_dir, **kwargs)

    def _privileged(self, cmd: List[str]) -> List[str]:
        return cmd if os.geteuid() == 0 else ["sudo", "-n", *cmd]

    # ------------------------------------------------------------------
    # rendering
    # ------------------------------------------------------------------

    def render(self, d: LabDescriptor) -> Path:
        if not d.authorized_keys:
            raise ConfigurationError("lab image needs at least one authorized public key")
        (d.lab_dir / d.shared_dir).mkdir(parents=True, exist_ok=True)
        render_to("Dockerfile.j2", d.image_dir / "Dockerfile", {
            "base_image": d.base_image,
            "ssh_user": d.ssh_user,
        })
        (d.image_dir / "authorized_keys").write_text("\n".join(d.authorized_keys) + "\n", encoding="utf-8")
        render_to("compose.yml.j2", d.compose_file, {
            "project": d.project,
            "services": d.services,
            "shared_dir": d.shared_dir,
        })
        return d.compose_file

    # ------------------------------------------------------------------
    # image pull with the daemon network workaround
    # ------------------------------------------------------------------

    def apply_network_workaround(self, dns: Sequence[str]) -> None:
        """Force IPv4 and public resolvers in daemon.json, then restart docker."""
        try:
            current = json.loads(self.daemon_json.read_text(encoding="utf-8"))
        except FileNotFoundError:
            current = {}
        except (OSError, ValueError) as e:
            log.warning("ignoring unreadable %s: %s", self.daemon_json, e)
            current = {}
        merged = {**current, "ipv6": False, "dns": list(dns)}
        log.info("applying IPv4/DNS workaround in %s", self.daemon_json)
        self.runner.run(self._privileged(["mkdir", "-p", str(self.daemon_json.parent)]))
        self.runner.run(
            self._privileged(["tee", str(self.daemon_json)]),
            input=json.dumps(merged, indent=2) + "\n",
        )
        if self.runner.which("systemctl"):
            self.runner.run(self._privileged(["systemctl", "restart", "docker"]))
        else:
            self.runner.run(self._privileged(["service", "docker", "restart"]))

    def pull_base_image(self, d: LabDescriptor) -> None:
        applied: List[bool] = []

        def remediate(attempt: int, exc: Exception) -> None:
            log.warning("pull of %s failed (attempt %d): %s", d.base_image, attempt, exc)
            if d.apply_network_workaround and not applied:
                self.apply_network_workaround(d.daemon_dns)
                applied.append(True)

        policy = RetryPolicy(max_attempts=d.pull_attempts, base_delay=self.pull_base_delay)

        @retry(policy, retry_on=(RuntimeToolError,), on_retry=remediate, cancel=self.cancel)
        def _pull() -> None:
            self.runner.run(["docker", "pull", d.base_image], timeout=1800)

        try:
            _pull()
        except RetryError as e:
            raise RuntimeToolError(f"could not pull {d.base_image}: {e.__cause__}") from e

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def endpoint(self, d: LabDescriptor, service: LabService) -> Endpoint:
        res = self._compose_run(d, "port", service.name, "22")
        host, port = _parse_port_line(res.stdout)
        return Endpoint(host=host, port=port, username=d.ssh_user)

    def bring_up(self, d: LabDescriptor) -> Dict[str, Endpoint]:
        """Start the lab and return {service: endpoint}."""
        self.render(d)
        self.pull_base_image(d)
        self._compose_run(d, "up", "-d", "--build", timeout=3600)
        self.bus.emit(LabStarted(services=[s.name for s in d.services], **stamp(self.run_ctx)))

        endpoints = {s.name: self.endpoint(d, s) for s in d.services}
        self.bus.emit(LabReady(
            endpoints={name: f"{ep.host}:{ep.port}" for name, ep in endpoints.items()},
            **stamp(self.run_ctx),
        ))
        return endpoints

    def tear_down(self, d: LabDescriptor, remove_volumes: bool = False) -> None:
        if not d.compose_file.exists():
            log.info("no compose file at %s; nothing to stop", d.compose_file)
            return
        args = ["down", "--remove-orphans"]
        if remove_volumes:
            args.append("--volumes")
        self._compose_run(d, *args)
        self.bus.emit(LabStopped(**stamp(self.run_ctx)))
