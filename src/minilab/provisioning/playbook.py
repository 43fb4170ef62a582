# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/provisioning/playbook.py
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import ansible_runner

from ..deploy.context import StepContext
from ..errors import ActionError, ConfigurationError
from ..inventory.models import NodeRole
from ..inventory.registry import NodeRegistry
from ..utils.templates import render_to

log = logging.getLogger("minilab")


def render_inventory(registry: NodeRegistry, root: Path, *, timeout: int = 30) -> Path:
    """Write ansible.cfg and inventory.ini for the registry's current endpoints."""
    groups: Dict[str, List[Any]] = {}
    for role in NodeRole:
        nodes = registry.list_by_role(role)
        if nodes:
            groups[role.value] = nodes
    inventory = render_to("inventory.ini.j2", root / "inventory.ini", {"groups": groups})
    render_to("ansible.cfg.j2", root / "ansible.cfg", {"inventory": inventory.name, "timeout": timeout})
    return inventory


class PlaybookRunner:
    """
    Runs a playbook against a single node of the lab through ansible-runner.
    The inventory is rendered once, on first use, from the registry the
    step context carries.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        roles_path: Optional[str] = None,
        run: Callable[..., Any] = ansible_runner.run,
        quiet: bool = True,
    ):
        self.root = Path(root).expanduser()
        self.roles_path = roles_path
        self._run = run
        self.quiet = quiet
        self._inventory: Optional[Path] = None
        self._lock = threading.Lock()

    def inventory(self, registry: NodeRegistry) -> Path:
        with self._lock:
            if self._inventory is None:
                self._inventory = render_inventory(registry, self.root)
            return self._inventory

    def _envvars(self) -> Dict[str, str]:
        env = {"ANSIBLE_CONFIG": str(self.root / "ansible.cfg")}
        if self.roles_path:
            env["ANSIBLE_ROLES_PATH"] = self.roles_path
        return env

    def apply(
        self,
        playbook: str | Path,
        node: str,
        registry: NodeRegistry,
        extravars: Optional[Dict[str, Any]] = None,
        check: bool = False,
    ):
        inventory = self.inventory(registry)
        log.debug("ansible-playbook %s --limit %s%s", playbook, node, " --check" if check else "")
        return self._run(
            private_data_dir=str(self.root),
            playbook=str(playbook),
            inventory=str(inventory),
            limit=node,
            extravars=extravars or {},
            envvars=self._envvars(),
            cmdline="--check" if check else None,
            quiet=self.quiet,
        )


def _host_count(stats: Optional[Dict[str, Dict[str, int]]], key: str, node: str) -> int:
    return int(((stats or {}).get(key) or {}).get(node, 0))


class PlaybookStep:
    """
    Action/check pair for the 'playbook' step kind. The check is the same
    playbook in --check mode: it passes when nothing would change.
    """

    def __init__(self, runner: PlaybookRunner, playbook: str, extravars: Optional[Dict[str, Any]] = None):
        if not playbook:
            raise ConfigurationError("playbook step needs a 'playbook' parameter")
        self.runner = runner
        self.playbook = str(Path(playbook).expanduser())
        self.extravars = extravars or {}

    def action(self, ctx: StepContext) -> None:
        result = self.runner.apply(self.playbook, ctx.node.name, ctx.registry, self.extravars)
        if result.rc != 0:
            raise ActionError(
                f"[{ctx.node.name}] playbook {os.path.basename(self.playbook)} ended {result.status}",
                command=f"ansible-playbook {self.playbook}",
                exit_code=result.rc,
            )

    def check(self, ctx: StepContext) -> bool:
        node = ctx.node.name
        result = self.runner.apply(self.playbook, node, ctx.registry, self.extravars, check=True)
        if result.rc != 0:
            return False
        stats = result.stats
        changed = _host_count(stats, "changed", node)
        failed = _host_count(stats, "failures", node) + _host_count(stats, "dark", node)
        log.debug("[%s] playbook --check: changed=%d failed=%d", node, changed, failed)
        return changed == 0 and failed == 0
