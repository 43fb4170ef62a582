# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/inventory/registry.py
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from ..errors import DuplicateNodeError, UnknownNodeError
from .models import Endpoint, Node, NodeRole, NodeState

log = logging.getLogger("minilab")


class NodeRegistry:
    """
    Declared topology, in declaration order. Pure in-memory state.
    """

    def __init__(self, nodes: Iterable[Node] = ()):
        self._nodes: Dict[str, Node] = {}
        for n in nodes:
            self.register(n)

    def register(self, node: Node) -> Node:
        if node.name in self._nodes:
            raise DuplicateNodeError(f"Node '{node.name}' is already registered")
        self._nodes[node.name] = node
        return node

    def get(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError:
            raise UnknownNodeError(f"Unknown node '{name}'") from None

    def list_by_role(self, role: NodeRole | str) -> List[Node]:
        role = NodeRole(role)
        return [n for n in self._nodes.values() if n.role == role]

    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def names(self) -> List[str]:
        return list(self._nodes)

    def select(
        self,
        roles: Iterable[NodeRole | str] = (),
        names: Iterable[str] = (),
    ) -> List[Node]:
        """
        Nodes matching any of roles or names, in registry order.
        An empty selector selects every node.
        """
        role_set = {NodeRole(r) for r in roles}
        name_set = set(names)
        for n in name_set:
            self.get(n)
        if not role_set and not name_set:
            return self.nodes()
        return [
            n for n in self._nodes.values()
            if n.role in role_set or n.name in name_set
        ]

    def set_state(self, name: str, state: NodeState | str) -> None:
        self.get(name).state = NodeState(state)

    def head(self) -> Node:
        heads = self.list_by_role(NodeRole.HEAD)
        if not heads:
            raise UnknownNodeError("Topology has no head node")
        return heads[0]

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    # ------------------------------------------------------------------
    # construction from config
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        topology,
        endpoints: Optional[Mapping[str, Endpoint]] = None,
    ) -> "NodeRegistry":
        """
        Build the registry from a validated TopologyConfig.
        endpoints maps compose service name -> endpoint reported by the
        runtime and wins over the declared host/port.
        """
        endpoints = endpoints or {}
        reg = cls()
        for spec in topology.nodes:
            cred = topology.credential(spec.credential)
            ep = Endpoint(
                host=spec.host,
                port=spec.port,
                username=spec.username,
                credential=spec.credential,
                pkey_path=Path(cred.private_key).expanduser() if cred and cred.private_key else None,
                password=cred.password if cred else None,
            )
            service = spec.service or spec.name
            if service in endpoints:
                runtime_ep = endpoints[service]
                ep = replace(ep, host=runtime_ep.host, port=runtime_ep.port)
                log.debug("node %s bound to runtime endpoint %s", spec.name, ep)
            reg.register(Node(name=spec.name, role=spec.role, endpoint=ep, service=service))
        return reg
