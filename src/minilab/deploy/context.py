# src/minilab/deploy/context.py
from __future__ import annotations

from dataclasses import dataclass

from ..inventory.models import Node
from ..inventory.registry import NodeRegistry
from ..remote.interface import Connector, RemoteRunner


@dataclass
class StepContext:
    """What a step's action and check see for one node."""
    node: Node
    registry: NodeRegistry
    connector: Connector

    @property
    def runner(self) -> RemoteRunner:
        return self.connector.runner(self.node)

    def runner_for(self, node: Node | str) -> RemoteRunner:
        """Runner for another node, e.g. the head when reading its public key."""
        if isinstance(node, str):
            node = self.registry.get(node)
        return self.connector.runner(node)
