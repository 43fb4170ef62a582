# src/minilab/inventory/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class NodeRole(str, Enum):
    HEAD = "head"
    COMPUTE = "compute"


class NodeState(str, Enum):
    DECLARED = "declared"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Endpoint:
    """
    Where and how to SSH into a node.
    """
    host: str                           # IP or DNS to connect
    port: int = 22
    username: str = "ansible"
    credential: Optional[str] = None    # name of a credential in the topology
    pkey_path: Optional[Path] = None    # resolved private key for that credential
    password: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass
class Node:
    """
    One addressable machine in the lab. name and role never change after
    registration; state is updated by the executor.
    """
    name: str
    role: NodeRole
    endpoint: Endpoint
    service: Optional[str] = None       # compose service backing this node, if any
    state: NodeState = field(default=NodeState.DECLARED)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", NodeRole(self.role))
        self.state = NodeState(self.state)

    def __setattr__(self, key, value):
        if key in ("name", "role") and key in self.__dict__:
            raise AttributeError(f"Node.{key} is immutable")
        super().__setattr__(key, value)
