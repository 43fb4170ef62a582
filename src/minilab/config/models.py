# src/minilab/config/models.py

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, field_validator

from ..errors import ConfigurationError


class CredentialSpec(BaseModel):
    """SSH credential referenced by nodes. Secrets usually come from secrets.yaml."""
    private_key: Optional[str] = None       # path to private key file (local)
    password: Optional[str] = None


class NodeSpec(BaseModel):
    name: str
    role: Literal["head", "compute"]
    host: str = "127.0.0.1"
    port: int = Field(default=22, ge=1, le=65535)
    username: str = "ansible"
    credential: Optional[str] = "operator"
    service: Optional[str] = None           # compose service name; defaults to node name


class StepSpec(BaseModel):
    name: str
    kind: str                               # see minilab.provisioning.kinds
    description: Optional[str] = None
    roles: List[Literal["head", "compute"]] = Field(default_factory=list)
    nodes: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    requires_connectivity: bool = True
    params: Dict[str, Any] = Field(default_factory=dict)


class ExecutionSpec(BaseModel):
    concurrency: Optional[PositiveInt] = None   # None -> node count
    max_attempts: PositiveInt = 3
    base_delay: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    probe_interval: PositiveFloat = 1.0
    probe_timeout: PositiveFloat = 60.0
    connect_timeout: PositiveFloat = 15.0
    command_timeout: PositiveFloat = 600.0


class RuntimeSpec(BaseModel):
    """Container lab backing the nodes (docker compose)."""
    kind: Literal["compose"] = "compose"
    project: str = "hpc"
    base_image: str = "ubuntu:22.04"
    container_prefix: str = "hpc-"
    shared_dir: str = "shared"
    pull_attempts: PositiveInt = 2
    daemon_dns: List[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])
    apply_network_workaround: bool = True


class TopologyConfig(BaseModel):
    name: str = "hpc-minilab"
    lab_dir: str = "~/hpc-lab"
    operator_key: str = "~/.ssh/minilab_ed25519"   # used when no "operator" credential is declared
    records: Optional[str] = None           # defaults to ~/.minilab/records/<name>.jsonl
    credentials: Dict[str, CredentialSpec] = Field(default_factory=dict)
    nodes: List[NodeSpec]
    steps: List[StepSpec] = Field(default_factory=list)
    execution: ExecutionSpec = ExecutionSpec()
    runtime: Optional[RuntimeSpec] = None

    @field_validator("nodes")
    @classmethod
    def _at_least_one_node(cls, v: List[NodeSpec]) -> List[NodeSpec]:
        if not v:
            raise ValueError("topology must declare at least one node")
        return v

    def credential(self, name: Optional[str]) -> Optional[CredentialSpec]:
        """
        Resolve a node's credential reference. An unset reference means
        "use the SSH agent / default keys". An undeclared "operator"
        credential resolves to operator_key, which the local key store creates.
        """
        if name is None:
            return None
        if name in self.credentials:
            return self.credentials[name]
        if name == "operator":
            return CredentialSpec(private_key=self.operator_key)
        raise ConfigurationError(f"Node references unknown credential '{name}'")

    def records_path(self) -> str:
        return self.records or f"~/.minilab/records/{self.name}.jsonl"
