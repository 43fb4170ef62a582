# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/provisioning/hpc.py
from __future__ import annotations

import logging
from typing import List, Optional

from ..config.models import StepSpec, TopologyConfig
from ..deploy.graph import StepGraph
from ..inventory.registry import NodeRegistry
from .kinds import BuildEnv, build_step

log = logging.getLogger("minilab")

MPI_PACKAGES = [
    "build-essential",
    "openmpi-bin",
    "libopenmpi-dev",
    "openssh-client",
    "openssh-server",
]


def default_steps(user: str = "mpi") -> List[StepSpec]:
    """
    MPI-over-SSH mini cluster: toolchain everywhere, a service account with
    the head's key authorized on every node, then a hello-world job.
    """
    return [
        StepSpec(
            name="install_packages",
            kind="packages",
            description="Install MPI toolchain and SSH",
            params={"packages": MPI_PACKAGES},
        ),
        StepSpec(
            name="create_service_account",
            kind="service_account",
            description=f"Create {user} with passwordless sudo",
            depends_on=["install_packages"],
            params={"user": user},
        ),
        StepSpec(
            name="prepare_shared",
            kind="command",
            description="Ensure /shared exists (bind-mounted)",
            params={"command": "install -d -m 0777 /shared", "sudo": True, "check": "test -d /shared"},
        ),
        StepSpec(
            name="generate_key",
            kind="keygen",
            description=f"Generate SSH key for {user} on head",
            roles=["head"],
            depends_on=["create_service_account"],
            params={"user": user},
        ),
        StepSpec(
            name="exchange_keys",
            kind="authorize_key",
            description=f"Authorize head {user} key on all nodes",
            depends_on=["create_service_account", "generate_key"],
            params={"user": user},
        ),
        StepSpec(
            name="run_job",
            kind="mpi_job",
            description="Compile and run MPI hello across compute nodes",
            roles=["head"],
            depends_on=["exchange_keys", "prepare_shared"],
            params={"user": user},
        ),
    ]


def build_graph(
    topology: TopologyConfig,
    registry: NodeRegistry,
    env: Optional[BuildEnv] = None,
) -> StepGraph:
    """
    Steps declared in the topology (or the default catalog) as a StepGraph.
    Every structural problem surfaces here as a ConfigurationError.
    """
    env = env or BuildEnv.for_topology(topology)
    specs = topology.steps or default_steps()
    if not topology.steps:
        log.debug("no steps declared; using the default HPC catalog")

    graph = StepGraph()
    for spec in specs:
        step = build_step(spec, env)
        step.targets.select(registry)       # unknown node names fail now
        graph.add_step(step)
    graph.validate()
    return graph
