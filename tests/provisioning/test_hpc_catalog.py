import pytest

from minilab.config.models import TopologyConfig
from minilab.errors import ConfigurationError, CyclicDependencyError, UnknownNodeError
from minilab.provisioning.hpc import MPI_PACKAGES, build_graph, default_steps
from minilab.provisioning.kinds import BuildEnv
from minilab.provisioning.playbook import PlaybookRunner
from minilab.remote.packages import AptPackageManager


NODES = [
    {"name": "head", "role": "head", "port": 2221},
    {"name": "compute1", "role": "compute", "port": 2222},
    {"name": "compute2", "role": "compute", "port": 2223},
]


@pytest.fixture
def env(tmp_path):
    return BuildEnv(packages=AptPackageManager(), playbooks=PlaybookRunner(tmp_path))


def _topology(steps=None):
    return TopologyConfig.model_validate({"nodes": NODES, "steps": steps or []})


def test_default_catalog_order_and_targets(env, registry):
    graph = build_graph(_topology(), registry, env)
    assert graph.topological_order().names() == [
        "install_packages",
        "create_service_account",
        "prepare_shared",
        "generate_key",
        "exchange_keys",
        "run_job",
    ]
    assert [n.name for n in graph.get("generate_key").targets.select(registry)] == ["head"]
    assert [n.name for n in graph.get("run_job").targets.select(registry)] == ["head"]
    assert len(graph.get("exchange_keys").targets.select(registry)) == 3
    assert graph.dependencies("run_job") == ("exchange_keys", "prepare_shared")


def test_default_catalog_uses_the_service_account():
    specs = {s.name: s for s in default_steps(user="hpc")}
    assert specs["install_packages"].params["packages"] == MPI_PACKAGES
    assert specs["exchange_keys"].params["user"] == "hpc"
    assert specs["run_job"].params["user"] == "hpc"


def test_declared_steps_replace_the_catalog(env, registry):
    graph = build_graph(_topology([
        {"name": "motd", "kind": "file", "params": {"path": "/etc/motd", "content": "hi\n"}},
        {"name": "tools", "kind": "packages", "depends_on": ["motd"], "roles": ["compute"],
         "params": {"packages": ["htop"]}},
    ]), registry, env)
    assert graph.names() == ["motd", "tools"]


def test_unknown_node_in_step_targets(env, registry):
    with pytest.raises(UnknownNodeError):
        build_graph(_topology([
            {"name": "motd", "kind": "file", "nodes": ["compute9"],
             "params": {"path": "/etc/motd", "content": "hi\n"}},
        ]), registry, env)


def test_structural_errors_surface_at_build_time(env, registry):
    cmd = {"command": "true", "check": "true"}
    with pytest.raises(CyclicDependencyError):
        build_graph(_topology([
            {"name": "a", "kind": "command", "depends_on": ["b"], "params": cmd},
            {"name": "b", "kind": "command", "depends_on": ["a"], "params": cmd},
        ]), registry, env)
    with pytest.raises(ConfigurationError):
        build_graph(_topology([
            {"name": "a", "kind": "command", "depends_on": ["ghost"], "params": cmd},
        ]), registry, env)
