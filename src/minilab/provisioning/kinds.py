# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/provisioning/kinds.py
"""
Step kinds: each turns a StepSpec from the topology file into an
action/check pair. Builders register themselves by kind name.
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..config.models import StepSpec, TopologyConfig
from ..credentials.keys import RemoteKeyStore
from ..deploy.context import StepContext
from ..deploy.graph import IdempotencyCheck, Step, StepAction, TargetSelector
from ..errors import ActionError, ConfigurationError
from ..inventory.models import NodeRole
from ..remote.packages import AptPackageManager
from ..utils.templates import read_asset
from .playbook import PlaybookRunner, PlaybookStep

log = logging.getLogger("minilab")

P = TypeVar("P", bound=BaseModel)


def _q(s: str) -> str:
    return shlex.quote(s)


@dataclass
class BuildEnv:
    """Shared collaborators handed to every builder."""
    packages: AptPackageManager
    playbooks: PlaybookRunner
    command_timeout: float = 600.0

    @classmethod
    def for_topology(cls, topology: TopologyConfig) -> "BuildEnv":
        return cls(
            packages=AptPackageManager(timeout=max(topology.execution.command_timeout, 1800.0)),
            playbooks=PlaybookRunner(Path(topology.lab_dir).expanduser() / "ansible"),
            command_timeout=topology.execution.command_timeout,
        )


@dataclass
class StepParts:
    action: StepAction
    check: IdempotencyCheck
    roles: Tuple[str, ...] = ()        # default targets when the declaration names none


Builder = Callable[[StepSpec, BuildEnv], StepParts]

_KINDS: Dict[str, Builder] = {}


def register(kind: str):
    """Decorator to register a step kind builder."""
    def _wrap(fn: Builder) -> Builder:
        _KINDS[kind] = fn
        return fn
    return _wrap


def get(kind: str) -> Builder:
    return _KINDS[kind]


def has(kind: str) -> bool:
    return kind in _KINDS


def known_kinds() -> List[str]:
    return sorted(_KINDS)


def _params(model: Type[P], spec: StepSpec) -> P:
    try:
        return model.model_validate(spec.params)
    except ValidationError as e:
        raise ConfigurationError(f"Step '{spec.name}' ({spec.kind}): invalid params: {e}") from e


# ---------------------------------------------------------------------
# packages
# ---------------------------------------------------------------------

class PackagesParams(BaseModel):
    packages: List[str] = Field(min_length=1)


@register("packages")
def _packages(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(PackagesParams, spec)
    return StepParts(
        action=lambda ctx: env.packages.install_packages(ctx.runner, p.packages),
        check=lambda ctx: env.packages.installed(ctx.runner, p.packages),
    )


# ---------------------------------------------------------------------
# service_account
# ---------------------------------------------------------------------

class AccountParams(BaseModel):
    user: str = "mpi"
    shell: str = "/bin/bash"
    sudo: bool = True


@register("service_account")
def _service_account(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(AccountParams, spec)
    user = _q(p.user)
    sudoers = f"/etc/sudoers.d/{p.user}"

    def action(ctx: StepContext) -> None:
        ctx.runner.check(f"id -u {user} >/dev/null 2>&1 || useradd -m -s {_q(p.shell)} {user}", sudo=True)
        if p.sudo:
            ctx.runner.copy(f"{p.user} ALL=(ALL) NOPASSWD:ALL\n", sudoers, mode=0o440)

    def check(ctx: StepContext) -> bool:
        if not ctx.runner.test(f"id -u {user}"):
            return False
        return not p.sudo or ctx.runner.test(f"test -f {_q(sudoers)}", sudo=True)

    return StepParts(action=action, check=check)


# ---------------------------------------------------------------------
# keygen / authorize_key
# ---------------------------------------------------------------------

class KeyParams(BaseModel):
    user: str = "mpi"
    key_type: str = "ed25519"


class AuthorizeParams(KeyParams):
    source: Optional[str] = None        # node holding the key; defaults to the head


@register("keygen")
def _keygen(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(KeyParams, spec)
    store = RemoteKeyStore(p.user, p.key_type)
    return StepParts(
        action=lambda ctx: store.ensure_keypair(ctx.runner),
        check=lambda ctx: store.key_exists(ctx.runner),
        roles=(NodeRole.HEAD.value,),
    )


@register("authorize_key")
def _authorize_key(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(AuthorizeParams, spec)
    store = RemoteKeyStore(p.user, p.key_type)

    def source_key(ctx: StepContext) -> str:
        src = ctx.registry.get(p.source) if p.source else ctx.registry.head()
        return store.public_key(ctx.runner_for(src))

    def action(ctx: StepContext) -> None:
        store.authorize(ctx.runner, source_key(ctx))
        store.client_config(ctx.runner)

    def check(ctx: StepContext) -> bool:
        return store.is_authorized(ctx.runner, source_key(ctx)) and store.has_client_config(ctx.runner)

    return StepParts(action=action, check=check)


# ---------------------------------------------------------------------
# command
# ---------------------------------------------------------------------

class CommandParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    command: str
    sudo: bool = False
    user: Optional[str] = None          # run as this account (via sudo -u)
    creates: Optional[str] = None       # satisfied once this path exists
    check_command: Optional[str] = Field(default=None, alias="check")
    timeout: Optional[float] = None

    @model_validator(mode="after")
    def _needs_a_check(self) -> "CommandParams":
        if not self.creates and not self.check_command:
            raise ValueError("command steps need 'creates' or 'check' to be idempotent")
        return self


def _as_user(cmd: str, user: Optional[str]) -> str:
    return f"sudo -u {_q(user)} bash -lc {_q(cmd)}" if user else cmd


@register("command")
def _command(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(CommandParams, spec)
    privileged = p.sudo or bool(p.user)

    def action(ctx: StepContext) -> None:
        ctx.runner.check(_as_user(p.command, p.user), sudo=privileged, timeout=p.timeout or env.command_timeout)

    def check(ctx: StepContext) -> bool:
        if p.creates and not ctx.runner.test(f"test -e {_q(p.creates)}", sudo=privileged):
            return False
        if p.check_command and not ctx.runner.test(_as_user(p.check_command, p.user), sudo=privileged):
            return False
        return True

    return StepParts(action=action, check=check)


# ---------------------------------------------------------------------
# file
# ---------------------------------------------------------------------

class FileParams(BaseModel):
    path: str
    content: str
    mode: str = "0644"
    owner: Optional[str] = None         # user or user:group

    @model_validator(mode="after")
    def _octal_mode(self) -> "FileParams":
        try:
            int(self.mode, 8)
        except ValueError:
            raise ValueError(f"mode must be octal, got {self.mode!r}") from None
        return self


@register("file")
def _file(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(FileParams, spec)
    mode = int(p.mode, 8)
    path = _q(p.path)

    def action(ctx: StepContext) -> None:
        ctx.runner.copy(p.content, p.path, mode=mode, owner=p.owner)

    def check(ctx: StepContext) -> bool:
        same = ctx.runner.test(f"printf '%s' {_q(p.content)} | cmp -s - {path}", sudo=True)
        if not same:
            return False
        perms = f'test "$(stat -c %a {path})" = {_q(format(mode, "o"))}'
        if p.owner:
            fmt = "%U:%G" if ":" in p.owner else "%U"
            perms += f' && test "$(stat -c {fmt} {path})" = {_q(p.owner)}'
        return ctx.runner.test(perms, sudo=True)

    return StepParts(action=action, check=check)


# ---------------------------------------------------------------------
# mpi_job
# ---------------------------------------------------------------------

class MpiJobParams(BaseModel):
    user: str = "mpi"
    shared: str = "/shared"
    program: str = "mpi_hello"
    source: Optional[str] = None        # local C file; defaults to the bundled hello world
    hosts: List[str] = Field(default_factory=list)     # defaults to the compute nodes
    slots: int = Field(default=1, ge=1)
    np: Optional[int] = Field(default=None, ge=1)
    mpirun_args: List[str] = Field(default_factory=list)
    expect: Optional[str] = "Hello from rank"
    timeout: float = 600.0


@register("mpi_job")
def _mpi_job(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(MpiJobParams, spec)
    if p.source:
        try:
            source = Path(p.source).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Step '{spec.name}': cannot read source {p.source}: {e}") from e
    else:
        source = read_asset("mpi_hello.c")

    hostfile = f"{p.shared}/hostfile"
    src_path = f"{p.shared}/{p.program}.c"
    binary = f"{p.shared}/{p.program}"
    marker = f"{p.shared}/.minilab/{spec.name}.out"

    def hosts(ctx: StepContext) -> List[str]:
        if p.hosts:
            return p.hosts
        compute = ctx.registry.list_by_role(NodeRole.COMPUTE)
        return [n.name for n in (compute or ctx.registry.nodes())]

    def action(ctx: StepContext) -> None:
        names = hosts(ctx)
        np = p.np or len(names) * p.slots
        r = ctx.runner
        r.copy("".join(f"{h} slots={p.slots}\n" for h in names), hostfile)
        r.copy(source, src_path)
        r.check(f"mpicc {_q(src_path)} -O2 -o {_q(binary)}", sudo=True)

        mpirun = " ".join(
            ["mpirun", "--hostfile", _q(hostfile), "-np", str(np), *map(_q, p.mpirun_args), _q(binary)]
        )
        res = r.check(_as_user(mpirun, p.user), sudo=True, timeout=p.timeout)
        if p.expect:
            ranks = sum(1 for ln in res.stdout.splitlines() if p.expect in ln)
            if ranks != np:
                raise ActionError(
                    f"[{ctx.node.name}] {spec.name}: expected {np} lines matching {p.expect!r}, got {ranks}",
                    command=mpirun,
                    exit_code=res.exit_code,
                    stderr=res.stderr,
                )
        log.info("[%s] %s output:\n%s", ctx.node.name, spec.name, res.stdout.rstrip())
        r.copy(res.stdout, marker)

    def check(ctx: StepContext) -> bool:
        return ctx.runner.test(f"test -s {_q(marker)}", sudo=True)

    return StepParts(action=action, check=check, roles=(NodeRole.HEAD.value,))


# ---------------------------------------------------------------------
# playbook
# ---------------------------------------------------------------------

class PlaybookParams(BaseModel):
    playbook: str
    extravars: Dict[str, Any] = Field(default_factory=dict)


@register("playbook")
def _playbook(spec: StepSpec, env: BuildEnv) -> StepParts:
    p = _params(PlaybookParams, spec)
    step = PlaybookStep(env.playbooks, p.playbook, p.extravars)
    return StepParts(action=step.action, check=step.check)


# ---------------------------------------------------------------------
# StepSpec -> Step
# ---------------------------------------------------------------------

def build_step(spec: StepSpec, env: BuildEnv) -> Step:
    if not has(spec.kind):
        raise ConfigurationError(
            f"Step '{spec.name}': unknown kind '{spec.kind}' (known: {', '.join(known_kinds())})"
        )
    parts = get(spec.kind)(spec, env)
    roles = tuple(spec.roles) or (parts.roles if not spec.nodes else ())
    return Step(
        name=spec.name,
        action=parts.action,
        check=parts.check,
        targets=TargetSelector(roles=roles, names=tuple(spec.nodes)),
        depends_on=tuple(spec.depends_on),
        requires_connectivity=spec.requires_connectivity,
        description=spec.description or spec.kind,
    )
