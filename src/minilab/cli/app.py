# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/cli/app.py
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import typer

from minilab.config.loader import load_topology
from minilab.config.models import TopologyConfig
from minilab.credentials.keys import LocalKeyStore
from minilab.deploy.executor import Executor, ExecutorOptions, RunReport
from minilab.deploy.graph import compute_plan
from minilab.deploy.records import (
    ExecutionRecord,
    StepStatus,
    compare_runs,
    load_records,
    overall_status,
    status_counts,
)
from minilab.errors import ConfigurationError, RunCancelled, RuntimeToolError
from minilab.health.prober import HealthProber, SshLogin
from minilab.inventory.models import Endpoint
from minilab.inventory.registry import NodeRegistry
from minilab.logging.log import init_logging
from minilab.observers.console import ConsoleObserver
from minilab.observers.dispatcher import EventBus
from minilab.observers.events import new_ctx
from minilab.observers.jsonfile import JsonFileObserver
from minilab.observers.logger import LoggerObserver
from minilab.provisioning.hpc import build_graph
from minilab.remote.ssh import SSHConnector
from minilab.runtime.compose import ComposeRuntime, LabDescriptor

log = logging.getLogger("minilab")

app = typer.Typer(help="minilab: provision a small HPC lab cluster over SSH", no_args_is_help=True)

EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 3


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _config_error(err: object) -> typer.Exit:
    typer.secho(f"Configuration error: {err}", fg="red", err=True)
    return typer.Exit(code=EXIT_CONFIG)


def _load(topology: Path) -> TopologyConfig:
    try:
        return load_topology(topology)
    except ConfigurationError as e:
        raise _config_error(e) from e


class _Canceller:
    """Signal target; switches from the bring-up event to the executor once it exists."""

    def __init__(self, event: threading.Event):
        self.event = event
        self.executor: Optional[Executor] = None

    def __call__(self) -> None:
        if self.executor is not None:
            self.executor.cancel()
        else:
            self.event.set()


@contextmanager
def _cancel_on_signals(cancel: Callable[[], None]) -> Iterator[None]:
    def handler(signum, _frame):
        log.warning("received %s; cancelling (in-flight commands will finish)", signal.Signals(signum).name)
        cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # not the main thread (e.g. under a test runner); Ctrl-C stays default
            log.debug("cannot install handler for %s outside the main thread", sig)
    try:
        yield
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)


def _observers(logger: logging.Logger, run_id: str, debug: bool) -> List:
    return [
        ConsoleObserver(verbose=debug),
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".minilab" / "logs" / f"{run_id}.jsonl"),
    ]


def _operator_keystore(cfg: TopologyConfig) -> LocalKeyStore:
    cred = cfg.credential("operator")
    return LocalKeyStore(cred.private_key if cred and cred.private_key else cfg.operator_key)


def _bring_up_lab(cfg: TopologyConfig, bus: EventBus, run_ctx: dict, cancel: threading.Event) -> Dict[str, Endpoint]:
    public_key = _operator_keystore(cfg).ensure_keypair()
    descriptor = LabDescriptor.from_topology(cfg, authorized_keys=[public_key])
    typer.echo(f"[lab] starting {len(descriptor.services)} containers in {descriptor.lab_dir}")
    return ComposeRuntime(bus=bus, run_ctx=run_ctx, cancel=cancel).bring_up(descriptor)


def _print_problems(records: List[ExecutionRecord]) -> None:
    problems = [r for r in records if not r.status.ok]
    if not problems:
        return
    typer.echo("")
    typer.secho("Steps that did not complete:", bold=True)
    for r in problems:
        typer.echo(f"  {r.node:<12} {r.step:<26} {r.status.value:<26} attempts={r.attempts}  {r.last_error or ''}")


def _print_summary(report: RunReport, previous: List[ExecutionRecord]) -> None:
    color = {"success": "green", "partial-failure": "red", "cancelled": "yellow"}[report.status.value]
    typer.echo("")
    typer.secho(f"Run {report.run_id}: {report.summary()}", fg=color, bold=True)
    _print_problems(report.records)
    if previous:
        drift = compare_runs(previous, report.records)
        if drift.no_op:
            typer.echo("No changes: every step was already satisfied.")
        elif drift.drifted:
            typer.echo("Re-applied since the last run (drift): " + ", ".join(f"{n}/{s}" for n, s in drift.drifted))


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def provision(
    topology: Path = typer.Option(..., "--topology", "-t", help="Topology YAML (nodes, steps, execution)"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, help="Max nodes worked on at once"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the (step, node) plan and exit"),
    records: Optional[Path] = typer.Option(None, "--records", help="Where to persist execution records"),
    bring_up: bool = typer.Option(True, "--bring-up/--no-bring-up", help="Start the container lab first"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Provision every node of the topology, idempotently."""
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho("minilab provisioning", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    cfg = _load(topology)
    try:
        registry = NodeRegistry.from_config(cfg)
        graph = build_graph(cfg, registry)
        compute_plan(graph)
    except ConfigurationError as e:
        raise _config_error(e) from e

    run_ctx = new_ctx(cfg.name, run_id=run_id)

    if dry_run:
        plan = Executor(registry, graph, SSHConnector(), run_ctx=run_ctx).plan()
        pairs = sum(len(nodes) for _, nodes in plan)
        typer.secho(f"Plan for '{cfg.name}' ({len(registry)} nodes, {len(graph)} steps):", bold=True)
        for i, (step, nodes) in enumerate(plan, 1):
            typer.echo(f"  {i:>2}. {step.name:<26} {step.description:<48} -> {', '.join(n.name for n in nodes) or '-'}")
        typer.echo(f"{pairs} (step, node) pairs; nothing was changed.")
        return

    records_path = Path(records or cfg.records_path()).expanduser()
    try:
        previous = load_records(records_path)
    except ConfigurationError as e:
        logger.warning("ignoring previous records: %s", e)
        previous = []

    bus = EventBus(_observers(logger, run_id, debug))
    prober = HealthProber(interval=cfg.execution.probe_interval, bus=bus, run_ctx=run_ctx)
    canceller = _Canceller(prober.cancel)

    with _cancel_on_signals(canceller):
        if cfg.runtime and bring_up:
            try:
                endpoints = _bring_up_lab(cfg, bus, run_ctx, prober.cancel)
            except RunCancelled:
                typer.secho("Cancelled while starting the lab.", fg="yellow")
                raise typer.Exit(code=EXIT_CANCELLED)
            except ConfigurationError as e:
                raise _config_error(e) from e
            except RuntimeToolError as e:
                typer.secho(f"Lab bring-up failed: {e}", fg="red", err=True)
                raise typer.Exit(code=EXIT_PARTIAL)
            registry = NodeRegistry.from_config(cfg, endpoints)

        connector = SSHConnector(
            connect_timeout=cfg.execution.connect_timeout,
            cmd_timeout=cfg.execution.command_timeout,
        )
        executor = Executor(
            registry,
            graph,
            connector,
            options=ExecutorOptions.from_config(cfg.execution, concurrency=concurrency, records_path=records_path),
            bus=bus,
            run_ctx=run_ctx,
            prober=prober,
            capability=SshLogin(connect=connector.connect),
        )
        canceller.executor = executor
        if prober.cancel.is_set():
            executor.cancel()
        try:
            report = executor.run()
        finally:
            connector.close_all()

    _print_summary(report, previous)
    typer.echo(f"Records  : {records_path}")
    raise typer.Exit(code=report.exit_code)


@app.command()
def status(
    records: Optional[Path] = typer.Option(None, "--records", help="Execution records file (JSONL)"),
    topology: Optional[Path] = typer.Option(None, "--topology", "-t", help="Use the topology's records path"),
):
    """Summarize the last persisted run."""
    if records is None:
        if topology is None:
            raise _config_error("pass --records or --topology")
        records = Path(_load(topology).records_path())
    path = records.expanduser()
    try:
        recs = load_records(path)
    except ConfigurationError as e:
        raise _config_error(e) from e
    if not recs:
        raise _config_error(f"no execution records at {path}")

    by_node: Dict[str, List[ExecutionRecord]] = {}
    for r in recs:
        by_node.setdefault(r.node, []).append(r)
    for node, rs in by_node.items():
        ok = all(r.status.ok for r in rs)
        typer.secho(f"{node}: {'provisioned' if ok else 'degraded'}", fg="green" if ok else "red")
        for r in rs:
            typer.echo(f"  {r.step:<26} {r.status.value}" + (f"  ({r.last_error})" if r.last_error and not r.status.ok else ""))

    counts = status_counts(recs)
    st = overall_status(recs)
    typer.echo("")
    typer.echo(
        f"{st.value}: " + " ".join(f"{s.value}={counts[s]}" for s in StepStatus if counts[s])
    )
    raise typer.Exit(code=st.exit_code)


@app.command()
def teardown(
    topology: Path = typer.Option(..., "--topology", "-t"),
    volumes: bool = typer.Option(False, "--volumes", help="Also remove compose volumes"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Stop and remove the lab containers."""
    init_logging(verbose=debug)
    cfg = _load(topology)
    try:
        descriptor = LabDescriptor.from_topology(cfg)
    except ConfigurationError as e:
        raise _config_error(e) from e
    try:
        ComposeRuntime().tear_down(descriptor, remove_volumes=volumes)
    except RuntimeToolError as e:
        typer.secho(f"Teardown failed: {e}", fg="red", err=True)
        raise typer.Exit(code=EXIT_PARTIAL)
    typer.secho(f"Lab '{descriptor.project}' stopped.", fg="green")


if __name__ == "__main__":
    app()
