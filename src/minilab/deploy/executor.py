# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/deploy/executor.py
from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple

from ..errors import ActionError, ConnectivityError, RunCancelled
from ..health.prober import Capability, HealthProber, TcpListener
from ..inventory.models import Node, NodeState
from ..inventory.registry import NodeRegistry
from ..remote.interface import Connector
from ..utils.retry import RetryPolicy
from ..observers.dispatcher import EventBus
from ..observers.events import (
    RunCancelRequested,
    RunStarted,
    RunSummary,
    StepTransition,
    new_ctx,
    stamp,
)
from .context import StepContext
from .graph import Step, StepGraph, compute_plan
from .records import (
    ExecutionRecord,
    RecordTable,
    RunStatus,
    StepStatus,
    overall_status,
    save_records,
    status_counts,
)

log = logging.getLogger("minilab")


@dataclass
class ExecutorOptions:
    concurrency: Optional[int] = None          # None -> one worker per node
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    probe_timeout: float = 60.0
    probe_interval: float = 1.0
    records_path: Optional[Path] = None        # persist the record table at run end

    @classmethod
    def from_config(cls, execution, concurrency: Optional[int] = None, records_path=None) -> "ExecutorOptions":
        return cls(
            concurrency=concurrency or execution.concurrency,
            retry=RetryPolicy(
                max_attempts=execution.max_attempts,
                base_delay=execution.base_delay,
                factor=execution.backoff_factor,
                max_delay=execution.max_delay,
            ),
            probe_timeout=execution.probe_timeout,
            probe_interval=execution.probe_interval,
            records_path=Path(records_path).expanduser() if records_path else None,
        )


@dataclass
class RunReport:
    status: RunStatus
    records: List[ExecutionRecord]
    run_id: str

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def problems(self) -> List[ExecutionRecord]:
        return [r for r in self.records if not r.status.ok]

    def summary(self) -> str:
        c = status_counts(self.records)
        return (
            f"{self.status.value}: succeeded={c[StepStatus.SUCCEEDED]} skipped={c[StepStatus.SKIPPED]} "
            f"failed={c[StepStatus.FAILED]} blocked={c[StepStatus.BLOCKED]} cancelled={c[StepStatus.CANCELLED]}"
        )


class Executor:
    """
    Applies a StepGraph to a NodeRegistry.

    Every node works through the steps that target it in topological
    order, independently of the other nodes, on a pool of at most
    `concurrency` workers. A step that depends on a step run only on
    other nodes waits until those nodes are done with it. For each
    (step, node) the idempotency check runs first, the action only when
    the check fails, and the check again afterwards. Retryable failures
    back off on the cancel event so cancel() interrupts waits promptly.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        graph: StepGraph,
        connector: Connector,
        *,
        options: Optional[ExecutorOptions] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        prober: Optional[HealthProber] = None,
        capability: Optional[Capability] = None,
    ):
        self.registry = registry
        self.graph = graph
        self.connector = connector
        self.options = options or ExecutorOptions()
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx("adhoc")
        self.prober = prober or HealthProber(
            interval=self.options.probe_interval,
            bus=self.bus,
            run_ctx=self.run_ctx,
        )
        # the prober's event is the run's cancel flag
        self._cancel = self.prober.cancel
        self.capability = capability or TcpListener()
        self._targets: Dict[str, List[str]] = {}

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop starting new work. Safe to call from a signal handler or another thread."""
        if not self._cancel.is_set():
            self._cancel.set()
            self.bus.emit(RunCancelRequested(**stamp(self.run_ctx)))

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------

    def plan(self) -> List[Tuple[Step, List[Node]]]:
        """
        Ordered (step, nodes) pairs that run() would work through. Touches
        no node; configuration errors surface here.
        """
        order = compute_plan(self.graph, bus=self.bus, run_ctx=self.run_ctx)
        return [(s, s.targets.select(self.registry)) for s in order]

    def _workers(self) -> int:
        n = max(len(self.registry), 1)
        if self.options.concurrency:
            return max(1, min(self.options.concurrency, n))
        return n

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        plan = self.plan()
        table = RecordTable()
        workers = self._workers()
        self._targets = {s.name: [n.name for n in nodes] for s, nodes in plan}
        # each node walks the plan on its own; a node that is backing off
        # holds one worker, never the other nodes
        queues: Dict[str, Deque[Step]] = {
            node.name: deque(s for s, _ in plan if node.name in self._targets[s.name])
            for node in self.registry
        }

        self.bus.emit(RunStarted(
            nodes=self.registry.names(),
            steps=[s.name for s, _ in plan],
            concurrency=workers,
            **stamp(self.run_ctx),
        ))
        for node in self.registry:
            self.registry.set_state(node.name, NodeState.PROVISIONING)

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="minilab") as pool:
                running: Dict[Future, str] = {}
                while True:
                    if not self.cancelled:
                        for node in self.registry:
                            queue = queues[node.name]
                            if node.name in running.values() or not queue:
                                continue
                            if not self._ready(queue[0], node, table):
                                continue
                            step = queue.popleft()
                            log.debug("[%s] starting %s", node.name, step.name)
                            running[pool.submit(self._apply, step, node, table)] = node.name
                    if not running:
                        break
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                    for f in done:
                        running.pop(f)
                        f.result()
            for node in self.registry:
                for step in queues[node.name]:
                    rec = table.create(node.name, step.name)
                    self._transition(table, rec, StepStatus.CANCELLED, error="run cancelled before step started")
        finally:
            self._finalize_nodes(table)

        position = {s.name: i for i, (s, _) in enumerate(plan)}
        nodes = {name: i for i, name in enumerate(self.registry.names())}
        records = sorted(table.all(), key=lambda r: (position[r.step], nodes[r.node]))
        status = overall_status(records, cancelled=self.cancelled)
        c = status_counts(records)
        self.bus.emit(RunSummary(
            status=status.value,
            succeeded=c[StepStatus.SUCCEEDED],
            skipped=c[StepStatus.SKIPPED],
            failed=c[StepStatus.FAILED],
            blocked=c[StepStatus.BLOCKED],
            cancelled=c[StepStatus.CANCELLED],
            **stamp(self.run_ctx),
        ))
        if self.options.records_path:
            save_records(records, self.options.records_path)
        return RunReport(status=status, records=records, run_id=self.run_ctx["run_id"])

    def _finalize_nodes(self, table: RecordTable) -> None:
        for node in self.registry:
            recs = table.for_node(node.name)
            ok = all(r.status.ok for r in recs)
            self.registry.set_state(node.name, NodeState.PROVISIONED if ok else NodeState.DEGRADED)

    def _ready(self, step: Step, node: Node, table: RecordTable) -> bool:
        """Dependencies this node never runs must be finished wherever they do run."""
        for dep in step.depends_on:
            targets = self._targets.get(dep, [])
            if node.name in targets:
                continue
            for other in targets:
                rec = table.get(other, dep)
                if rec is None or not rec.status.terminal:
                    return False
        return True

    def _blocking_dependency(self, step: Step, node: Node, table: RecordTable) -> Optional[Tuple[str, str]]:
        pending = list(step.depends_on)
        seen = set()
        while pending:
            dep = pending.pop(0)
            if dep in seen:
                continue
            seen.add(dep)
            rec = table.get(node.name, dep)
            if rec is not None:
                if not rec.status.ok:
                    return dep, node.name
                continue
            # dep ran elsewhere: it must have completed there, and whatever it
            # needed must have completed here
            for other in self._targets.get(dep, []):
                done = table.get(other, dep)
                if done is not None and not done.status.ok:
                    return dep, other
            pending.extend(self.graph.dependencies(dep))
        return None

    def _transition(
        self,
        table: RecordTable,
        rec: ExecutionRecord,
        status: StepStatus,
        *,
        error: Optional[str] = None,
        delay: Optional[float] = None,
        event_status: Optional[str] = None,
    ) -> None:
        changes: Dict[str, object] = {"status": status}
        if error is not None:
            changes["last_error"] = error
        table.update(rec, **changes)
        self.bus.emit(StepTransition(
            node=rec.node,
            step=rec.step,
            status=event_status or status.value,
            attempt=rec.attempts,
            error=error,
            delay_s=delay,
            **stamp(self.run_ctx),
        ))

    def _apply(self, step: Step, node: Node, table: RecordTable) -> None:
        rec = table.create(node.name, step.name)

        blocked = self._blocking_dependency(step, node, table)
        if blocked is not None:
            dep, where = blocked
            self._transition(table, rec, StepStatus.BLOCKED, error=f"dependency '{dep}' did not complete on {where}")
            return

        ctx = StepContext(node=node, registry=self.registry, connector=self.connector)
        policy = self.options.retry
        attempt = 0
        while True:
            if self.cancelled:
                self._transition(table, rec, StepStatus.CANCELLED, error=rec.last_error or "run cancelled")
                return
            attempt += 1
            table.update(rec, attempts=attempt)
            self._transition(table, rec, StepStatus.RUNNING)
            try:
                if step.requires_connectivity:
                    self.prober.wait_ready(node, self.capability, self.options.probe_timeout)
                if step.check(ctx):
                    # satisfied on the first look means nothing to do; later it
                    # means an earlier attempt's action took effect after all
                    done = StepStatus.SKIPPED if attempt == 1 else StepStatus.SUCCEEDED
                    self._transition(table, rec, done)
                    return
                step.action(ctx)
                if not step.check(ctx):
                    raise ActionError(f"[{node.name}] {step.name}: check still fails after action")
                self._transition(table, rec, StepStatus.SUCCEEDED)
                return
            except RunCancelled as e:
                self._transition(table, rec, StepStatus.CANCELLED, error=str(e))
                return
            except (ActionError, ConnectivityError) as e:
                if isinstance(e, ConnectivityError):
                    self.connector.invalidate(node.name)
                if attempt >= policy.max_attempts:
                    log.warning("[%s] %s failed after %d attempts: %s", node.name, step.name, attempt, e)
                    self._transition(table, rec, StepStatus.FAILED, error=str(e))
                    return
                delay = policy.delay_for(attempt)
                table.update(rec, delays=[*rec.delays, delay], last_error=str(e))
                self._transition(table, rec, StepStatus.RUNNING, error=str(e), delay=delay, event_status="retrying")
                if self._cancel.wait(delay):
                    self._transition(table, rec, StepStatus.CANCELLED, error=str(e))
                    return
            except Exception as e:
                log.exception("[%s] %s raised unexpectedly", node.name, step.name)
                self._transition(table, rec, StepStatus.FAILED, error=f"{type(e).__name__}: {e}")
                return
