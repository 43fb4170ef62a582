# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/deploy/graph.py
from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..errors import ConfigurationError, CyclicDependencyError, UnknownDependencyError
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx, stamp

if TYPE_CHECKING:
    from ..inventory.models import Node
    from ..inventory.registry import NodeRegistry
    from .context import StepContext


StepAction = Callable[["StepContext"], None]
IdempotencyCheck = Callable[["StepContext"], bool]


@dataclass(frozen=True)
class TargetSelector:
    """Roles and/or node names a step applies to. Empty selects every node."""
    roles: Tuple[str, ...] = ()
    names: Tuple[str, ...] = ()

    def select(self, registry: "NodeRegistry") -> List["Node"]:
        return registry.select(self.roles, self.names)

    def __str__(self) -> str:
        parts = [f"role={r}" for r in self.roles] + [f"node={n}" for n in self.names]
        return ",".join(parts) or "all"


@dataclass(frozen=True)
class Step:
    """
    One idempotent unit of provisioning work.

    check must be a pure predicate over remote state: it answers "does the
    desired end state already hold on this node?" and never mutates.
    Only action changes anything.
    """
    name: str
    action: StepAction
    check: IdempotencyCheck
    targets: TargetSelector = field(default_factory=TargetSelector)
    depends_on: Tuple[str, ...] = ()
    requires_connectivity: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if not self.name:
            raise ConfigurationError("step name must not be empty")


class StepOrder:
    """
    Topological order of a StepGraph. Lazy and restartable: every iter()
    walks the graph again from the start.
    """

    def __init__(self, graph: "StepGraph"):
        self._graph = graph

    def __iter__(self) -> Iterator[Step]:
        return self._graph._iter_topological()

    def names(self) -> List[str]:
        return [s.name for s in self]


class StepGraph:
    def __init__(self, steps: Iterable[Step] = ()):
        self._steps: Dict[str, Step] = {}
        for s in steps:
            self.add_step(s)

    def add_step(self, step: Step) -> None:
        if step.name in self._steps:
            raise ConfigurationError(f"Duplicate step '{step.name}'")
        if step.name in step.depends_on:
            raise CyclicDependencyError(f"Step '{step.name}' depends on itself")
        # forward references are allowed, so an existing step may already
        # depend on this one; reaching it from our own deps closes a cycle
        path = self._path_to(step.name, step.depends_on)
        if path:
            cycle = " -> ".join([step.name, *path])
            raise CyclicDependencyError(f"Cyclic dependency detected among steps: {cycle}")
        self._steps[step.name] = step

    def _path_to(self, target: str, starts: Iterable[str]) -> Optional[List[str]]:
        seen: Set[str] = set()
        stack: List[Tuple[str, List[str]]] = [(s, [s]) for s in starts]
        while stack:
            name, path = stack.pop()
            if name == target:
                return path
            if name in seen or name not in self._steps:
                continue
            seen.add(name)
            for d in self._steps[name].depends_on:
                stack.append((d, path + [d]))
        return None

    def get(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownDependencyError(f"Unknown step '{name}'") from None

    def names(self) -> List[str]:
        return list(self._steps)

    def dependencies(self, name: str) -> Tuple[str, ...]:
        return self.get(name).depends_on

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def validate(self) -> None:
        for s in self._steps.values():
            for d in s.depends_on:
                if d not in self._steps:
                    raise UnknownDependencyError(
                        f"Step '{s.name}' depends on unknown step '{d}'"
                    )

    def topological_order(self) -> StepOrder:
        """
        Stable topological order; independent steps keep declaration order.
        Unknown dependencies are reported here, before anything is iterated.
        """
        self.validate()
        return StepOrder(self)

    def _iter_topological(self) -> Iterator[Step]:
        index = {name: i for i, name in enumerate(self._steps)}
        indeg: Dict[str, int] = {n: len(set(s.depends_on)) for n, s in self._steps.items()}
        dependents: Dict[str, List[str]] = {n: [] for n in self._steps}
        for s in self._steps.values():
            for d in set(s.depends_on):
                dependents[d].append(s.name)

        ready = [(index[n], n) for n, deg in indeg.items() if deg == 0]
        heapq.heapify(ready)
        emitted = 0
        while ready:
            _, n = heapq.heappop(ready)
            emitted += 1
            yield self._steps[n]
            for m in dependents[n]:
                indeg[m] -= 1
                if indeg[m] == 0:
                    heapq.heappush(ready, (index[m], m))

        if emitted != len(self._steps):
            # add_step rejects cycles, so this only trips if _steps was mutated directly
            raise CyclicDependencyError("Cyclic dependency detected among steps")


def compute_plan(
    graph: StepGraph,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> List[Step]:
    """
    Materialize the topological order. Emits PlanComputed / PlanFailed if an
    EventBus is provided.
    """
    ctx = run_ctx or new_ctx("adhoc")
    try:
        order = list(graph.topological_order())
        if bus:
            bus.emit(PlanComputed(order=[s.name for s in order], **stamp(ctx)))
        return order
    except ConfigurationError as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **stamp(ctx)))
        raise
