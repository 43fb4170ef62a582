# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/observers/events.py

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single provisioning run
    topology: str     # topology name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(topology: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "topology": topology,
    }


def stamp(run_ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of run_ctx with a fresh timestamp."""
    return {**run_ctx, "ts": now_ts()}


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    nodes: List[str]
    steps: List[str]
    concurrency: int

@dataclass(frozen=True)
class RunCancelRequested(BaseEvent):
    pass

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    status: str          # "success" | "partial-failure" | "cancelled"
    succeeded: int
    skipped: int
    failed: int
    blocked: int
    cancelled: int


# ---------------------------------------------------------------------
# Per (node, step) lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepTransition(BaseEvent):
    node: str
    step: str
    status: str
    attempt: int
    error: Optional[str] = None
    delay_s: Optional[float] = None


# ---------------------------------------------------------------------
# Health probes
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ProbeStarted(BaseEvent):
    node: str
    capability: str
    timeout_s: float

@dataclass(frozen=True)
class ProbeSucceeded(BaseEvent):
    node: str
    capability: str
    polls: int

@dataclass(frozen=True)
class ProbeTimedOut(BaseEvent):
    node: str
    capability: str
    timeout_s: float


# ---------------------------------------------------------------------
# Lab runtime (containers)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class LabStarted(BaseEvent):
    services: List[str]

@dataclass(frozen=True)
class LabReady(BaseEvent):
    endpoints: Dict[str, str]

@dataclass(frozen=True)
class LabStopped(BaseEvent):
    pass
