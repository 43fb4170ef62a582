# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/deploy/records.py
from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import ConfigurationError

log = logging.getLogger("minilab")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"                                # already satisfied
    BLOCKED = "skipped-due-to-dependency"
    CANCELLED = "cancelled"                            # run cancelled before it finished

    @property
    def ok(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.SKIPPED)

    @property
    def terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial-failure"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        return {RunStatus.SUCCESS: 0, RunStatus.PARTIAL_FAILURE: 1, RunStatus.CANCELLED: 3}[self]


@dataclass
class ExecutionRecord:
    node: str
    step: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    delays: List[float] = field(default_factory=list)   # backoff waited after each failed attempt

    @property
    def key(self) -> Tuple[str, str]:
        return (self.node, self.step)

    def to_dict(self) -> Dict[str, object]:
        return {
            "node": self.node,
            "step": self.step,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ExecutionRecord":
        return cls(
            node=str(data["node"]),
            step=str(data["step"]),
            status=StepStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error") or None,
        )


class RecordTable:
    """
    One ExecutionRecord per (node, step). Workers for different nodes update
    it concurrently; all mutation goes through update() under the lock.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], ExecutionRecord] = {}
        self._lock = threading.Lock()

    def create(self, node: str, step: str) -> ExecutionRecord:
        with self._lock:
            if (node, step) in self._records:
                raise ValueError(f"record for ({node}, {step}) already exists")
            rec = ExecutionRecord(node=node, step=step)
            self._records[(node, step)] = rec
            return rec

    def get(self, node: str, step: str) -> Optional[ExecutionRecord]:
        with self._lock:
            return self._records.get((node, step))

    def update(self, rec: ExecutionRecord, **changes) -> ExecutionRecord:
        with self._lock:
            for k, v in changes.items():
                setattr(rec, k, v)
            return rec

    def for_node(self, node: str) -> List[ExecutionRecord]:
        with self._lock:
            return [r for (n, _), r in self._records.items() if n == node]

    def all(self) -> List[ExecutionRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def status_counts(records: Iterable[ExecutionRecord]) -> Counter:
    return Counter(r.status for r in records)


def overall_status(records: Iterable[ExecutionRecord], cancelled: bool = False) -> RunStatus:
    counts = status_counts(records)
    if cancelled or counts[StepStatus.CANCELLED]:
        return RunStatus.CANCELLED
    if counts[StepStatus.FAILED] or counts[StepStatus.BLOCKED]:
        return RunStatus.PARTIAL_FAILURE
    return RunStatus.SUCCESS


# ---------------------------------------------------------------------
# persistence
# ---------------------------------------------------------------------

def save_records(records: Iterable[ExecutionRecord], path: str | Path) -> Path:
    """Write records as JSON lines, replacing any previous file."""
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        for r in records:
            f.write(json.dumps(r.to_dict(), sort_keys=True) + "\n")
    tmp.replace(p)
    log.debug("saved execution records to %s", p)
    return p


def load_records(path: str | Path) -> List[ExecutionRecord]:
    p = Path(path).expanduser()
    if not p.exists():
        return []
    out: List[ExecutionRecord] = []
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                out.append(ExecutionRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                raise ConfigurationError(f"{p}:{lineno}: malformed execution record: {e}") from e
    return out


@dataclass
class DriftReport:
    """
    Comparison of a run against the previous one. A rerun over an
    already-provisioned topology is a no-op: every pair is skipped.
    Pairs that were ok last time but needed their action again have drifted.
    """
    no_op: bool
    drifted: List[Tuple[str, str]] = field(default_factory=list)
    regressed: List[Tuple[str, str]] = field(default_factory=list)
    new: List[Tuple[str, str]] = field(default_factory=list)


def compare_runs(previous: Iterable[ExecutionRecord], current: Iterable[ExecutionRecord]) -> DriftReport:
    before = {r.key: r for r in previous}
    current = list(current)
    report = DriftReport(no_op=all(r.status == StepStatus.SKIPPED for r in current))
    for r in current:
        old = before.get(r.key)
        if old is None:
            report.new.append(r.key)
        elif old.status.ok and r.status == StepStatus.SUCCEEDED:
            report.drifted.append(r.key)
        elif old.status.ok and not r.status.ok:
            report.regressed.append(r.key)
    return report
