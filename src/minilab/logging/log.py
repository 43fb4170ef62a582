# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/logging/log.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

# node workers are named minilab_N by the executor pool, so the thread
# column tells which node's commands a file line belongs to
FILE_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)-12s | %(message)s"
CONSOLE_FORMAT = "%(levelname)-7s %(message)s"

# chatty at INFO: one line per SSH handshake and auth attempt
_NOISY = ("paramiko", "ansible_runner")


def default_log_dir() -> Path:
    return Path.home() / ".minilab" / "logs"


def prune_run_logs(
    base_dir: Path, name: str = "minilab", keep: int = 20, current: Optional[Path] = None
) -> List[Path]:
    """
    Delete all but the newest `keep` run logs of `name` in base_dir, along
    with the event file (<run_id>.jsonl) each one pairs with. `current`
    is never pruned and counts toward `keep`.
    """
    if keep < 1:
        return []
    stamp_len = len("YYYYmmdd-HHMMSS-")
    logs = sorted(p for p in base_dir.glob(f"{name}-*.log") if p != current)
    if current is not None:
        keep -= 1
    removed = []
    for old in (logs[:-keep] if keep else logs):
        run_id = old.stem[len(name) + 1 + stamp_len:]
        for p in (old, base_dir / f"{run_id}.jsonl"):
            if p.exists():
                p.unlink()
                removed.append(p)
    return removed


def set_console_level(logger: logging.Logger, verbose: bool) -> None:
    """--debug shows every remote command and its output on the terminal too."""
    for h in logger.handlers:
        if not isinstance(h, logging.FileHandler):
            h.setLevel(logging.DEBUG if verbose else logging.INFO)
    for noisy in _NOISY:
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "minilab",
    verbose: bool = False,
    run_id: Optional[str] = None,
    keep: int = 20,
) -> tuple[logging.Logger, str, Path]:
    """
    One log file per provisioning run with the full DEBUG trace of every
    remote command, plus a terse console handler. Older run logs beyond
    `keep` are pruned. Returns the run id so events and records can carry it.
    """
    run_id = run_id or str(uuid.uuid4())

    if base_dir is None:
        base_dir = default_log_dir()
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers:
        h.close()
    logger.handlers.clear()
    logger.propagate = False

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(ch)
    set_console_level(logger, verbose)

    removed = prune_run_logs(base_dir, name, keep, current=log_path)

    logger.debug("=== minilab run %s ===", run_id)
    logger.debug("log_file=%s", log_path)
    if removed:
        logger.debug("pruned %d old run files from %s", len(removed), base_dir)

    return logger, run_id, log_path
