# src/minilab/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, ProbeTimedOut, StepTransition


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _level(self, event: BaseEvent) -> int:
        if isinstance(event, StepTransition) and event.status == "failed":
            return logging.WARNING
        if isinstance(event, ProbeTimedOut):
            return logging.WARNING
        return logging.DEBUG

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "topology"))
        self.logger.log(self._level(event), "[EVENT] %s: %s", etype, msg)
