# src/minilab/observers/jsonfile.py
from __future__ import annotations

import json
from pathlib import Path

from .events import BaseEvent


class JsonFileObserver:
    """
    Appends every event as one JSON object per line, tagged with its type.
    Used for ~/.minilab/logs/<run_id>.jsonl so a run can be replayed later.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, event: BaseEvent) -> None:
        payload = {"type": event.__class__.__name__, **event.dict()}
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, sort_keys=True, default=str) + "\n")
