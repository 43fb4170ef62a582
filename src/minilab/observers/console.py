# src/minilab/observers/console.py
from __future__ import annotations

import typer

from .events import BaseEvent, StepTransition

_COLORS = {
    "succeeded": "green",
    "skipped": "cyan",
    "failed": "red",
    "skipped-due-to-dependency": "yellow",
    "cancelled": "yellow",
    "retrying": "magenta",
}


class ConsoleObserver:
    """
    Prints one line per event. Step transitions get a compact, colored form;
    everything else is dumped as key=value pairs.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StepTransition):
            if event.status == "running" and not self.verbose:
                return
            line = f"[{event.ts}] {event.node:<10} {event.step:<24} {event.status}"
            if event.attempt > 1 or event.status == "failed":
                line += f" (attempt {event.attempt})"
            if event.delay_s:
                line += f" retry in {event.delay_s:g}s"
            if event.error:
                line += f": {event.error}"
            typer.secho(line, fg=_COLORS.get(event.status))
            return

        d = event.dict()
        k = event.__class__.__name__
        typer.echo(
            f"[{d['ts']}] {k} run={d['run_id']} data={{"
            + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "topology"))
            + "}"
        )
