"""CLI command for one scheduler pass (the cron entry point)."""

from __future__ import annotations

import json
import signal
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from abjudge.db.session import get_store
from abjudge.services.evaluation_engine import EvaluationEngine
from abjudge.services.metrics_gateway import get_metrics_gateway
from abjudge.services.notifications import get_dispatcher
from abjudge.services.scheduler import Scheduler
from abjudge.timeutils import to_naive_utc, utcnow

console = Console()

DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


def run_pass_cmd(
    now: Optional[datetime] = typer.Option(
        None, "--now", formats=DATETIME_FORMATS, help="Reference time (UTC). Defaults to the current time."
    ),
    report: Optional[Path] = typer.Option(None, "--report", help="Write the pass results as JSON to this path."),
) -> None:
    """
    Select every due test and evaluate it once.
    """
    reference = to_naive_utc(now) if now else utcnow()

    store = get_store()
    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
    try:
        with EvaluationEngine(store, get_metrics_gateway(), dispatcher=get_dispatcher()) as engine:
            results = Scheduler(store, engine).run_pass(reference, cancel=cancel)
    finally:
        signal.signal(signal.SIGTERM, previous)

    table = Table(title=f"Pass at {reference.isoformat()}")
    table.add_column("test_id", style="cyan")
    table.add_column("outcome", style="magenta")
    table.add_column("winners", style="green")
    table.add_column("unscored", style="yellow", justify="right")
    for r in results:
        table.add_row(
            r.test_id,
            r.outcome.value,
            ", ".join(r.winner_variant_ids) or "-",
            str(len(r.unscored)),
        )
    console.print(table)

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        payload = {"now": reference.isoformat(), "results": [r.to_dict() for r in results]}
        report.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        console.print(f"[green]✓[/green] Wrote report to {report}")


if __name__ == "__main__":
    typer.run(run_pass_cmd)
