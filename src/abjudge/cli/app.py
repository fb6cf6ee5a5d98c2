from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from abjudge.cli.run_pass import DATETIME_FORMATS, run_pass_cmd
from abjudge.config.settings import settings
from abjudge.db.engine import build_engine
from abjudge.db.init_db import init_db
from abjudge.db.session import get_store
from abjudge.errors import AbJudgeError
from abjudge.models.domain import AbTestKind, ContentRef
from abjudge.services.analytics import list_completed_results, list_running_tests, performance_analytics
from abjudge.services.evaluation_engine import EvaluationEngine
from abjudge.services.metrics_gateway import get_metrics_gateway
from abjudge.services.notifications import get_dispatcher
from abjudge.services.publishing import register_variant
from abjudge.services.scheduler import parse_check_delay, select_due_tests
from abjudge.timeutils import to_naive_utc, utcnow

app = typer.Typer(help="abjudge CLI (schedule, evaluate and report A/B tests).")
console = Console()


@app.callback()
def main_callback(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level."),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init-db")
def init_db_cmd(
    reset: bool = typer.Option(False, "--reset", help="Drop existing tables first."),
) -> None:
    engine = build_engine()
    init_db(engine, reset=reset)
    typer.echo("✅ Database initialized and reachable.")


@app.command("create-test")
def create_test_cmd(
    project_id: str = typer.Option(..., "--project-id", help="Owning project/campaign."),
    kind: AbTestKind = typer.Option(AbTestKind.BANNER, "--kind", help="banner or carousel"),
    scheduled_at: Optional[datetime] = typer.Option(
        None, "--scheduled-at", formats=DATETIME_FORMATS, help="Evaluation time (UTC). Defaults to now."
    ),
    notify_email: Optional[str] = typer.Option(None, "--notify-email"),
    special_occasion: Optional[str] = typer.Option(None, "--special-occasion"),
) -> None:
    """Create a running A/B test."""
    store = get_store()
    test = store.create_test(
        project_id=project_id,
        kind=kind,
        scheduled_at=to_naive_utc(scheduled_at) if scheduled_at else None,
        notify_email=notify_email,
        special_occasion=special_occasion,
    )
    typer.echo(f"✅ Created test_id={test.test_id} scheduled_at={test.scheduled_at.isoformat()}")


@app.command("add-variant")
def add_variant_cmd(
    test_id: str = typer.Option(..., "--test-id"),
    post_id: List[str] = typer.Option([], "--post-id", help="Platform post id (repeat for grouped posts)."),
    image_url: List[str] = typer.Option([], "--image-url", help="Generated asset URL (repeatable)."),
    caption: Optional[str] = typer.Option(None, "--caption"),
) -> None:
    """Record a published variant for a test."""
    store = get_store()
    try:
        variant = register_variant(
            store,
            test_id,
            post_id or None,
            [ContentRef(url=u, caption=caption) for u in image_url],
            dispatcher=get_dispatcher(),
        )
    except AbJudgeError as e:
        console.print(f"[red]✗[/red] Error: {e}")
        raise typer.Exit(1)
    typer.echo(f"✅ Added variant_id={variant.variant_id}")


@app.command("due")
def due_cmd(
    now: Optional[datetime] = typer.Option(None, "--now", formats=DATETIME_FORMATS),
) -> None:
    """List tests eligible for evaluation at the reference time."""
    reference = to_naive_utc(now) if now else utcnow()
    test_ids = select_due_tests(
        get_store(),
        reference,
        check_delay=parse_check_delay(settings.check_delay),
        limit=settings.pass_max_tests,
    )
    for test_id in test_ids:
        typer.echo(test_id)
    console.print(f"{len(test_ids)} due test(s) at {reference.isoformat()}")


@app.command("evaluate")
def evaluate_cmd(
    test_id: str = typer.Option(..., "--test-id"),
) -> None:
    """Evaluate one test now, regardless of its schedule."""
    store = get_store()
    try:
        with EvaluationEngine(store, get_metrics_gateway(), dispatcher=get_dispatcher()) as engine:
            result = engine.evaluate(test_id)
    except AbJudgeError as e:
        console.print(f"[red]✗[/red] Error: {e}")
        raise typer.Exit(1)

    table = Table(title=f"Test {test_id}: {result.outcome.value}")
    table.add_column("variant_id", style="cyan")
    table.add_column("score", style="green", justify="right")
    table.add_column("scored now", style="magenta")
    table.add_column("winner", style="yellow")
    winners = set(result.winner_variant_ids)
    for r in result.results:
        table.add_row(
            r.variant_id,
            f"{r.metrics.engagement_score:.2f}" if r.metrics else "-",
            "yes" if r.scored_this_pass else "no",
            "★" if r.variant_id in winners else "",
        )
    console.print(table)


@app.command("running")
def running_cmd() -> None:
    """List running tests."""
    table = Table(title="Running tests")
    table.add_column("test_id", style="cyan")
    table.add_column("project", style="green")
    table.add_column("kind")
    table.add_column("scheduled_at")
    table.add_column("variants", justify="right")
    for s in list_running_tests(get_store()):
        table.add_row(
            s.test.test_id,
            s.test.project_id,
            s.test.kind.value,
            s.test.scheduled_at.isoformat(),
            str(s.variant_count),
        )
    console.print(table)


@app.command("results")
def results_cmd() -> None:
    """Show completed tests and their winners."""
    table = Table(title="Completed tests")
    table.add_column("test_id", style="cyan")
    table.add_column("project", style="green")
    table.add_column("completed_at")
    table.add_column("winners", style="yellow")
    table.add_column("best score", justify="right")
    for r in list_completed_results(get_store()):
        table.add_row(
            r.test.test_id,
            r.test.project_id,
            r.test.completed_at.isoformat() if r.test.completed_at else "",
            ", ".join(r.test.winner_variant_ids) or "-",
            f"{r.best_score:.2f}",
        )
    console.print(table)


@app.command("analytics")
def analytics_cmd() -> None:
    """Print aggregate performance analytics as JSON."""
    summary = performance_analytics(get_store())
    typer.echo(json.dumps(summary.to_dict(), indent=2))


app.command("run-pass")(run_pass_cmd)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
