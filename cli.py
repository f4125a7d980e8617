from __future__ import annotations

from datetime import date, timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from ledger import service
from ledger.clock import ledger_today
from ledger.errors import LedgerError, PropagationInterrupted


def _today_or_configured(today: date | None) -> date:
    return today or ledger_today()


def _as_date(value) -> date | None:
    if value is None:
        return None
    return value.date()


@click.group("ledger")
def ledger_cli() -> None:
    """Maintenance commands for the daily stock ledger."""


@ledger_cli.command("autofill")
@click.option("--location-id", required=True, type=int)
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]))
@with_appcontext
def autofill(location_id: int, start, today) -> None:
    """Create missing ledger rows up to today for every active item."""

    if location_id < 1:
        raise click.BadParameter("--location-id must be positive")

    result = service.autofill(
        location_id,
        today=_today_or_configured(_as_date(today)),
        start_day=_as_date(start),
    )
    click.echo(
        f"Checked {result.days_checked} day(s) for {len(result.item_ids)} item(s); "
        f"created {result.created} row(s)."
    )


@ledger_cli.command("propagate")
@click.option("--location-id", required=True, type=int)
@click.option("--item-id", required=True, type=int)
@click.option("--day", required=True, type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--reseed", is_flag=True, help="Recompute the start day from the previous closing.")
@with_appcontext
def propagate(location_id: int, item_id: int, day, today, reseed: bool) -> None:
    """Cascade an existing day forward through today."""

    try:
        run = service.repropagate(
            location_id,
            item_id,
            _as_date(day),
            today=_today_or_configured(_as_date(today)),
            reseed=reseed,
        )
    except PropagationInterrupted as exc:
        run_id = exc.run.id if exc.run is not None else None
        raise click.ClickException(
            f"{exc.result.progress_message}; interrupted, resume run {run_id} "
            f"from {exc.result.resume_from}"
        ) from exc
    except LedgerError as exc:
        raise click.ClickException(exc.message) from exc

    click.echo(f"Run {run.id}: {run.progress_message} ({run.status}).")


@ledger_cli.command("resume")
@click.option("--run-id", required=True, type=int)
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]))
@with_appcontext
def resume(run_id: int, today) -> None:
    """Continue an interrupted or stopped propagation run."""

    try:
        run = service.resume_run(run_id, today=_today_or_configured(_as_date(today)))
    except PropagationInterrupted as exc:
        raise click.ClickException(
            f"{exc.result.progress_message}; interrupted again at {exc.result.resume_from}"
        ) from exc
    except LedgerError as exc:
        raise click.ClickException(exc.message) from exc

    click.echo(f"Run {run.id}: {run.progress_message} ({run.status}).")


@ledger_cli.command("resync")
@click.option("--location-id", required=True, type=int)
@click.option("--item-id", required=True, type=int)
@click.option("--start", required=True, type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--today", type=click.DateTime(formats=["%Y-%m-%d"]))
@with_appcontext
def resync(location_id: int, item_id: int, start, end, today) -> None:
    """Recount receipt and sale totals from their events, then cascade."""

    try:
        run = service.resync_item(
            location_id,
            item_id,
            _as_date(start),
            _as_date(end),
            today=_today_or_configured(_as_date(today)),
        )
    except PropagationInterrupted as exc:
        run_id = exc.run.id if exc.run is not None else None
        raise click.ClickException(
            f"{exc.result.progress_message}; interrupted, resume run {run_id} "
            f"from {exc.result.resume_from}"
        ) from exc
    except LedgerError as exc:
        raise click.ClickException(exc.message) from exc

    if run is None:
        click.echo("Nothing to resync in that range.")
        return
    click.echo(f"Run {run.id}: {run.progress_message} ({run.status}).")


@ledger_cli.command("verify")
@click.option("--location-id", required=True, type=int)
@click.option("--item-id", type=int)
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]))
@with_appcontext
def verify(location_id: int, item_id: int | None, start, end) -> None:
    """Check closing balances, day-to-day continuity and event totals."""

    end_day = _as_date(end) or ledger_today()
    start_day = _as_date(start) or end_day - timedelta(days=30)
    if start_day > end_day:
        raise click.BadParameter("--start must not be after --end")

    violations = service.verify(location_id, item_id, start_day, end_day)
    for violation in violations:
        kind = f"{violation.kind} {violation.field}" if violation.field else violation.kind
        click.echo(
            f"{violation.day.isoformat()} item {violation.item_id}: {kind} "
            f"(expected {violation.expected}, found {violation.actual})"
        )

    if violations:
        current_app.logger.warning(
            "Ledger continuity violations found",
            extra={"location_id": location_id, "violations": len(violations)},
        )
        raise click.ClickException(f"{len(violations)} violation(s) found.")

    click.echo(f"Ledger consistent from {start_day.isoformat()} to {end_day.isoformat()}.")


@ledger_cli.command("reset")
@click.option("--location-id", required=True, type=int)
@click.option("--yes", is_flag=True, help="Confirm deletion without prompting.")
@with_appcontext
def reset(location_id: int, yes: bool) -> None:
    """Delete all ledger rows, receipts and sales of a location."""

    if not yes:
        click.confirm(f"Delete all ledger data of location {location_id}?", abort=True)

    counts = service.reset_location(location_id)
    summary = ", ".join(f"{name}={count}" for name, count in counts.items())
    click.echo(f"Reset location {location_id}: {summary}.")
