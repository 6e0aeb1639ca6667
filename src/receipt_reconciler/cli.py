"""CLI entry point for receipt-reconciler."""

from __future__ import annotations

import logging
import mimetypes
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import click

from receipt_reconciler.db import ensure_schema, get_connection
from receipt_reconciler.errors import (
    BatchInterrupted,
    QuotaExceeded,
    ReconcilerError,
)
from receipt_reconciler.ingest import ImageUpload
from receipt_reconciler.models import PlanTier
from receipt_reconciler.postgres import PostgresRepository
from receipt_reconciler.reconciliation import ResolutionAction
from receipt_reconciler.review import ReviewSession
from receipt_reconciler.scanner import ScanMode
from receipt_reconciler.service import ReconcilerService

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import TextIO

    from receipt_reconciler.ingest import IngestResult
    from receipt_reconciler.models import Receipt

_REVIEW_KEYS = {
    "m": ResolutionAction.MERGE,
    "k": ResolutionAction.KEEP,
    "d": ResolutionAction.DELETE,
    "n": ResolutionAction.KEEP_NEW,
}

user_option = click.option("--user", "user_id", required=True, help="Owner user id.")


@contextmanager
def _service() -> Iterator[ReconcilerService]:
    """Open a database-backed service, translating domain errors for click."""
    try:
        with get_connection() as conn:
            yield ReconcilerService.from_env(PostgresRepository(conn))
    except BatchInterrupted as exc:
        msg = f"{exc} (safe to re-run): {exc.__cause__}"
        raise click.ClickException(msg) from exc
    except QuotaExceeded as exc:
        msg = f"{exc}. Upgrade your plan or try again later."
        raise click.ClickException(msg) from exc
    except (ReconcilerError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _describe(receipt: Receipt | None) -> str:
    if receipt is None:
        return "(receipt no longer exists)"
    total = f"{receipt.net_total:.2f}" if receipt.total is not None else "?"
    return (
        f"{receipt.merchant_name or '?'}  {receipt.transaction_date or '?'}  "
        f"{total} {receipt.currency}  [{receipt.source}, {receipt.status}]"
    )


def _echo_ingest(result: IngestResult) -> None:
    click.echo(f"Saved: {len(result.settled)}")
    click.echo(f"Flagged for review: {len(result.flagged)}")
    if result.failed:
        click.echo(f"Failed: {', '.join(result.failed)}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Receipt Reconciler: keep your receipt ledger free of duplicates."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    with get_connection() as conn:
        ensure_schema(conn)
    click.echo("Schema ready.")


@cli.command("find-duplicates")
@user_option
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ScanMode]),
    default=ScanMode.FLAG.value,
    show_default=True,
    help="Flag duplicates for review or discard them outright.",
)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
def find_duplicates(user_id: str, mode: str, yes: bool) -> None:
    """Scan the whole receipt history for duplicates."""
    if not yes:
        click.confirm(
            "This scans your entire receipt history and cannot be cancelled. "
            "Continue?",
            abort=True,
        )
    with _service() as service:
        result = service.find_and_flag_duplicates(user_id, mode)
    click.echo(f"Duplicates found: {result.found}")


@cli.command("backfill-keys")
@user_option
def backfill_keys(user_id: str) -> None:
    """Recompute canonical keys for every receipt."""
    with _service() as service:
        result = service.backfill_hashes(user_id)
    click.echo(f"Scanned: {result.scanned}, updated: {result.updated}")


@cli.command("resolve-all")
@user_option
@click.option(
    "--action",
    type=click.Choice([ResolutionAction.KEEP.value, ResolutionAction.DELETE.value]),
    required=True,
)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
def resolve_all(user_id: str, action: str, yes: bool) -> None:
    """Keep or delete every receipt awaiting duplicate review."""
    if not yes:
        click.confirm(f"Apply '{action}' to every pending review?", abort=True)
    with _service() as service:
        outcome = service.resolve_all_duplicates(user_id, action)
    click.echo(f"Resolved: {outcome.resolved}, skipped: {outcome.skipped}")
    if outcome.failed:
        click.echo(f"Failed: {', '.join(outcome.failed)}")


@cli.command()
@user_option
def review(user_id: str) -> None:
    """Review possible duplicates one pair at a time."""
    with _service() as service:
        session = ReviewSession(service.repository, user_id, clock=service.clock)
        while not session.finished:
            pair = session.current
            if pair is None:
                break
            click.echo("")
            click.echo(f"Comparing receipt {session.position + 1} of {session.total}")
            click.echo(f"  Original: {_describe(pair.original)}")
            click.echo(f"  New:      {_describe(pair.duplicate)}")
            choice = click.prompt(
                "[m]erge, [k]eep both, [d]elete new, keep [n]ew, "
                "[>] next, [<] previous, [q]uit",
                type=click.Choice([*_REVIEW_KEYS, ">", "<", "q"]),
                show_choices=False,
            )
            if choice == "q":
                break
            if choice == ">":
                session.next()
            elif choice == "<":
                session.previous()
            else:
                session.resolve(_REVIEW_KEYS[choice])
    click.echo("No duplicates left to review." if session.finished else "Stopped.")


@cli.command("import-csv")
@click.argument("csv_file", type=click.File("r", encoding="utf-8"))
@user_option
def import_csv(csv_file: TextIO, user_id: str) -> None:
    """Import receipts from an RH/RI formatted CSV file."""
    with _service() as service:
        result = service.import_csv(user_id, csv_file)
    _echo_ingest(result)


@cli.command()
@click.argument(
    "images", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@user_option
@click.option(
    "--plan",
    type=click.Choice([p.value for p in PlanTier]),
    default=None,
    help="Plan to assume when the user has no usage record yet.",
)
def scan(images: tuple[str, ...], user_id: str, plan: str | None) -> None:
    """Extract receipts from images with AI and save them."""
    uploads = [
        ImageUpload(
            name=path,
            data=Path(path).read_bytes(),
            media_type=mimetypes.guess_type(path)[0] or "image/jpeg",
        )
        for path in images
    ]
    with _service() as service:
        result = service.scan_images(user_id, uploads, plan)
    _echo_ingest(result)


@cli.command()
@user_option
def usage(user_id: str) -> None:
    """Show metered usage for today and this month."""
    with _service() as service:
        counter = service.usage(user_id)
        limits = service.quota.limits[counter.plan]

    def fmt(count: int, limit: int | None) -> str:
        return f"{count} / {'unlimited' if limit is None else limit}"

    click.echo(f"Plan: {counter.plan}")
    click.echo(f"Today: {fmt(counter.daily_count, limits.daily)}")
    click.echo(f"This month: {fmt(counter.monthly_count, limits.monthly)}")
