import asyncio
import getpass
from collections.abc import Awaitable, Callable

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ledger import __version__
from ledger.config import Config
from ledger.errors import ConflictError, LedgerError
from ledger.intake.lifecycle import PromotePayload, RejectPayload
from ledger.intake.models import IntakeAction, IntakeItem, IntakeStatus, RunSummary
from ledger.logging import configure_logging
from ledger.records.models import AuditLogEntry, CardStatus, CreateEntityInput, EntityType
from ledger.runtime import Runtime
from ledger.store.kv import Page

console = Console()


def _run[T](ctx: click.Context, fn: Callable[[Runtime], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with Runtime(ctx.obj["config"]) as runtime:
            return await fn(runtime)

    try:
        return asyncio.run(_main())
    except LedgerError as e:
        console.print(f"[red]Error ({e.kind}):[/red] {escape(e.message)}")
        if isinstance(e, ConflictError) and e.existing is not None:
            console.print(f"Existing entity: [cyan]{e.existing.entity_id}[/cyan] {escape(e.existing.name)}")
        raise SystemExit(1) from None
    except ValidationError as e:
        console.print(f"[red]Invalid input:[/red] {escape(str(e))}")
        raise SystemExit(1) from None


def _actor_option(fn):
    return click.option("--actor", default=getpass.getuser, show_default="current user", help="Who is acting")(fn)


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """ledger - regulatory feed intake and promotion"""
    ctx.ensure_object(dict)
    try:
        config = Config()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        raise SystemExit(1) from None
    ctx.obj["config"] = config
    configure_logging(config.log_level, json=config.log_json)

    if ctx.invoked_subcommand is None:
        console.print(f"[bold]ledger[/bold] {__version__} - regulatory feed intake\n")
        console.print("Run [cyan]ledger intake run[/cyan] to ingest configured feeds.")
        console.print("\nUse [cyan]ledger --help[/cyan] for all commands.")


@main.command()
@click.pass_context
def rails(ctx):
    """Show the effective crawl rails, environment overrides applied."""
    runtime = Runtime(ctx.obj["config"])
    table = Table(title="Crawl rails")
    table.add_column("Field")
    table.add_column("Value")
    for name, value in runtime.rails().to_dict().items():
        table.add_row(name, ", ".join(value) if isinstance(value, list) else str(value))
    console.print(table)


@main.command()
@click.pass_context
def feeds(ctx):
    """List configured feeds."""
    runtime = Runtime(ctx.obj["config"])
    table = Table(title="Feeds")
    for column in ("ID", "Publisher", "Name", "URL", "Cap", "Enabled"):
        table.add_column(column)
    for feed in runtime.catalog.feeds:
        table.add_row(
            feed.id,
            feed.publisher,
            feed.name,
            feed.url,
            str(feed.per_feed_cap or "-"),
            "[green]yes[/green]" if feed.enabled else "[dim]no[/dim]",
        )
    console.print(table)


@main.group()
def intake():
    """Ingest feeds and review intake items."""


def _print_summary(summary: RunSummary) -> None:
    table = Table(title=f"Intake run {summary.run_id}")
    for column in ("Feed", "Created", "Skipped", "Failed", "Errors"):
        table.add_column(column)
    for result in summary.feed_results:
        errors = "\n".join(f"{f.kind}: {escape(f.message)}" for f in result.failures)
        table.add_row(
            result.feed_id,
            str(result.items_created),
            str(result.items_skipped),
            "[red]feed[/red]" if result.feed_failed else str(result.items_failed),
            errors,
        )
    console.print(table)
    console.print(
        f"[bold]{summary.items_created}[/bold] created, {summary.items_skipped} skipped, "
        f"{summary.feeds_failed} feed(s) failed" + (" [yellow](cancelled)[/yellow]" if summary.cancelled else "")
    )


@intake.command("run")
@click.option("--feed", "feed_ids", multiple=True, help="Only run these feed ids")
@click.pass_context
def intake_run(ctx, feed_ids: tuple[str, ...]):
    """Fetch configured feeds and stage new items."""
    summary = _run(ctx, lambda rt: rt.run_intake(list(feed_ids) or None))
    _print_summary(summary)
    if summary.feeds_failed and summary.feeds_failed == len(summary.feed_results):
        raise SystemExit(1)


@intake.command("list")
@click.option("--status", type=click.Choice([s.value for s in IntakeStatus]), default=None)
@click.option("--limit", type=int, default=None)
@click.option("--cursor", default=None)
@click.pass_context
def intake_list(ctx, status: str | None, limit: int | None, cursor: str | None):
    """List intake items, newest first."""
    page = _run(ctx, lambda rt: rt.intake.list_intake_items(status=status, cursor=cursor, limit=limit))
    table = Table()
    table.add_column("Key", no_wrap=True)
    for column in ("Status", "Feed", "Published", "Title"):
        table.add_column(column)
    for item in page.items:
        published = item.published_at.date().isoformat() if item.published_at else "-"
        table.add_row(item.dedupe_key, item.status, item.feed_id, published, escape(item.title))
    console.print(table)
    if page.cursor:
        console.print(f"[dim]Next page: --cursor {page.cursor}[/dim]")


def _print_item(item: IntakeItem) -> None:
    console.print(f"[bold]{escape(item.title)}[/bold]")
    console.print(f"Key:       {item.dedupe_key}")
    console.print(f"Status:    {item.status}")
    console.print(f"Feed:      {item.feed_id} ({item.publisher})")
    console.print(f"URL:       {item.canonical_url}")
    if item.published_at:
        console.print(f"Published: {item.published_at.isoformat()}")
    if item.categories:
        console.print(f"Categories: {', '.join(item.categories)}")
    if item.raw_content_ref:
        console.print(f"Snapshot:  {item.raw_content_ref}")
    if item.promoted_card_id:
        console.print(f"Card:      {item.promoted_card_id}")
    if item.reject_reason:
        console.print(f"Rejected:  {escape(item.reject_reason)}")
    if item.description:
        console.print()
        console.print(escape(item.description))


@intake.command("show")
@click.argument("key")
@click.pass_context
def intake_show(ctx, key: str):
    """Show one intake item."""
    _print_item(_run(ctx, lambda rt: rt.intake.get(key)))


@intake.command("snapshot")
@click.argument("key")
@click.pass_context
def intake_snapshot(ctx, key: str):
    """Print a download URL for an item's captured snapshot."""
    presigned = _run(ctx, lambda rt: rt.snapshot_url(key))
    console.print(presigned.url, soft_wrap=True)
    console.print(f"[dim]Expires {presigned.expires_at.isoformat()}[/dim]")


@intake.command("review")
@click.argument("key")
@_actor_option
@click.pass_context
def intake_review(ctx, key: str, actor: str):
    """Mark an item as reviewed."""
    item = _run(ctx, lambda rt: rt.lifecycle.transition_intake_item(key, IntakeAction.REVIEW, actor=actor))
    console.print(f"[green]Reviewed[/green] {item.dedupe_key[:12]}")


@intake.command("reject")
@click.argument("key")
@click.option("--reason", required=True)
@click.option("--token", default=None, help="Idempotency key")
@_actor_option
@click.pass_context
def intake_reject(ctx, key: str, reason: str, token: str | None, actor: str):
    """Reject an item."""
    payload = RejectPayload(reason=reason)
    item = _run(
        ctx,
        lambda rt: rt.lifecycle.transition_intake_item(
            key, IntakeAction.REJECT, payload, actor=actor, idempotency_token=token
        ),
    )
    console.print(f"[yellow]Rejected[/yellow] {item.dedupe_key[:12]}")


@intake.command("promote")
@click.argument("key")
@click.option("--entity-id", "entity_ids", multiple=True, help="Existing entity to attach")
@click.option("--create-entity", "create_names", multiple=True, help="Name of a new entity to create")
@click.option("--entity-type", type=click.Choice([t.value for t in EntityType]), default=EntityType.CORPORATION.value)
@click.option("--summary", required=True, help="Card summary")
@click.option("--tag", "tags", multiple=True)
@click.option("--token", default=None, help="Idempotency key")
@_actor_option
@click.pass_context
def intake_promote(ctx, key, entity_ids, create_names, entity_type, summary, tags, token, actor):
    """Promote an item into a draft card."""
    try:
        payload = PromotePayload(
            entity_ids=list(entity_ids),
            create_entities=[CreateEntityInput(name=n, type=entity_type) for n in create_names],
            card_summary=summary,
            tags=list(tags) or None,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid input:[/red] {escape(str(e))}")
        raise SystemExit(1) from None

    item = _run(
        ctx,
        lambda rt: rt.lifecycle.transition_intake_item(
            key, IntakeAction.PROMOTE, payload, actor=actor, idempotency_token=token
        ),
    )
    console.print(f"[green]Promoted[/green] {item.dedupe_key[:12]} -> card [cyan]{item.promoted_card_id}[/cyan]")


@main.group()
def entities():
    """Manage entities."""


@entities.command("list")
@click.option("--query", default=None, help="Name prefix")
@click.option("--limit", type=int, default=20)
@click.option("--cursor", default=None)
@click.pass_context
def entities_list(ctx, query: str | None, limit: int, cursor: str | None):
    """List entities by name."""
    page = _run(ctx, lambda rt: rt.entities.list_entities(query=query, cursor=cursor, limit=limit))
    table = Table()
    for column in ("ID", "Name", "Type"):
        table.add_column(column)
    for entity in page.items:
        table.add_row(entity.entity_id, escape(entity.name), entity.type)
    console.print(table)
    if page.cursor:
        console.print(f"[dim]Next page: --cursor {page.cursor}[/dim]")


@entities.command("create")
@click.argument("name")
@click.option("--type", "entity_type", type=click.Choice([t.value for t in EntityType]), required=True)
@click.option("--website", default=None)
@_actor_option
@click.pass_context
def entities_create(ctx, name: str, entity_type: str, website: str | None, actor: str):
    """Create an entity."""
    data = CreateEntityInput(name=name, type=entity_type, website=website)
    entity = _run(ctx, lambda rt: rt.entities.create_entity(data, actor))
    console.print(f"[green]Created[/green] {escape(entity.name)} ([cyan]{entity.entity_id}[/cyan])")


@main.group()
def cards():
    """Inspect cards created by promotion."""


@cards.command("list")
@click.option("--status", type=click.Choice([s.value for s in CardStatus]), default=CardStatus.DRAFT.value)
@click.option("--limit", type=int, default=20)
@click.option("--cursor", default=None)
@click.pass_context
def cards_list(ctx, status: str, limit: int, cursor: str | None):
    """List cards with a status, newest first."""
    page = _run(ctx, lambda rt: rt.cards.list_by_status(CardStatus(status), cursor=cursor, limit=limit))
    table = Table()
    for column in ("ID", "Event date", "Category", "Title"):
        table.add_column(column)
    for card in page.items:
        table.add_row(card.card_id, card.event_date.isoformat(), card.category, escape(card.title))
    console.print(table)
    if page.cursor:
        console.print(f"[dim]Next page: --cursor {page.cursor}[/dim]")


@main.group()
def audit():
    """Read the audit trail."""


def _print_audit(page: Page[AuditLogEntry]) -> None:
    table = Table()
    for column in ("When", "Actor", "Action", "Target", "Request"):
        table.add_column(column)
    for entry in page.items:
        table.add_row(
            entry.timestamp.isoformat(timespec="seconds"),
            escape(entry.actor),
            entry.action,
            f"{entry.target_type} {entry.target_id}",
            entry.request_id or "-",
        )
    console.print(table)
    if page.cursor:
        console.print(f"[dim]Next page: --cursor {page.cursor}[/dim]")


@audit.command("target")
@click.argument("target_type")
@click.argument("target_id")
@click.option("--limit", type=int, default=50)
@click.option("--cursor", default=None)
@click.pass_context
def audit_target(ctx, target_type: str, target_id: str, limit: int, cursor: str | None):
    """Audit entries for one record, e.g. `intake <key>` or `entity <id>`."""
    _print_audit(_run(ctx, lambda rt: rt.audit.list_for_target(target_type, target_id, cursor=cursor, limit=limit)))


@audit.command("actor")
@click.argument("actor")
@click.option("--limit", type=int, default=50)
@click.option("--cursor", default=None)
@click.pass_context
def audit_actor(ctx, actor: str, limit: int, cursor: str | None):
    """Audit entries written by one actor."""
    _print_audit(_run(ctx, lambda rt: rt.audit.list_by_actor(actor, cursor=cursor, limit=limit)))


if __name__ == "__main__":
    main()
