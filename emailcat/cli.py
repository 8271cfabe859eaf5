"""CLI entry point for the emailcat classification pipeline.

Commands:
    emailcat init-user     - seed default categories and rules for a user
    emailcat connection    - add, list and test mailbox connections
    emailcat process       - classify and label one connection's inbox
    emailcat process-all   - run every active connection
    emailcat review        - list and decide messages awaiting review
    emailcat audit         - show recent audit entries
"""

import asyncio
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import click

from emailcat.config import (
    AUDIT_LOG_PATH,
    DATABASE_PATH,
    IMAP_TIMEOUT_SECONDS,
    LLM_ENV,
    LLM_FALLBACK_ONLY,
    LLM_TIMEOUT_SECONDS,
    MAX_EMAILS_PER_RUN,
    RUN_TIMEOUT_SECONDS,
)

logger = logging.getLogger("emailcat")


@contextmanager
def _open_stores() -> Iterator[tuple]:
    """Open (connections, catalog, ledger, audit) on the configured paths."""
    from emailcat.audit.logger import AuditLog
    from emailcat.queue.ledger import MessageLedger
    from emailcat.secrets import PlaintextCipher
    from emailcat.store.catalog import CatalogStore
    from emailcat.store.connections import ConnectionStore

    with (
        ConnectionStore(DATABASE_PATH, PlaintextCipher()) as connections,
        CatalogStore(DATABASE_PATH) as catalog,
        MessageLedger(DATABASE_PATH) as ledger,
    ):
        yield connections, catalog, ledger, AuditLog(AUDIT_LOG_PATH)


def _processor_kwargs() -> dict:
    return {
        "llm_env": LLM_ENV,
        "llm_fallback_only": LLM_FALLBACK_ONLY,
        "llm_timeout": LLM_TIMEOUT_SECONDS,
        "imap_timeout": IMAP_TIMEOUT_SECONDS,
    }


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """emailcat - rule/LLM email classification and labeling."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# emailcat init-user
# ------------------------------------------------------------------


@cli.command("init-user")
@click.argument("user_id")
def init_user(user_id: str) -> None:
    """Create the default categories and rules for USER_ID."""
    with _open_stores() as (_connections, catalog, _ledger, _audit):
        categories, rules = catalog.seed_defaults(user_id)
    click.echo(f"Seeded {categories} categor(ies) and {rules} rule(s) for {user_id}.")


# ------------------------------------------------------------------
# emailcat connection
# ------------------------------------------------------------------


@cli.group()
def connection() -> None:
    """Manage mailbox connections."""


@connection.command("add-imap")
@click.option("--user", "user_id", required=True, help="Owning user id.")
@click.option("--email", required=True, help="Mailbox address (display only).")
@click.option("--host", required=True, help="IMAP server host.")
@click.option("--port", default=993, show_default=True, help="IMAP server port.")
@click.option("--username", default=None, help="Login name (defaults to --email).")
@click.option("--password", prompt=True, hide_input=True, help="Login password.")
@click.option("--no-ssl", is_flag=True, help="Connect without TLS.")
@click.option("--flags", "use_flags", is_flag=True, help="Label with IMAP keywords instead of folders.")
@click.option("--folder-prefix", default="", help="Parent folder for created labels.")
@click.option("--fetch-body", is_flag=True, help="Fetch full bodies for classification.")
def add_imap(
    user_id: str,
    email: str,
    host: str,
    port: int,
    username: str | None,
    password: str,
    no_ssl: bool,
    use_flags: bool,
    folder_prefix: str,
    fetch_body: bool,
) -> None:
    """Register an IMAP mailbox."""
    from emailcat.schemas.email import ImapCredentials, ProviderType

    settings = {
        "use_folders": not use_flags,
        "folder_prefix": folder_prefix,
        "fetch_body": fetch_body,
    }
    with _open_stores() as (connections, _catalog, _ledger, _audit):
        conn = connections.add_connection(user_id, ProviderType.IMAP, email, settings=settings)
        connections.set_imap_credentials(
            conn.id,
            ImapCredentials(
                host=host,
                port=port,
                secure=not no_ssl,
                username=username or email,
                password=password,
            ),
        )
    click.echo(f"Added IMAP connection {conn.id} for {email}.")


@connection.command("list")
@click.option("--user", "user_id", default=None, help="Only this user's connections.")
def list_connections(user_id: str | None) -> None:
    """List connections and their status."""
    with _open_stores() as (connections, _catalog, ledger, _audit):
        rows = connections.list_connections(user_id=user_id)
        if not rows:
            click.echo("No connections.")
            return
        for conn in rows:
            synced = conn.last_sync_at.isoformat(timespec="seconds") if conn.last_sync_at else "never"
            click.echo(
                f"{conn.id}  {conn.provider.value:<7} {conn.email:<30} {conn.status.value:<12} "
                f"synced={synced} processed={ledger.count(conn.id)}"
            )
            if conn.last_error:
                click.echo(f"    last error: {conn.last_error}")


@connection.command("test")
@click.argument("connection_id")
def test_connection(connection_id: str) -> None:
    """Check that CONNECTION_ID can log in and open its inbox."""
    asyncio.run(_test_connection_async(connection_id))


async def _test_connection_async(connection_id: str) -> None:
    from emailcat.integrations.providers import create_provider

    with _open_stores() as (connections, _catalog, _ledger, _audit):
        conn = connections.get(connection_id)
        if conn is None:
            click.echo(f"Error: connection {connection_id} not found.", err=True)
            sys.exit(1)
        try:
            provider = create_provider(conn, connections, timeout=IMAP_TIMEOUT_SECONDS)
        except Exception as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
        async with provider:
            ok = await provider.test_connection()

    if not ok:
        click.echo(f"Connection {connection_id}: FAILED", err=True)
        sys.exit(1)
    click.echo(f"Connection {connection_id}: OK")


# ------------------------------------------------------------------
# emailcat process / process-all
# ------------------------------------------------------------------


@cli.command()
@click.argument("connection_id")
@click.option("--max-emails", "-n", default=MAX_EMAILS_PER_RUN, show_default=True, help="Max messages to fetch.")
@click.option("--dry-run", is_flag=True, help="Classify and record, but never touch the mailbox.")
@click.option("--force", is_flag=True, help="Reprocess messages that are already in the ledger.")
@click.option(
    "--timeout",
    default=RUN_TIMEOUT_SECONDS,
    show_default=True,
    help="Wall-clock budget for the run in seconds (0 = none).",
)
def process(connection_id: str, max_emails: int, dry_run: bool, force: bool, timeout: float) -> None:
    """Classify and label new messages of CONNECTION_ID."""
    asyncio.run(_process_async(connection_id, max_emails, dry_run, force, timeout))


async def _process_async(
    connection_id: str,
    max_emails: int,
    dry_run: bool,
    force: bool,
    timeout: float,
) -> None:
    from emailcat.orchestrator.processor import EmailProcessor
    from emailcat.schemas.processing import ProcessingOptions

    options = ProcessingOptions(
        max_emails=max_emails,
        dry_run=dry_run,
        force_reprocess=force,
        timeout_seconds=timeout or None,
    )
    with _open_stores() as (connections, catalog, ledger, audit):
        processor = EmailProcessor(
            connection_id,
            connections=connections,
            catalog=catalog,
            ledger=ledger,
            audit=audit,
            options=options,
            on_progress=lambda msg: click.echo(msg, err=True),
            **_processor_kwargs(),
        )
        try:
            result = await processor.process()
        except Exception as exc:
            logger.debug("Run failed", exc_info=True)
            click.echo(f"Error: {str(exc) or type(exc).__name__}", err=True)
            sys.exit(1)

    click.echo(result.model_dump_json(indent=2))


@cli.command("process-all")
@click.option("--user", "user_id", default=None, help="Only this user's connections.")
@click.option("--max-emails", "-n", default=MAX_EMAILS_PER_RUN, show_default=True, help="Max messages per connection.")
@click.option("--concurrency", default=4, show_default=True, help="Connections processed in parallel.")
@click.option("--dry-run", is_flag=True, help="Classify and record, but never touch mailboxes.")
def process_all(user_id: str | None, max_emails: int, concurrency: int, dry_run: bool) -> None:
    """Run every ACTIVE connection once."""
    asyncio.run(_process_all_async(user_id, max_emails, concurrency, dry_run))


async def _process_all_async(
    user_id: str | None, max_emails: int, concurrency: int, dry_run: bool
) -> None:
    from emailcat.orchestrator.processor import process_all_connections
    from emailcat.schemas.processing import ProcessingOptions

    options = ProcessingOptions(
        max_emails=max_emails,
        dry_run=dry_run,
        timeout_seconds=RUN_TIMEOUT_SECONDS or None,
    )
    with _open_stores() as (connections, catalog, ledger, audit):
        results = await process_all_connections(
            connections=connections,
            catalog=catalog,
            ledger=ledger,
            audit=audit,
            options=options,
            concurrency=concurrency,
            user_id=user_id,
            **_processor_kwargs(),
        )

    for r in results:
        click.echo(
            f"{r.connection_id}: processed={r.messages_processed} labeled={r.messages_labeled} "
            f"review={r.messages_review} errors={len(r.errors)} ({r.duration_ms}ms)"
        )
    click.echo(f"Done. {len(results)} connection(s) completed.")


# ------------------------------------------------------------------
# emailcat review
# ------------------------------------------------------------------


@cli.group()
def review() -> None:
    """Decide messages that were filed for review."""


@review.command("list")
@click.option("--connection", "connection_id", default=None, help="Only this connection.")
@click.option("--limit", "-n", default=50, show_default=True, help="Max items to show.")
def review_list(connection_id: str | None, limit: int) -> None:
    """List messages awaiting review."""
    with _open_stores() as (_connections, _catalog, ledger, _audit):
        pending = ledger.list_pending_review(connection_id, limit=limit)
    if not pending:
        click.echo("No messages awaiting review.")
        return
    for item in pending:
        hint = f" (suggested {item.suggested_category})" if item.suggested_category else ""
        click.echo(f"[{item.id}] {item.email_subject or '(no subject)'}")
        click.echo(f"    From: {item.email_from}")
        click.echo(f"    Confidence: {item.confidence:.0%}{hint}")
        click.echo(f"    Rationale: {item.rationale}")


@review.command("approve")
@click.argument("record_id", type=int)
def review_approve(record_id: int) -> None:
    """Keep the classification of RECORD_ID."""
    from emailcat.orchestrator import review as actions

    with _open_stores() as (_connections, _catalog, ledger, audit):
        try:
            asyncio.run(actions.approve(record_id, ledger=ledger, audit=audit))
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    click.echo(f"Approved {record_id}.")


@review.command("change")
@click.argument("record_id", type=int)
@click.argument("category_code")
def review_change(record_id: int, category_code: str) -> None:
    """Refile RECORD_ID under CATEGORY_CODE."""
    from emailcat.orchestrator import review as actions

    with _open_stores() as (connections, catalog, ledger, audit):
        try:
            updated = asyncio.run(
                actions.change(
                    record_id,
                    category_code,
                    connections=connections,
                    catalog=catalog,
                    ledger=ledger,
                    audit=audit,
                )
            )
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    label = updated.label_applied or "no label applied"
    click.echo(f"Changed {record_id} to {updated.category_code} ({label}).")


@review.command("reject")
@click.argument("record_id", type=int)
def review_reject(record_id: int) -> None:
    """Discard the classification of RECORD_ID."""
    from emailcat.orchestrator import review as actions

    with _open_stores() as (connections, _catalog, ledger, audit):
        try:
            asyncio.run(
                actions.reject(record_id, connections=connections, ledger=ledger, audit=audit)
            )
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    click.echo(f"Rejected {record_id}.")


# ------------------------------------------------------------------
# emailcat audit
# ------------------------------------------------------------------


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of entries to show.")
@click.option("--action", default=None, help="Only entries with this action.")
def audit(limit: int, action: str | None) -> None:
    """Show the most recent audit entries."""
    from emailcat.audit.logger import AuditLog

    entries = AuditLog(AUDIT_LOG_PATH).read_entries(action=action, limit=limit)
    if not entries:
        click.echo("No audit entries.")
        return
    for e in entries:
        ts = e.timestamp.isoformat(timespec="seconds")
        target = f"{e.entity_type}:{e.entity_id}" if e.entity_id else e.entity_type
        click.echo(f"{ts}  {e.action:<18} {target}  {e.details}")
