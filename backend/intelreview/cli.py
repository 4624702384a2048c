"""IntelReview CLI — maintenance for the report review store.

Commands:
  init-db                — create tables
  retention-summary      — expiry bucket counts per retained table
  purge-expired          — delete every expired report and post
  purge-audit-log        — drop audit entries past the audit retention window
  recompute-expirations  — repair stored expiry dates
  export-audit           — write the (filtered) audit trail to CSV
  serve                  — run the API server
"""
from __future__ import annotations

import typer
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table


app = typer.Typer(
    name="intelreview",
    help="Intelligence report review, audit and retention maintenance.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_BUCKET_COLORS = {"expired": "red", "critical": "red", "warning": "yellow", "normal": "green"}


@app.command("init-db")
def init_db_command():
    """Create all tables (existing tables are left untouched)."""
    from intelreview.database import init_db

    with console.status("[bold]Creating database..."):
        init_db()
    console.print("[green]Database ready.[/green]")


@app.command("retention-summary")
def retention_summary():
    """Show how many records sit in each retention bucket."""
    from intelreview.database import SessionLocal
    from intelreview.modules.retention import default_policy, summary

    policy = default_policy()
    db = SessionLocal()
    try:
        counts = summary(db, policy=policy)
    finally:
        db.close()

    table = Table(title="Retention")
    table.add_column("Table")
    for bucket in ("expired", "critical", "warning", "normal"):
        table.add_column(f"[{_BUCKET_COLORS[bucket]}]{bucket}[/{_BUCKET_COLORS[bucket]}]", justify="right")
    for name, buckets in counts.items():
        table.add_row(name, *(str(buckets[b]) for b in ("expired", "critical", "warning", "normal")))
    console.print(table)
    console.print(
        f"[dim]critical <= {policy.critical_days} days, warning <= {policy.warning_days} days, "
        f"default retention {policy.default_retention_days} days[/dim]"
    )


@app.command("purge-expired")
def purge_expired(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report how many records would be purged"),
):
    """Delete every expired report and post. Each deletion is audited."""
    from intelreview.database import SessionLocal
    from intelreview.errors import ConflictError
    from intelreview.modules.retention import purge, summary
    from intelreview.schemas.actor import Actor

    db = SessionLocal()
    try:
        expired = {name: buckets["expired"] for name, buckets in summary(db).items()}
        total = sum(expired.values())
        if dry_run or total == 0:
            for name, count in expired.items():
                console.print(f"  {name}: {count} expired")
            if total == 0:
                console.print("[green]Nothing to purge.[/green]")
            return
        if not yes:
            typer.confirm(f"Permanently delete {total} expired record(s)?", abort=True)
        try:
            with console.status("[bold]Purging expired records..."):
                result = purge(db, actor=Actor.system())
        except ConflictError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)
    finally:
        db.close()

    console.print(f"[green]Purged {result.purged_count} record(s)[/green]")
    if result.skipped_count:
        console.print(f"  [yellow]{result.skipped_count} skipped (changed during purge)[/yellow]")
    if result.failed_ids:
        console.print(f"  [red]{len(result.failed_ids)} failed: {', '.join(result.failed_ids)}[/red]")
        raise typer.Exit(1)


@app.command("purge-audit-log")
def purge_audit_log(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Drop audit entries older than the audit retention window."""
    from intelreview.database import SessionLocal
    from intelreview.errors import ConflictError
    from intelreview.modules import retention
    from intelreview.schemas.actor import Actor

    policy = retention.default_policy()
    if not yes:
        typer.confirm(f"Delete audit entries older than {policy.audit_retention_days} days?", abort=True)
    db = SessionLocal()
    try:
        purged = retention.purge_audit_log(db, actor=Actor.system(), policy=policy)
    except ConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    finally:
        db.close()
    console.print(f"[green]Removed {purged} audit entr{'y' if purged == 1 else 'ies'}[/green]")


@app.command("recompute-expirations")
def recompute_expirations():
    """Rewrite stored expiry dates that disagree with retention settings."""
    from intelreview.database import SessionLocal
    from intelreview.modules.retention import recompute_expirations as _recompute
    from intelreview.schemas.actor import Actor

    db = SessionLocal()
    try:
        fixed = _recompute(db, actor=Actor.system())
    finally:
        db.close()
    console.print(f"[green]Corrected {fixed} record(s)[/green]")


@app.command("export-audit")
def export_audit(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="CSV path (default: audit_log_<timestamp>.csv)"),
    search: Optional[str] = typer.Option(None, "--search", help="Case-insensitive text filter"),
    action: Optional[str] = typer.Option(None, "--action", help="Exact action filter"),
    username: Optional[str] = typer.Option(None, "--username", help="Exact username filter"),
):
    """Export the audit trail, newest first, to CSV."""
    from intelreview.config import settings
    from intelreview.database import SessionLocal
    from intelreview.modules import audit_query

    db = SessionLocal()
    try:
        entries, truncated = audit_query.export_entries(
            db, settings.AUDIT_EXPORT_MAX_ROWS, search_text=search, action=action, username=username,
        )
        data = audit_query.export_csv(entries)
    finally:
        db.close()

    path = output or Path(audit_query.csv_filename())
    path.write_bytes(data)
    console.print(f"[green]Wrote {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} to {path}[/green]")
    if truncated:
        console.print(
            f"[yellow]More than {settings.AUDIT_EXPORT_MAX_ROWS} entries matched; "
            f"only the newest {settings.AUDIT_EXPORT_MAX_ROWS} were written[/yellow]"
        )


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the review API."""
    import uvicorn

    console.print(f"API running at [cyan]http://{host}:{port}/api/v1[/cyan] — press Ctrl+C to stop")
    uvicorn.run("intelreview.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
