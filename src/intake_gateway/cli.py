"""Command Line Interface for Intake-Gateway.

This module provides an operator CLI using Typer: serving the webhook API,
initializing storage, managing tenants and inspecting the dead-letter queue.

Security Impact:
    - Tenant credentials are encrypted before they are stored
    - Listings never print secrets or decrypted credentials
    - Dead-letter payloads are excluded from exports unless requested
"""

from pathlib import Path
from typing import Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from intake_gateway import __version__
from intake_gateway.adapters.collaborators import FileDeadLetterQueue
from intake_gateway.adapters.normalizers import available_normalizers
from intake_gateway.domain.models import Tenant
from intake_gateway.domain.ports import StorageError, StoragePort
from intake_gateway.infrastructure.encryption import EncryptionService
from intake_gateway.infrastructure.settings import settings

# Initialize Typer app and Rich console
app = typer.Typer(
    name="intake-gateway",
    help="Intake-Gateway: multi-tenant webhook intake for patient submissions",
    add_completion=False
)
console = Console()


def create_storage_adapter_cli() -> StoragePort:
    """Create and initialize the storage adapter (CLI wrapper)."""
    try:
        from intake_gateway.main import create_storage_adapter
        storage = create_storage_adapter()
    except (StorageError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)

    result = storage.initialize_schema()
    if result.is_failure():
        console.print(f"[red]✗[/red] Failed to initialize storage: {result.error}")
        raise typer.Exit(code=1)
    return storage


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development)"),
) -> None:
    """Serve the webhook intake API with uvicorn."""
    import uvicorn

    console.print(f"[bold blue]{settings.app_name}[/bold blue] listening on {host}:{port}")
    uvicorn.run(
        "intake_gateway.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower()
    )


@app.command("init-db")
def init_db() -> None:
    """Create the storage schema (idempotent)."""
    storage = create_storage_adapter_cli()
    storage.close()
    console.print(f"[green]✓[/green] Storage schema ready ({settings.db_config.db_type})")


@app.command("add-tenant")
def add_tenant(
    tenant_id: int = typer.Option(..., "--id", help="Numeric tenant id"),
    subdomain: str = typer.Option(..., "--subdomain", "-s", help="Clinic subdomain"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    username: Optional[str] = typer.Option(None, "--username", help="Inbound Basic-auth username"),
    password: Optional[str] = typer.Option(None, "--password", help="Inbound Basic-auth password"),
    webhook_secret: Optional[str] = typer.Option(None, "--webhook-secret", help="Per-tenant webhook secret"),
    prefix: str = typer.Option("PT", "--prefix", help="Patient number prefix"),
) -> None:
    """Create or update a tenant, encrypting its inbound credentials.

    Examples:
        intake-gateway add-tenant --id 1 --subdomain wellmedr --webhook-secret s3cret
        intake-gateway add-tenant --id 2 --subdomain eonmeds --username clinic2 --password pw
    """
    if (username is None) != (password is None):
        console.print("[red]✗[/red] --username and --password must be given together")
        raise typer.Exit(code=1)

    cipher = EncryptionService()
    tenant = Tenant(
        id=tenant_id,
        subdomain=subdomain,
        name=name or subdomain,
        inbound_username=cipher.encrypt(username) if username else None,
        inbound_password=cipher.encrypt(password) if password else None,
        webhook_secret=cipher.encrypt(webhook_secret) if webhook_secret else None,
        patient_number_prefix=prefix,
    )

    storage = create_storage_adapter_cli()
    try:
        storage.save_tenant(tenant)
    except StorageError as e:
        console.print(f"[red]✗[/red] Failed to save tenant: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        storage.close()

    console.print(f"[green]✓[/green] Saved tenant {tenant.id} ({tenant.subdomain})")


@app.command("list-tenants")
def list_tenants() -> None:
    """List tenants and which credential kinds they have configured."""
    storage = create_storage_adapter_cli()
    try:
        tenants = storage.list_tenants()
    finally:
        storage.close()

    if not tenants:
        console.print("[yellow]⚠[/yellow] No tenants configured")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Subdomain")
    table.add_column("Name")
    table.add_column("Prefix")
    table.add_column("Basic auth")
    table.add_column("Webhook secret")
    for tenant in tenants:
        table.add_row(
            str(tenant.id),
            tenant.subdomain,
            tenant.name,
            tenant.patient_number_prefix,
            "yes" if tenant.inbound_password else "no",
            "yes" if tenant.webhook_secret else "no",
        )
    console.print(table)


@app.command("dead-letters")
def dead_letters(
    path: Optional[Path] = typer.Option(None, "--path", help="Dead-letter file (defaults to IG_DEAD_LETTER_PATH)"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum entries to show"),
) -> None:
    """Show queued dead-letter entries (newest last)."""
    queue = FileDeadLetterQueue(str(path or settings.dead_letter_path))
    entries = queue.list_entries()
    if not entries:
        console.print("[green]✓[/green] Dead-letter queue is empty")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Enqueued")
    table.add_column("Source")
    table.add_column("Submission")
    table.add_column("Request")
    table.add_column("Reason")
    for entry in entries[-limit:]:
        table.add_row(
            entry.enqueued_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.source,
            entry.submission_id or "-",
            entry.request_id or "-",
            entry.reason,
        )
    console.print(table)
    console.print(f"[dim]{len(entries)} entries in {queue.path}[/dim]")


@app.command("export-dead-letters")
def export_dead_letters(
    output: Path = typer.Argument(..., help="CSV file to write"),
    path: Optional[Path] = typer.Option(None, "--path", help="Dead-letter file (defaults to IG_DEAD_LETTER_PATH)"),
    include_payload: bool = typer.Option(False, "--include-payload", help="Include raw payloads (contains PHI)"),
) -> None:
    """Export dead-letter entries to CSV for replay tooling."""
    queue = FileDeadLetterQueue(str(path or settings.dead_letter_path))
    entries = queue.list_entries()

    columns = ["id", "enqueued_at", "source", "submission_id", "request_id", "reason"]
    if include_payload:
        columns.append("payload")
        console.print("[yellow]⚠[/yellow] Export includes raw payloads (PHI)")

    df = pd.DataFrame([entry.model_dump() for entry in entries], columns=columns)
    df.to_csv(output, index=False)
    console.print(f"[green]✓[/green] Exported {len(df):,} entries to {output}")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Storage Type:", settings.db_config.db_type)
    if settings.db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Normalizers:", ", ".join(available_normalizers()))
    info_table.add_row("Sources:", ", ".join(sorted(settings.sources)) or "(none)")
    info_table.add_row("Dedup Window:", str(settings.dedup_window))
    info_table.add_row("Retry Attempts:", str(settings.retry_attempts))
    info_table.add_row("Dead-Letter File:", settings.dead_letter_path)

    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Intake-Gateway: multi-tenant webhook intake."""
    if version:
        console.print(f"Intake-Gateway v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
