"""Catalog Ingest CLI using Typer."""

import logging
import os
from pathlib import Path

import typer
from dotenv import load_dotenv

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

from catalog_ingest.cli.ingest import ingest_app  # noqa: E402
from catalog_ingest.cli.ops import ops_app  # noqa: E402

app = typer.Typer(
    name="catalog-ingest",
    help="Catalog Ingest - keeps offer price, stock and image data fresh",
    add_completion=False,
)
app.add_typer(ingest_app, name="ingest")
app.add_typer(ops_app, name="ops")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def run(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(
        False, "--reload", "-r", help="Enable auto-reload for development"
    ),
) -> None:
    """Start the ops HTTP server."""
    import uvicorn

    typer.echo(f"Starting Catalog Ingest on http://{host}:{port}")
    typer.echo("Press Ctrl+C to stop the server")
    typer.echo("")

    uvicorn.run(
        "catalog_ingest.web.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def init_db(
    migrate: bool = typer.Option(
        False, "--migrate", help="Run Alembic migrations instead of create_all"
    ),
) -> None:
    """Initialize the database (create tables)."""
    from catalog_ingest.db.engine import init_db as db_init
    from catalog_ingest.db.engine import run_migrations

    typer.echo("Initializing database...")
    if migrate:
        run_migrations()
    else:
        db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def version() -> None:
    """Show the Catalog Ingest version."""
    typer.echo("Catalog Ingest v0.1.0")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    from catalog_ingest.db.engine import get_database_url
    from catalog_ingest.ingestion.registry import get_default_registry

    typer.echo("Catalog Ingest Configuration")
    typer.echo("=" * 40)

    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    typer.echo(f"  Database: {get_database_url()}")

    registry = get_default_registry()
    if registry.config_path:
        typer.echo(f"  Sources config: {registry.config_path}")
    else:
        source = os.environ.get("SOURCES_CONFIG_PATH", "config/sources.yaml")
        typer.echo(f"  Sources config: Not found ({source}), using built-in defaults")
    typer.echo(f"  Retailers: {len(registry.list_retailers())}")
    typer.echo(f"  Scheduled sources: {len(registry.list_enabled_sources())} enabled")


if __name__ == "__main__":
    app()
