"""FastAPI application factory for Catalog Ingest."""

from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from catalog_ingest.db.engine import init_db

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Catalog Ingest",
        description="Operator surface for the offer refresh pipeline",
        version="0.1.0",
    )

    # Initialize database tables
    init_db()

    # Include routers (import here to avoid circular imports)
    from catalog_ingest.web.routes import ops

    app.include_router(ops.router)

    return app


# Application instance
app = create_app()
