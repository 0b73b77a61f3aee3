"""
Database engine and session management.

Workers, the scheduler and the ops surface share one database. SQLite
connections run in WAL mode with a busy timeout; server backends get a
pre-pinged connection pool sized from the environment.
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Default database path (can be overridden via environment variable)
DEFAULT_DB_PATH = Path.home() / ".catalog_ingest" / "catalog_ingest.db"

DEFAULT_BUSY_TIMEOUT_MS = 30000
DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Get the database URL.

    Args:
        db_path: Optional path to a SQLite database file. If None, uses
                 DATABASE_URL env var or default path.

    Returns:
        SQLAlchemy connection URL.
    """
    if db_path is not None:
        path = Path(db_path)
    elif os.environ.get("DATABASE_URL"):
        # A full URL selects any backend; a bare path means SQLite
        url = os.environ["DATABASE_URL"]
        if "://" in url:
            return url
        path = Path(url)
    else:
        path = DEFAULT_DB_PATH

    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def configure_sqlite_connection(dbapi_connection, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    """
    Apply the multi-worker pragmas to a raw SQLite connection.

    busy_timeout goes first so the switch to WAL waits out a concurrent
    initializer.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
    finally:
        cursor.close()


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine tuned for concurrent workers.

    Environment:
        DATABASE_BUSY_TIMEOUT_MS: SQLite lock wait (default 30000)
        DATABASE_POOL_SIZE, DATABASE_MAX_OVERFLOW: pool bounds for server backends

    Args:
        db_path: Optional path to the database file.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = get_database_url(db_path)

    if not url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_size=_env_int("DATABASE_POOL_SIZE", DEFAULT_POOL_SIZE),
            max_overflow=_env_int("DATABASE_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW),
        )

    busy_timeout_ms = _env_int("DATABASE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS)
    engine = create_engine(
        url,
        echo=echo,
        # Worker threads and the web app share pooled connections
        connect_args={"check_same_thread": False, "timeout": busy_timeout_ms / 1000},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        configure_sqlite_connection(dbapi_connection, busy_timeout_ms)

    return engine


# Global engine and session factory (initialized lazily)
_engine: Engine | None = None
_SessionLocal = None


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Get or create the global database engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
    return _engine


def get_session_factory(db_path: Path | str | None = None):
    """Get or create the global session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(db_path))
    return _SessionLocal


def reset_engine() -> None:
    """Dispose of the global engine and forget the session factory."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """
    Session scope for one unit of work.

    Operations commit their own writes; the session is always closed.
    """
    session = get_session_factory(db_path)()
    try:
        yield session
    finally:
        session.close()


def init_db(db_path: Path | str | None = None) -> None:
    """
    Create all tables directly from the models.

    Used by tests and local runs; deployments use `run_migrations`.
    """
    from catalog_ingest.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))


def run_migrations(db_path: Path | str | None = None) -> None:
    """
    Run Alembic migrations to the latest revision.

    Raises:
        FileNotFoundError: If alembic.ini is not next to the package
    """
    project_root = Path(__file__).resolve().parents[2]
    alembic_ini = project_root / "alembic.ini"

    if not alembic_ini.exists():
        raise FileNotFoundError(f"Alembic config not found: {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("sqlalchemy.url", get_database_url(db_path))
    command.upgrade(config, "head")
