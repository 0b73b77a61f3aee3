"""Database initialization and persistence layer."""

from catalog_ingest.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
)
from catalog_ingest.db.models import (
    Base,
    CanonicalEntityMappingDB,
    IngestionEntityDB,
    IngestionEntitySnapshotDB,
    IngestionJobDB,
    IngestionRunDB,
    IngestionSourceDB,
    OfferDB,
    PriceHistoryDB,
    ProductDB,
    RetailerDB,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    # Models
    "Base",
    "RetailerDB",
    "ProductDB",
    "OfferDB",
    "PriceHistoryDB",
    "IngestionSourceDB",
    "IngestionRunDB",
    "IngestionJobDB",
    "IngestionEntityDB",
    "IngestionEntitySnapshotDB",
    "CanonicalEntityMappingDB",
]
