"""Shared fixtures: a temporary SQLite database and a small seeded catalog."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from catalog_ingest.db.models import Base, OfferDB, ProductDB, RetailerDB
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.registry import SourceRegistry


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def other_session(session_factory):
    """A second session, standing in for a concurrent worker."""
    other = session_factory()
    yield other
    other.close()


@pytest.fixture
def before_next_flush():
    """Schedule a callable to run once, just before a session's next flush."""

    def _schedule(session: Session, action) -> None:
        event.listen(session, "before_flush", lambda *args: action(), once=True)

    return _schedule


@pytest.fixture
def registry() -> SourceRegistry:
    """Registry with the two retailers the extractor registry knows about."""
    registry = SourceRegistry()
    registry.load_dict(
        {
            "global": {"fetch_concurrency": 2, "refresh_window_hours": 20},
            "retailers": [
                {
                    "slug": "amazon",
                    "domains": ["amazon.com"],
                    "search_query_params": ["k", "field-keywords"],
                },
                {"slug": "buceplant", "domains": ["buceplant.com"]},
                {"slug": "plantshop", "domains": ["plantshop.example"]},
            ],
        }
    )
    return registry


@pytest.fixture
def make_offer(session: Session):
    """Factory creating an offer (with retailer and product) and returning its id."""
    retailers: dict[str, str] = {}
    counter = {"n": 0}

    def _make(
        url: str = "https://plantshop.example/products/monstera",
        retailer_slug: str = "plantshop",
        price_cents: int | None = 1500,
        in_stock: bool = True,
        product_status: str = "active",
        last_checked_at: datetime | None = None,
        updated_at: datetime | None = None,
        product_image_url: str | None = None,
    ) -> str:
        counter["n"] += 1
        if retailer_slug not in retailers:
            retailer = RetailerDB(slug=retailer_slug, name=retailer_slug.title())
            session.add(retailer)
            session.flush()
            retailers[retailer_slug] = retailer.id

        product = ProductDB(
            slug=f"product-{counter['n']}",
            name=f"Product {counter['n']}",
            status=product_status,
        )
        session.add(product)
        session.flush()

        offer = OfferDB(
            product_id=product.id,
            retailer_id=retailers[retailer_slug],
            url=url,
            price_cents=price_cents,
            currency="USD",
            in_stock=in_stock,
            product_image_url=product_image_url,
            last_checked_at=last_checked_at,
            updated_at=updated_at or utc_now() - timedelta(days=2),
        )
        session.add(offer)
        session.commit()
        return offer.id

    return _make
