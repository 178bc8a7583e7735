import logging

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from catalog_mirror.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create an engine for `url`.

    PostgreSQL gets a sized connection pool; SQLite gets foreign keys switched
    on for every connection so junction rows cascade with their parent.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, **kwargs)

        @event.listens_for(sqlite_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    # pool_size: base connections, max_overflow: burst connections
    # pool_recycle: recycle connections after N seconds to prevent stale connections
    # pool_pre_ping: verify connections before using them
    return create_engine(
        url,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Create all tables and indexes that do not exist yet."""
    from catalog_mirror.models import Base

    bind = bind or engine
    existing = set(inspect(bind).get_table_names())
    Base.metadata.create_all(bind=bind)
    created = sorted(set(Base.metadata.tables) - existing)
    if created:
        logger.info(f"[Database] Created tables: {', '.join(created)}")

    if bind.dialect.name == "postgresql":
        # Trigram index support for the free-text `q` filter
        with bind.begin() as conn:
            try:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS pg_trgm"))
            except Exception as e:
                logger.warning(f"[Database] pg_trgm extension unavailable: {e}")

        # Columns added after the first release
        with bind.begin() as conn:
            for stmt in (
                "ALTER TABLE IF EXISTS users ADD COLUMN IF NOT EXISTS is_admin boolean NOT NULL DEFAULT false",
            ):
                conn.execute(text(stmt))
