"""
Database engine and session management.

PostgreSQL in production; SQLite for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from typing import Generator, Dict, Any
from urllib.parse import urlparse
import time

from daybot.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        if self.is_sqlite:
            in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
            # In-memory databases live on a single shared connection
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
                poolclass=StaticPool if in_memory else None,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self):
        """Create all tables."""
        # Importing the repository registers every model on Base.metadata
        import daybot.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    def ping(self) -> bool:
        """Round-trip a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on clean exit, rolls back on any exception.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Database | None = None


def get_db() -> Database:
    """Get or create the global database instance."""
    global _db_instance
    if _db_instance is None:
        from daybot.utils.secret_manager import get_database_url

        database_url = get_database_url()
        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname or "local",
            database=parsed.path.lstrip("/") or "memory",
            has_password=bool(parsed.password),
        )

        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL.

    Args:
        database_url: postgresql:// or sqlite:// connection string

    Returns:
        Database instance
    """
    global _db_instance
    _db_instance = Database(database_url)
    _db_instance.create_all()
    return _db_instance


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs ``POOL_CHECKOUT`` / ``POOL_CHECKIN`` at debug and ``POOL_INVALIDATE``
    at warning.
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT", checked_out=pool.checkedout())

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms, checked_out=pool.checkedout())

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)


def get_pool_status() -> Dict[str, Any]:
    """
    Snapshot of connection-pool health for the health endpoint.

    Empty when the database is not initialised or is SQLite.
    """
    if _db_instance is None or _db_instance.is_sqlite:
        return {}
    pool = _db_instance.engine.pool
    return {
        "pool_size": pool.size(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
        "checked_in": pool.checkedin(),
    }
