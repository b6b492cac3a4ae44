"""
Database setup and connection management for LogDeck.

This module handles:
- SQLAlchemy engine creation (SQLite file by default)
- Session management
- Idempotent table creation
- Fallback to in-memory SQLite when the configured database is unreachable
"""

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from pathlib import Path
from typing import Generator, Optional
import os
import logging

import dotenv

from store.models import Base

logger = logging.getLogger(__name__)

dotenv.load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./data/logdeck.db"


class DatabaseConfig:
    """Configuration for database connections"""

    def __init__(self, connection_string: Optional[str] = None):
        self.connection_string = connection_string or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

        # Connection pooling (ignored for SQLite)
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "20"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1500"))

        # SQLite lock wait, seconds
        self.busy_timeout = int(os.getenv("DB_BUSY_TIMEOUT", "30"))

        self.echo = os.getenv("DB_ECHO", "False").lower() == "true"

        logger.info(f"Database config: url={make_url(self.connection_string).render_as_string(hide_password=True)}")


class DatabaseManager:
    """
    Manages database connections and session lifecycle.

    Usage:
        DatabaseManager.initialize()
        session = DatabaseManager.create_session()
        try:
            ...
        finally:
            session.close()
    """

    _engine = None
    _SessionLocal = None
    _db_type = None
    _database_path = None

    @classmethod
    def initialize(cls, config: DatabaseConfig = None):
        """
        Initialize database engine and session factory.

        Uses the configured URL; falls back to in-memory SQLite if the
        database cannot be opened so the console can still start.
        """
        if cls._engine is not None:
            logger.warning("DatabaseManager already initialized")
            return

        if config is None:
            config = DatabaseConfig()

        logger.info("Initializing database...")

        try:
            cls._engine = cls._create_engine(config)
            with cls._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            logger.warning("Falling back to SQLite in-memory database")
            if cls._engine is not None:
                cls._engine.dispose()
            cls._engine = create_engine(
                "sqlite:///:memory:",
                echo=config.echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            cls._db_type = "sqlite"
            cls._database_path = None

        cls._SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=cls._engine,
            expire_on_commit=False
        )

        cls.create_tables()
        logger.info(f"Database initialized ({cls._db_type})")

    @classmethod
    def _create_engine(cls, config: DatabaseConfig):
        """Create SQLAlchemy engine for the configured URL"""
        url = make_url(config.connection_string)

        if url.get_backend_name() != "sqlite":
            cls._db_type = url.get_backend_name()
            cls._database_path = None
            return create_engine(
                config.connection_string,
                pool_size=config.pool_size,
                max_overflow=config.max_overflow,
                pool_recycle=config.pool_recycle,
                pool_pre_ping=True,
                echo=config.echo,
            )

        cls._db_type = "sqlite"
        database = url.database
        if not database or database == ":memory:":
            cls._database_path = None
            return create_engine(
                "sqlite:///:memory:",
                echo=config.echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )

        path = Path(database).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        cls._database_path = str(path)

        engine = create_engine(
            f"sqlite:///{path}",
            echo=config.echo,
            connect_args={"check_same_thread": False, "timeout": config.busy_timeout},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        return engine

    @classmethod
    def create_tables(cls):
        """
        Create all tables if they don't exist (IDEMPOTENT).
        Tables are created in dependency order.
        """
        if cls._engine is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        try:
            inspector = inspect(cls._engine)
            existing_tables = set(inspector.get_table_names())

            for table in Base.metadata.sorted_tables:
                if table.name not in existing_tables:
                    table.create(cls._engine, checkfirst=True)
                    existing_tables.add(table.name)
                    logger.info(f"Created table: {table.name}")
                else:
                    logger.debug(f"Table already exists: {table.name}")
        except Exception as e:
            logger.error(f"Error creating tables: {e}")
            raise

    @classmethod
    def create_session(cls) -> Session:
        """Open a new session; the caller closes it"""
        if cls._SessionLocal is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return cls._SessionLocal()

    @classmethod
    def get_session(cls) -> Generator[Session, None, None]:
        """
        FastAPI dependency for getting a database session.

        Usage in FastAPI:

        @router.get("/api/logs")
        async def logs(db: Session = Depends(DatabaseManager.get_session)):
            ...
        """
        session = cls.create_session()
        try:
            yield session
            try:
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Commit failed: {e}")
                raise
        except Exception as e:
            try:
                session.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            logger.error(f"Session error: {e}")
            raise
        finally:
            session.close()

    @classmethod
    def health_check(cls) -> bool:
        """Check if database is healthy"""
        try:
            if cls._SessionLocal is None:
                return False

            session = cls._SessionLocal()
            try:
                session.execute(text("SELECT 1"))
            finally:
                session.close()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @classmethod
    def get_engine(cls):
        """Get the SQLAlchemy engine (for backups, admin tasks)"""
        if cls._engine is None:
            raise RuntimeError("Database not initialized")
        return cls._engine

    @classmethod
    def get_database_path(cls) -> Optional[str]:
        """Filesystem path of the SQLite database, or None"""
        return cls._database_path

    @classmethod
    def is_using_sqlite(cls) -> bool:
        return cls._db_type == "sqlite"

    @classmethod
    def dispose(cls):
        """Close pooled connections (before restoring a backup)"""
        if cls._engine is not None:
            cls._engine.dispose()

    @classmethod
    def reset(cls):
        """Forget the engine so initialize() can run again (tests)"""
        if cls._engine is not None:
            cls._engine.dispose()
        cls._engine = None
        cls._SessionLocal = None
        cls._db_type = None
        cls._database_path = None


# ============ Session helpers ============

def get_db_session() -> Session:
    """Session for managers that handle their own transaction"""
    return DatabaseManager.create_session()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.post("/api/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            ...
    """
    yield from DatabaseManager.get_session()
