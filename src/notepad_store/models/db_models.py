"""SQLAlchemy database models for the NotePad store."""
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

from sqlalchemy import (Column, DateTime, ForeignKey, String, Table, Text,
                        create_engine, event, inspect, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from notepad_store.config import config
from notepad_store.exceptions import ErrorCode, StoreOpenError
from notepad_store.models.schema import TagColor, utc_now
from notepad_store.utils import fold_text

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column(
        "note_id",
        String(64),
        ForeignKey("notes.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        String(64),
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    creation_date = Column(DateTime, default=utc_now, nullable=False, index=True)

    # Relationships
    tags = relationship(
        "DBTag", secondary=note_tags, back_populates="notes", collection_class=set
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True, index=True)
    color = Column(
        String(16),
        default=TagColor.GRAY.value,
        server_default=TagColor.GRAY.value,
        nullable=False,
    )

    # Relationships
    notes = relationship(
        "DBNote", secondary=note_tags, back_populates="tags", collection_class=set
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id='{self.id}', name='{self.name}', color='{self.color}')>"


def create_store_engine(database_path: Optional[Path] = None) -> Engine:
    """Create an engine with hardened SQLite configuration.

    Applies SQLite settings for crash resilience and concurrent handles:
    - WAL (Write-Ahead Logging) mode so readers never block the writer
    - NORMAL synchronous mode (good balance of safety vs speed)
    - foreign_keys=ON so join rows cascade with their parents
    - busy timeout so a background writer waits instead of failing at once
    - a ``fold`` SQL function used by case/diacritic-insensitive search
    """
    engine = create_engine(
        config.get_db_url(database_path),
        poolclass=QueuePool,
        pool_size=5,           # Primary handle plus a few background handles
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        connect_args={"timeout": config.busy_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.create_function("fold", 1, fold_text, deterministic=True)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(database_path: Optional[Path] = None) -> Engine:
    """Open (creating if needed) and migrate the store database.

    Raises:
        StoreOpenError: The file is unreadable, not a database, or its
            schema cannot be brought up to date.
    """
    db_path = config.get_absolute_path(database_path or config.database_path)
    try:
        engine = create_store_engine(database_path)
        with engine.connect() as conn:
            result = conn.execute(text("PRAGMA quick_check")).scalar()
            if result != "ok":
                raise StoreOpenError(
                    f"Database integrity check failed: {result}",
                    path=str(db_path),
                )
        Base.metadata.create_all(engine)
    except StoreOpenError:
        raise
    except (SQLAlchemyError, sqlite3.Error, OSError) as e:
        raise StoreOpenError(
            f"Failed to open store: {e}", path=str(db_path), original_error=e
        ) from e

    _migrate_add_missing_columns(engine)
    return engine


def _migrate_add_missing_columns(engine: Engine) -> List[str]:
    """Migration: add model columns missing from existing tables.

    Only additive changes are handled. Each added column must be nullable
    or carry a server default so existing rows stay valid. This is
    idempotent and safe to run multiple times.

    Returns:
        "table.column" names that were added.
    """
    from alembic.migration import MigrationContext
    from alembic.operations import Operations

    added: List[str] = []
    try:
        inspector = inspect(engine)
        with engine.begin() as conn:
            ops = Operations(MigrationContext.configure(conn))
            for table in Base.metadata.sorted_tables:
                existing = {col["name"] for col in inspector.get_columns(table.name)}
                for column in table.columns:
                    if column.name in existing:
                        continue
                    if not column.nullable and column.server_default is None:
                        raise StoreOpenError(
                            f"Cannot add required column {table.name}.{column.name} "
                            "without a server default",
                            code=ErrorCode.SCHEMA_MIGRATION_FAILED,
                        )
                    ops.add_column(
                        table.name,
                        Column(
                            column.name,
                            column.type,
                            nullable=column.nullable,
                            server_default=(
                                column.server_default.arg
                                if column.server_default is not None
                                else None
                            ),
                        ),
                    )
                    added.append(f"{table.name}.{column.name}")
    except StoreOpenError:
        raise
    except SQLAlchemyError as e:
        raise StoreOpenError(
            f"Schema migration failed: {e}",
            code=ErrorCode.SCHEMA_MIGRATION_FAILED,
            original_error=e,
        ) from e

    if added:
        logger.info(f"Migrated schema, added columns: {', '.join(added)}")
    return added


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
