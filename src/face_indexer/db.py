"""SQLAlchemy schema and session management for the metadata store."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import Float, Index, Integer, String, Text, UniqueConstraint, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from face_indexer.db_helpers import normalize_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__)

STATUS_INDEXED = "indexed"
STATUS_ERROR = "error"
STATUS_PROCESSING = "processing"
RECORD_STATUSES: tuple[str, ...] = (STATUS_INDEXED, STATUS_ERROR, STATUS_PROCESSING)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class IndexRecord(Base):
    """Durable outcome of indexing one photo of an event."""

    __tablename__ = "indexed_photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String, nullable=False)
    normalized_id: Mapped[str] = mapped_column(String(255), nullable=False)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    full_path: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, nullable=False)
    collection_id: Mapped[str] = mapped_column(String(100), nullable=False)
    face_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_INDEXED)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    indexed_at: Mapped[float] = mapped_column(Float, nullable=False)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "normalized_id", name="uq_indexed_photos_event_photo"),
        Index("idx_indexed_photos_event_status", "event_id", "status"),
        Index("idx_indexed_photos_collection", "collection_id"),
    )


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached engine for ``target``, creating the schema on first use."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: dict[str, object] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database != ":memory:":
                _ensure_parent_directory(Path(sa_url.database))
            # Worker threads share the engine; each opens its own session.
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for concurrent writers."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Two processes may race on CREATE TABLE against the same SQLite file.
            if "already exists" in str(exc).lower():
                LOGGER.info("db_create_all_table_exists_race", extra={"target": normalized, "error": str(exc)})
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session on the metadata store."""

    return Session(get_engine(target))


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""

    with _ENGINE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


__all__ = [
    "Base",
    "IndexRecord",
    "RECORD_STATUSES",
    "STATUS_ERROR",
    "STATUS_INDEXED",
    "STATUS_PROCESSING",
    "dispose_engines",
    "get_engine",
    "open_session",
]
