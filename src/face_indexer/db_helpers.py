"""Shared helpers for database URLs and dialect-aware upserts."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session


def normalize_database_url(target: str | Path) -> str:
    """Turn a path or URL into an absolute SQLAlchemy URL.

    Bare paths become SQLite URLs; relative SQLite database paths are resolved
    against the working directory so every thread agrees on the same file.
    """

    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")

    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        database = url.database or ""
        if database not in {":memory:", ""}:
            db_path = Path(database)
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            url = url.set(database=str(db_path))
        return url.render_as_string(hide_password=False)

    return raw


def upsert_statement(session: Session, table: Any) -> Any:
    """Return an INSERT supporting ``on_conflict_do_update`` for the session's dialect."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


__all__ = ["normalize_database_url", "upsert_statement"]
