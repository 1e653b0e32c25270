"""DB helpers for tests: bootstrap a temporary SQLite DB and seed taxonomy."""

from __future__ import annotations

from pathlib import Path

from db import Base
from db.client import get_engine, session_scope
from pnl_categorizer.persistence import seed_taxonomy


def bootstrap_sqlite_db(db_file: Path, *, seed: bool = True) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)
    Base.metadata.create_all(bind=engine)
    if seed:
        with session_scope(database_url=url) as session:
            seed_taxonomy(session)
    return url
