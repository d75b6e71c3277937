"""
Database engine and session. Supports SQLite (dev) and Postgres via DATABASE_URL.

get_db is the single dependency for request-scoped DB access; the sync engine
and audit recorder open their own sessions from SessionLocal. insert_ignore
gives "insert, on conflict do nothing" on both dialects so idempotent creation
leans on unique constraints instead of check-then-act.
"""
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from gallery_storage.config import DATABASE_URL

# SQLite needs check_same_thread=False for FastAPI; Postgres does not
_connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    _connect_args["check_same_thread"] = False

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a DB session and closes it after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_ignore(db: Session, model, values: dict[str, Any], conflict_columns: list[str]) -> bool:
    """
    INSERT values into model's table, doing nothing if a row with the same
    conflict_columns already exists. Returns True if this call inserted the row.
    Does not commit.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    result = db.execute(stmt)
    return bool(result.rowcount)
