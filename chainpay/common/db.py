"""Database bootstrap helpers shared by all workers."""

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from chainpay.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in workers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from drivers that drop tzinfo."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dialect_insert(db, model):
    """Return an INSERT construct supporting `ON CONFLICT` for the bound dialect."""

    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
