"""
Database engine and table for the persisted credential record. SQLite by default.
One row per account; token columns hold ciphertext (see keys.py), never plaintext.
"""
import os
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StoredCredential(Base):
    __tablename__ = "credentials"

    account: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    id_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # UTC, naive in SQLite
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    token_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Bearer")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


def make_engine(url: str) -> Engine:
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def init_db(engine: Engine) -> sessionmaker:
    """Create the table, restrict a SQLite file to the owner, return a session factory."""
    Base.metadata.create_all(bind=engine)
    path = engine.url.database
    if engine.url.get_backend_name() == "sqlite" and path and path != ":memory:" and os.path.exists(path):
        os.chmod(path, 0o600)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
