"""
Database engine and session factory.

The API, the rule engine worker pool and the recovery worker all share one
engine. Request handlers get a session through :func:`get_db`; background code
opens sessions directly with ``with SessionLocal() as db``.
"""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Workflow workers and channel consumers use sessions off the request thread.
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=_env_int("DB_POOL_SIZE", 5),
        max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
        pool_recycle=_env_int("DB_POOL_RECYCLE_SEC", 1800),
        pool_timeout=_env_int("DB_POOL_TIMEOUT_SEC", 30),
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=True, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
