"""Database initialization helpers."""

from __future__ import annotations

from sqlalchemy.engine import Engine

from .db_models import Base


def init_db(engine: Engine) -> None:
    """Create job store tables when they are missing."""
    Base.metadata.create_all(engine)


__all__ = ["init_db"]
