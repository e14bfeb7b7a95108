"""Application configuration for the optimization engine.

Jobs are polled every 5 seconds by default and the dispatcher submits batches
of 10 queued images. Jobs waiting for approval expire after 7 days. Secrets
and endpoints are injected via environment variables prefixed with
``OPTIMIZER_``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .db.db_init import init_db

DEFAULT_AI_MODEL = "flux-kontext-pro"


class AppConfig(BaseSettings):
    """Pydantic settings container for the engine and its collaborators."""

    model_config = SettingsConfigDict(env_prefix="OPTIMIZER_", env_file=".env", extra="ignore")

    database_url: str = Field(
        default="sqlite:///optimizer.db",
        description="SQLAlchemy URL of the job store (PostgreSQL in production).",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Interval between reconciliation polls of an observed job or queue.",
    )
    dispatch_batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of queued items submitted per dispatch invocation.",
    )
    dispatch_concurrency: int = Field(
        default=5,
        ge=1,
        description="Upper bound on simultaneous submission/push calls.",
    )
    dispatch_loop_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Interval of the background loop that dispatches, pushes and expires jobs.",
    )
    dispatch_loop_enabled: bool = Field(
        default=True,
        description="Start the background dispatch loop with the HTTP application.",
    )
    approval_window_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        ge=60,
        description="How long a job may wait in awaiting_approval before it is cancelled.",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum number of processing attempts per item, retries included.",
    )
    retry_backoff_base_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Base delay before a failed item may be retried (doubles per attempt).",
    )
    default_ai_model: str = Field(
        default=DEFAULT_AI_MODEL,
        description="Model used when a job does not request one explicitly.",
    )
    supported_models: List[str] = Field(
        default_factory=lambda: [DEFAULT_AI_MODEL, "gpt4o-image", "nano-banana-edit"],
        description="Target models accepted by the processing backend.",
    )
    presets: Dict[str, str] = Field(
        default_factory=dict,
        description="Mapping of preset identifiers to their compiled prompt text.",
    )
    allowed_owner_refs: List[str] = Field(
        default_factory=list,
        description="Destinations the engine may target; empty allows every owner.",
    )
    processing_backend_url: str = Field(
        default="http://localhost:8081/api/v1/optimize",
        description="Submission endpoint of the processing backend.",
    )
    processing_backend_api_key: str = Field(
        default="",
        description="Bearer token for the processing backend.",
    )
    processing_callback_url: str = Field(
        default="http://localhost:8000/api/callbacks/processing",
        description="URL the processing backend calls when an item finishes.",
    )
    destination_url: str = Field(
        default="http://localhost:8082/api/v1/images",
        description="Delivery endpoint of the destination integration.",
    )
    destination_api_key: str = Field(
        default="",
        description="Bearer token for the destination integration.",
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        ge=0.1,
        description="Timeout applied to outbound submission and push requests.",
    )

    @classmethod
    def build_default(cls) -> "AppConfig":
        """Construct configuration from the environment with reference defaults."""

        return cls()


@dataclass(slots=True)
class Database:
    engine: Engine
    session_factory: sessionmaker[Session]


def _is_memory_sqlite(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"}


def build_database(database_url: str, *, create_schema: bool = True) -> Database:
    """Create the engine and session factory (SQLite by default)."""
    if _is_memory_sqlite(database_url):
        engine = create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(
            database_url, future=True, connect_args={"check_same_thread": False}
        )
    else:
        engine = create_engine(database_url, future=True, pool_pre_ping=True)
    session_factory: sessionmaker[Session] = sessionmaker(bind=engine, expire_on_commit=False)
    if create_schema:
        init_db(engine)
    return Database(engine=engine, session_factory=session_factory)


__all__ = ["AppConfig", "DEFAULT_AI_MODEL", "Database", "build_database"]
