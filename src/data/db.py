"""Organization and snapshot-log tables, plus the shared async engine.

The snapshot log becomes a TimescaleDB hypertable when the extension is
available; plain PostgreSQL works without it.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from src.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

organizations = Table(
    "organizations",
    metadata,
    Column("id", String, primary_key=True),
    Column("owner_id", String, nullable=False, index=True),
    Column("external_id", String, nullable=False),
    Column("name", String, nullable=False, default=""),
    Column("instance_url", String, nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=True),
    Column("environment", String, nullable=False, default="production"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("needs_reconnect", Boolean, nullable=False, default=False),
    Column("last_sync_at", DateTime(timezone=True), nullable=True),
    Column("last_sync_error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("owner_id", "external_id", name="uq_organizations_owner_external"),
)

org_limit_snapshots = Table(
    "org_limit_snapshots",
    metadata,
    Column("snapshot_id", String, nullable=False),
    Column("organization_id", String, primary_key=True),
    Column("collected_at", DateTime(timezone=True), primary_key=True),
    Column("limits_data", JSONB, nullable=False),
    Column("api_requests_used", Float),
    Column("api_requests_max", Float),
    Column("api_usage_percentage", Float),
    Column("data_storage_used", Float),
    Column("data_storage_max", Float),
    Column("data_usage_percentage", Float),
    Column("file_storage_used", Float),
    Column("file_storage_max", Float),
    Column("file_usage_percentage", Float),
    Index("ix_org_limit_snapshots_org_time", "organization_id", "collected_at"),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use.

    Each concurrent tenant in a sweep holds at most one connection at a
    time, so the pool is sized from ``max_concurrent_fetches``.
    """
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        pool_size = max(settings.max_concurrent_fetches, 5)
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=pool_size,
            max_overflow=pool_size,
            pool_pre_ping=True,
        )
        log.info(
            "database_engine_created",
            host=db_url.rsplit("@", 1)[-1].split("?")[0],
            pool_size=pool_size,
        )
    return _engine


async def init_schema() -> None:
    """Create all tables and convert the snapshot log to a hypertable."""
    engine = await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

        # Savepoint so plain PostgreSQL without TimescaleDB keeps the tables.
        try:
            async with conn.begin_nested():
                await conn.execute(
                    text("CREATE EXTENSION IF NOT EXISTS timescaledb CASCADE")
                )
                await conn.execute(
                    text(
                        "SELECT create_hypertable('org_limit_snapshots', 'collected_at', "
                        "if_not_exists => TRUE, migrate_data => TRUE)"
                    )
                )
            log.info("hypertable_created", table="org_limit_snapshots")
        except Exception as exc:
            log.warning(
                "hypertable_creation_skipped", table="org_limit_snapshots", reason=str(exc),
            )

    log.info("schema_initialized")


async def close_engine() -> None:
    """Dispose the engine so the next get_engine() builds a fresh one."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
