"""Database engine builder.

Pool policy:
- Default: NullPool (client-side pooling disabled, safe behind pgbouncer)
- PAYRECON_DB_POOL=queuepool: QueuePool for long-lived local processes
- SQLite URLs are accepted for tests and local tooling
"""

import logging
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_POOL_MODES = {"nullpool", "queuepool"}


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(
    database_url: str,
    pool_mode: str = "nullpool",
    pool_size: int = 5,
    max_overflow: int = 10,
    application_name: str = "payrecon",
) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL (Settings.database_url)
        pool_mode: "nullpool" (default) | "queuepool"
        pool_size: QueuePool size (queuepool only)
        max_overflow: QueuePool overflow (queuepool only)
        application_name: Postgres connection tag for observability

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If database_url is empty or pool_mode is unknown.
    """
    if not database_url:
        raise ValueError("database_url is required")

    pool_mode = pool_mode.lower()
    if pool_mode not in _POOL_MODES:
        raise ValueError(
            f"Invalid PAYRECON_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    connect_args: dict[str, Any] = {}
    if database_url.startswith("postgresql") and application_name:
        connect_args["application_name"] = application_name

    if pool_mode == "nullpool":
        engine = create_engine(
            database_url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    else:
        engine = create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            connect_args=connect_args,
        )

    # DO NOT log full URL with password
    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(database_url),
    )

    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """
    Build SQLAlchemy sessionmaker.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        sessionmaker configured with autocommit=False, autoflush=False.
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def dialect_insert(db: Session):
    """``insert`` construct with ON CONFLICT support for the session's dialect."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on dialect {name!r}")
