"""Database engine builder.

- Default pool: NullPool (connection pooling left to pgbouncer / the platform)
- ENV: CWB_DB_POOL=nullpool|queuepool (default: nullpool)
- SQLite (tests, local tooling): check_same_thread disabled
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If no URL is available or CWB_DB_POOL is unknown.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        app_name = os.getenv("CWB_DB_APPLICATION_NAME", "cwb-api")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("CWB_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("CWB_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("CWB_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid CWB_DB_POOL value: {pool_mode!r}. Expected 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "DB_ENGINE_BUILT",
        extra={"url": _mask_password(url), "pool_mode": pool_mode},
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """
    Build SQLAlchemy sessionmaker (autocommit=False, autoflush=False).

    Examples:
        >>> SessionLocal = build_sessionmaker(build_engine())
        >>> with SessionLocal() as session:
        ...     # use session
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
