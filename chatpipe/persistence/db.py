from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from chatpipe.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    # Stores open one short session per call, so a worker needs about one connection per concurrent job.
    pool_size = settings.db_pool_size or settings.worker_max_jobs
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        # Bounded wait for a connection; a timeout fails the job into its retry path.
        "pool_timeout": max(1, int(settings.db_pool_timeout_s)),
        "pool_recycle": 1800,
    }
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {
                "statement_timeout": str(int(settings.db_statement_timeout_ms)),
                "application_name": settings.app_name,
            }
        }
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **engine_options(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
