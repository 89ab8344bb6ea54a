from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI


def _validate_env() -> None:
    """
    Validate required environment variables at startup.

    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.

    Rules:
    - A PostgreSQL database URL must be configured.
    - The LLM API key is required only when ORACLE_MODE=llm and LLM_ADAPTER
      is not mock.
    - The canonical dictionary file must exist.
    """

    from db.config import load_env_files, resolve_database_url

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    try:
        database_url = resolve_database_url()
    except RuntimeError as exc:
        errors.append(str(exc))
    else:
        if not database_url.startswith("postgresql"):
            errors.append("The database URL must point at PostgreSQL (postgresql+psycopg://...).")

    # --- Oracle credentials ---------------------------------------------
    oracle_mode = os.getenv("ORACLE_MODE", "heuristic").strip().lower()
    adapter = os.getenv("LLM_ADAPTER", "openai").strip().lower()
    if oracle_mode == "llm" and adapter != "mock":
        llm_api_key = os.getenv("LLM_API_KEY", "").strip()
        openai_api_key = os.getenv("OPENAI_API_KEY", "").strip()
        if not llm_api_key and not openai_api_key:
            errors.append(
                "ORACLE_MODE=llm requires LLM_API_KEY or OPENAI_API_KEY. "
                "Use ORACLE_MODE=heuristic or LLM_ADAPTER=mock to run without one."
            )

    # --- Canonical dictionary -------------------------------------------
    from app.config import get_dictionary_settings

    dictionary_path = get_dictionary_settings().path
    if not dictionary_path.is_file():
        errors.append(f"Canonical dictionary not found at {dictionary_path}. Set CANONICAL_DICTIONARY_PATH.")

    if errors:
        raise RuntimeError(
            "Startup validation failed, missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    from app.logging_utils import configure_logging

    configure_logging()


def _check_db() -> None:
    """Open a session and run SELECT 1. Raises RuntimeError if the DB is unreachable."""
    from sqlalchemy import text

    from db.session import SessionLocal

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        raise RuntimeError("Database unavailable.") from exc


def _check_schema() -> None:
    """
    Every table registered on Base.metadata must exist in the database.
    Does NOT auto-migrate.
    """
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401
    from db.base import Base
    from db.session import get_engine

    inspector = sa_inspect(get_engine())
    missing = set(Base.metadata.tables.keys()) - set(inspector.get_table_names())

    if missing:
        logging.getLogger(__name__).critical(
            "Schema mismatch: %d table(s) absent from the database: %s. Run 'alembic upgrade head' and restart.",
            len(missing),
            ", ".join(sorted(missing)),
        )
        raise RuntimeError(
            f"Schema mismatch: {len(missing)} table(s) missing from the database "
            f"({', '.join(sorted(missing))}). Run migrations and restart."
        )


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Validate DB connectivity, schema and the dictionary on boot."""
    log = logging.getLogger(__name__)
    _check_db()
    log.info("Database connectivity confirmed")
    _check_schema()
    log.info("Database schema validated")

    from app.dictionary.dictionary_store import get_dictionary_store

    dictionary = get_dictionary_store().load()
    log.info("Canonical dictionary %s ready", dictionary.version)
    yield


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Container Reconciliation API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import (
        containers_router,
        dictionary_router,
        import_batches_router,
        shipments_router,
    )

    application.include_router(import_batches_router)
    application.include_router(containers_router)
    application.include_router(shipments_router)
    application.include_router(dictionary_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        from app.config import get_oracle_settings

        return {"status": "ok", "oracle_mode": get_oracle_settings().mode}

    return application


app = create_app()
