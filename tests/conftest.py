"""
tests/conftest.py

Shared fixtures: an in-memory SQLite store with savepoint support, the
shipped canonical dictionary, and a writable dictionary store per test.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.dictionary.dictionary_store import DictionaryStore, load_dictionary_file
from db.base import Base

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DICTIONARY_PATH = PROJECT_ROOT / "dictionaries" / "container_ontology.yml"


def _sqlite_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="session")
def dictionary() -> CanonicalDictionary:
    return load_dictionary_file(DICTIONARY_PATH)


@pytest.fixture()
def dictionary_path(tmp_path: Path) -> Path:
    target = tmp_path / "container_ontology.yml"
    shutil.copyfile(DICTIONARY_PATH, target)
    return target


@pytest.fixture()
def dictionary_store(dictionary_path: Path) -> DictionaryStore:
    return DictionaryStore(dictionary_path)
