"""
app/repositories/container_repository.py

Lock-aware persistence for canonical container records.

Every automated write goes through ``strip_locked`` before touching a row.
Read-modify-write on one identity runs under the process-wide keyed mutex
plus ``SELECT ... FOR UPDATE`` on the existing row. A first insert that
loses a race to another process falls back to that process's row.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.concurrency import identity_locks
from app.mappers.lifecycle import ensure_utc
from db.models.container import (
    CONTAINER_DATA_FIELDS,
    CONTAINER_DERIVED_FIELDS,
    CONTAINER_EXCEPTION_FIELDS,
    Container,
)

_WRITABLE_FIELDS = frozenset(CONTAINER_DATA_FIELDS + CONTAINER_DERIVED_FIELDS + CONTAINER_EXCEPTION_FIELDS)


def strip_locked(payload: Mapping[str, Any], locked_fields: Iterable[str] | None) -> dict[str, Any]:
    """
    Return ``payload`` without any key present in ``locked_fields``.
    """

    locked = set(locked_fields or ())
    return {key: value for key, value in payload.items() if key not in locked}


def identity_lock_key(kind: str, key: str) -> str:
    return f"{kind}:{key}"


def apply_manual_fields(record: Any, payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Write ``payload`` onto a lockable record regardless of its locks and lock
    every written field. Returns the previous values.
    """

    previous: dict[str, Any] = {}
    for name, value in payload.items():
        previous[name] = getattr(record, name)
        setattr(record, name, value)
    record.locked_fields = sorted(set(record.locked_fields or ()) | set(payload))
    return previous


def remove_locks(record: Any, fields: Iterable[str]) -> list[str]:
    to_remove = set(fields)
    current = list(record.locked_fields or ())
    removed = [name for name in current if name in to_remove]
    record.locked_fields = [name for name in current if name not in to_remove]
    return removed


@dataclass(frozen=True)
class FieldWrite:
    written_fields: tuple[str, ...]
    skipped_locked_fields: tuple[str, ...]


@dataclass(frozen=True)
class ContainerUpsert:
    container: Container
    created: bool
    written_fields: tuple[str, ...]
    skipped_locked_fields: tuple[str, ...]


def _same_value(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) and isinstance(new, datetime):
        return ensure_utc(current) == ensure_utc(new)
    return current == new


def container_snapshot(container: Container) -> dict[str, Any]:
    """
    Plain dict of the canonical and derived values of one container.
    """

    snapshot: dict[str, Any] = {"container_number": container.container_number}
    for name in CONTAINER_DATA_FIELDS + CONTAINER_DERIVED_FIELDS + CONTAINER_EXCEPTION_FIELDS:
        value = getattr(container, name)
        snapshot[name] = ensure_utc(value) if isinstance(value, datetime) else value
    return snapshot


class ContainerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_number(self, container_number: str, *, for_update: bool = False) -> Container | None:
        stmt: Select[tuple[Container]] = select(Container).where(Container.container_number == container_number)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def list_containers(
        self,
        *,
        limit: int = 100,
        has_exception: bool | None = None,
        business_unit: str | None = None,
    ) -> list[Container]:
        stmt: Select[tuple[Container]] = select(Container)
        if has_exception is not None:
            stmt = stmt.where(Container.has_exception == has_exception)
        if business_unit:
            stmt = stmt.where(Container.business_unit == business_unit)
        stmt = stmt.order_by(Container.container_number.asc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def upsert(
        self,
        *,
        container_number: str,
        payload: Mapping[str, Any],
        metadata_updates: Mapping[str, Any] | None = None,
        import_batch_id: str | None = None,
    ) -> ContainerUpsert:
        """
        Create or update one container. ``None`` values never clear a field.
        """

        with identity_locks.hold(identity_lock_key("container", container_number)):
            container = self.get_by_number(container_number, for_update=True)
            created = False
            if container is None:
                container, created = self._insert(container_number)

            values = {key: value for key, value in payload.items() if value is not None}
            write = self.write_fields(container, values)
            if metadata_updates:
                self.merge_metadata(container, metadata_updates)
            if import_batch_id is not None:
                container.last_import_batch_id = import_batch_id
            self._session.flush()

        return ContainerUpsert(
            container=container,
            created=created,
            written_fields=write.written_fields,
            skipped_locked_fields=write.skipped_locked_fields,
        )

    def _insert(self, container_number: str) -> tuple[Container, bool]:
        """
        Insert a new identity inside a savepoint. When a concurrent session
        committed the same key first, lock and return its row instead.
        """

        container = Container(container_number=container_number, locked_fields=[], metadata_json={})
        try:
            with self._session.begin_nested():
                self._session.add(container)
                self._session.flush()
        except IntegrityError:
            existing = self.get_by_number(container_number, for_update=True)
            if existing is None:
                raise
            return existing, False
        return container, True

    def write_fields(self, container: Container, payload: Mapping[str, Any]) -> FieldWrite:
        """
        The automated write site: locked fields and unknown columns are
        never touched. Only changed values are reported as written.
        """

        known = {key: value for key, value in payload.items() if key in _WRITABLE_FIELDS}
        allowed = strip_locked(known, container.locked_fields)
        skipped = tuple(sorted(set(known) - set(allowed)))

        written: list[str] = []
        for name, value in allowed.items():
            if _same_value(getattr(container, name), value):
                continue
            setattr(container, name, value)
            written.append(name)
        return FieldWrite(written_fields=tuple(written), skipped_locked_fields=skipped)

    def write_manual_fields(self, container: Container, payload: Mapping[str, Any]) -> dict[str, Any]:
        """
        Human edit path: writes regardless of locks and locks every field it
        writes. Returns the previous values.
        """

        return apply_manual_fields(container, payload)

    def unlock_fields(self, container: Container, fields: Iterable[str]) -> list[str]:
        return remove_locks(container, fields)

    @staticmethod
    def merge_metadata(container: Container, updates: Mapping[str, Any]) -> dict[str, Any]:
        """
        Shallow merge; nested dicts one level down are merged too. Always
        assigns a new dict so the JSON column is flagged dirty.
        """

        merged = dict(container.metadata_json or {})
        for key, value in updates.items():
            existing = merged.get(key)
            if isinstance(existing, dict) and isinstance(value, Mapping):
                merged[key] = {**existing, **value}
            else:
                merged[key] = value
        container.metadata_json = merged
        return merged

    @staticmethod
    def set_metadata(container: Container, key: str, value: Any) -> dict[str, Any]:
        """
        Replace one top-level metadata entry.
        """

        updated = dict(container.metadata_json or {})
        updated[key] = value
        container.metadata_json = updated
        return updated
