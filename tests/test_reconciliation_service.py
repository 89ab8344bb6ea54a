"""
tests/test_reconciliation_service.py

Reconciliation engine against an in-memory SQLite store.

Coverage
--------
- Rows without an identity key are dropped and counted, never persisted
- Re-running a batch converges to the same records and events
- Authoritative dates override free-text status
- Unmapped source values land in the metadata envelope
- Human-locked fields survive later imports
- Shipment linking, event de-duplication, business unit derivation
- A failing row is recorded and never aborts the batch
- A first insert that loses a race merges into the existing row
- Chunk size never changes records, events or counters
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import ReconciliationSettings
from app.connectors.base import InMemoryRowSource
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.domain.reconciliation import ReconcileResult
from app.mappers.lifecycle import ensure_utc
from app.repositories.container_repository import ContainerRepository, container_snapshot
from app.repositories.event_log_repository import LifecycleEventRepository
from app.repositories.shipment_repository import ShipmentRepository
from app.services.archive_service import ArchiveService
from app.services.manual_edit_service import ManualEditService
from app.services.reconciliation_service import (
    ReconciliationService,
    derive_business_unit,
    stage_event_time,
)
from db.base import Base
from db.models.container import Container
from db.models.lifecycle_event import LifecycleEvent
from db.models.raw_row import RawRow
from db.models.shipment import Shipment
from db.repositories.import_batch_repository import ImportBatchRepository
from factories import NOW, make_source, shipment_row
from oracle.heuristic import HeuristicClassificationOracle


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def service() -> ReconciliationService:
    return ReconciliationService(
        oracle=HeuristicClassificationOracle(),
        settings=ReconciliationSettings(chunk_size=3, audit_workers=1),
    )


def _run(
    db: Session,
    service: ReconciliationService,
    dictionary: CanonicalDictionary,
    batch_id: str,
    source: InMemoryRowSource,
) -> ReconcileResult:
    archived = ArchiveService().archive(db=db, batch_id=batch_id, row_batch=source.read())
    db.commit()
    return service.reconcile(
        db=db,
        batch_id=batch_id,
        headers=archived.headers,
        rows=archived.rows,
        dictionary=dictionary,
        now=NOW,
    )


def _container(db: Session, number: str) -> Container:
    container = ContainerRepository(db).get_by_number(number)
    assert container is not None
    return container


def _count(db: Session, model: Any) -> int:
    return db.scalar(select(func.count()).select_from(model)) or 0


# ---------------------------------------------------------------------------
# Identity and drops
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_rows_without_identity_are_dropped_and_counted(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        rows = [shipment_row(f"MSKU{1000000 + index}") for index in range(8)]
        rows.insert(3, shipment_row(None))
        rows.insert(7, shipment_row("n/a"))

        result = _run(db_session, service, dictionary, "batch-ten", make_source(rows))

        assert len(result.records) == 8
        assert result.mapping_report.unmapped_row_count == 2
        assert {row.row_index for row in result.mapping_report.dropped_rows} == {3, 7}
        assert _count(db_session, Container) == 8
        # Dropped rows stay in the raw archive.
        assert _count(db_session, RawRow) == 10

        batch = ImportBatchRepository(db_session).get_batch("batch-ten")
        assert batch is not None
        assert batch.rows_processed == 10
        assert batch.rows_succeeded == 8
        assert batch.rows_unmapped == 2

    def test_identity_is_normalized(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-norm", make_source([shipment_row("msku-123 4567")]))
        assert _container(db_session, "MSKU1234567").carrier == "Maersk"

    def test_same_identity_in_one_batch_merges(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        rows = [
            shipment_row("MSKU1234567", Carrier="Maersk"),
            shipment_row("msku 1234567", Carrier=None, POD="Long Beach"),
        ]
        result = _run(db_session, service, dictionary, "batch-merge", make_source(rows))

        container = _container(db_session, "MSKU1234567")
        assert _count(db_session, Container) == 1
        assert container.carrier == "Maersk"
        assert container.pod == "Long Beach"
        assert [record.created for record in result.records] == [True, False]


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    def test_rerunning_a_batch_converges(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        rows = [shipment_row("MSKU1234567"), shipment_row("TGHU7654321", Status="Discharged")]
        source = make_source(rows)

        first = _run(db_session, service, dictionary, "batch-idem", source)
        snapshot = {
            number: (c.carrier, c.current_status, c.pod)
            for number, c in ((n, _container(db_session, n)) for n in ("MSKU1234567", "TGHU7654321"))
        }
        events_after_first = _count(db_session, LifecycleEvent)

        second = _run(db_session, service, dictionary, "batch-idem", source)

        assert _count(db_session, Container) == 2
        assert _count(db_session, RawRow) == 2
        assert _count(db_session, LifecycleEvent) == events_after_first
        assert len(first.events) == 2
        assert second.events == []
        assert all(not record.created for record in second.records)
        for number, values in snapshot.items():
            container = _container(db_session, number)
            assert (container.carrier, container.current_status, container.pod) == values

    def test_none_never_clears_a_stored_value(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-a", make_source([shipment_row("MSKU1234567")]))
        _run(db_session, service, dictionary, "batch-b", make_source([shipment_row("MSKU1234567", ETA=None)]))

        assert ensure_utc(_container(db_session, "MSKU1234567").eta) == datetime(2026, 11, 2, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Stage, events and health
# ---------------------------------------------------------------------------


class TestStageAndEvents:
    def test_delivery_date_overrides_status_text(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        row = shipment_row("MSKU1234567", Status="Arrived", **{"Delivery Date": "2026-10-10"})
        result = _run(db_session, service, dictionary, "batch-del", make_source([row]))

        container = _container(db_session, "MSKU1234567")
        assert container.current_status == "DEL"
        assert container.status_text == "Arrived"
        assert container.attention_category == "Resolved"
        assert container.operational_status == "Delivered"
        assert result.events[0].stage == "DEL"
        assert result.events[0].event_time == datetime(2026, 10, 10, tzinfo=timezone.utc)

    def test_one_event_per_stage(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-1", make_source([shipment_row("MSKU1234567")]))
        _run(db_session, service, dictionary, "batch-2", make_source([shipment_row("MSKU1234567")]))
        _run(db_session, service, dictionary, "batch-3", make_source([shipment_row("MSKU1234567", Status="Discharged")]))

        container = _container(db_session, "MSKU1234567")
        stages = [event.stage_code for event in LifecycleEventRepository(db_session).list_for_container(container.id)]
        assert sorted(stages) == ["DEP", "DIS"]

    def test_unknown_status_maps_to_other(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-o", make_source([shipment_row("MSKU1234567", Status="Awaiting paperwork")]))
        assert _container(db_session, "MSKU1234567").current_status == "O"

    def test_stage_event_time_prefers_stage_date(self) -> None:
        ata = datetime(2026, 10, 1, tzinfo=timezone.utc)
        status_date = datetime(2026, 10, 3, tzinfo=timezone.utc)
        assert stage_event_time("ARR", {"ata": ata, "status_date": status_date}, NOW) == ata
        assert stage_event_time("CUS", {"status_date": status_date}, NOW) == status_date
        assert stage_event_time("CUS", {}, NOW) == NOW


# ---------------------------------------------------------------------------
# Metadata, links and derived values
# ---------------------------------------------------------------------------


class TestMetadataAndLinks:
    def test_unmapped_values_are_preserved(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        row = shipment_row("MSKU1234567", Remarks="Fragile cargo, handle with care")
        result = _run(db_session, service, dictionary, "batch-meta", make_source([row]))

        metadata = _container(db_session, "MSKU1234567").metadata_json
        assert metadata["unmapped_source_fields"] == {"Remarks": "Fragile cargo, handle with care"}
        assert metadata["_internal"]["import_batch_id"] == "batch-meta"
        assert metadata["_internal"]["row_index"] == 0
        assert metadata["_internal"]["dictionary_version"] == dictionary.version
        assert result.mapping_report.mapping.unmapped_headers == ("Remarks",)

    def test_shipment_is_linked(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        rows = [shipment_row("MSKU1234567"), shipment_row("TGHU7654321")]
        _run(db_session, service, dictionary, "batch-ship", make_source(rows))

        shipments = ShipmentRepository(db_session)
        shipment = shipments.get_by_reference("SHP-1001")
        assert shipment is not None
        assert shipments.references_for_container(_container(db_session, "MSKU1234567")) == ["SHP-1001"]
        assert shipments.references_for_container(_container(db_session, "TGHU7654321")) == ["SHP-1001"]

    def test_business_unit_derived_from_consignee(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        source = InMemoryRowSource(
            source_name="consignee.csv",
            rows=[{"Container": "MSKU1234567", "Consignee": "Fram Filters Inc.", "Booking": "BK-1"}],
        )
        _run(db_session, service, dictionary, "batch-bu", source)

        assert _container(db_session, "MSKU1234567").business_unit == "FRAM"

    def test_derive_business_unit_without_match(self, dictionary: CanonicalDictionary) -> None:
        assert derive_business_unit("Acme Imports", dictionary) is None
        assert derive_business_unit(None, dictionary) is None


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


class TestLockedFields:
    def test_locked_field_survives_later_imports(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-1", make_source([shipment_row("MSKU1234567")]))
        ManualEditService().edit_fields(
            db=db_session,
            container_number="MSKU1234567",
            changes={"carrier": "CMA CGM"},
            actor="ops@example.com",
        )

        result = _run(
            db_session,
            service,
            dictionary,
            "batch-2",
            make_source([shipment_row("MSKU1234567", Carrier="Maersk Line", POD="Oakland")]),
        )

        container = _container(db_session, "MSKU1234567")
        assert container.carrier == "CMA CGM"
        assert container.pod == "Oakland"
        assert container.locked_fields == ["carrier"]
        assert result.records[0].skipped_locked_fields == ("carrier",)

    def test_locked_shipment_field_survives_later_imports(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        _run(db_session, service, dictionary, "batch-1", make_source([shipment_row("MSKU1234567")]))
        ManualEditService().edit_shipment_fields(
            db=db_session,
            shipment_reference="SHP-1001",
            changes={"business_unit": "AUTO"},
            actor="ops@example.com",
        )

        _run(
            db_session,
            service,
            dictionary,
            "batch-2",
            make_source([shipment_row("MSKU1234567", **{"Business Unit": "FRAM", "POD": "Oakland"})]),
        )

        shipment = ShipmentRepository(db_session).get_by_reference("SHP-1001")
        assert shipment is not None
        assert shipment.business_unit == "AUTO"
        assert shipment.locked_fields == ["business_unit"]
        assert _container(db_session, "MSKU1234567").business_unit == "FRAM"


# ---------------------------------------------------------------------------
# Row failures
# ---------------------------------------------------------------------------


class TestRowFailures:
    def test_out_of_range_number_does_not_abort_the_batch(
        self, db_session: Session, service: ReconciliationService, dictionary: CanonicalDictionary
    ) -> None:
        rows = [
            shipment_row("MSKU1234567"),
            shipment_row("TGHU7654321", ETA=10**400),
            shipment_row("CMAU1112223"),
        ]

        result = _run(db_session, service, dictionary, "batch-huge", make_source(rows))

        assert len(result.records) + len(result.mapping_report.failures) == 3
        assert [record.container_number for record in result.records] == [
            "MSKU1234567",
            "TGHU7654321",
            "CMAU1112223",
        ]
        assert _container(db_session, "TGHU7654321").eta is None
        batch = ImportBatchRepository(db_session).get_batch("batch-huge")
        assert batch is not None
        assert batch.rows_processed == 3

    def test_unexpected_row_error_is_recorded_and_the_batch_continues(
        self,
        db_session: Session,
        service: ReconciliationService,
        dictionary: CanonicalDictionary,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = ReconciliationService._reconcile_row

        def fail_second_row(self: ReconciliationService, **kwargs: Any) -> Any:
            if kwargs["row"].row_index == 1:
                raise RuntimeError("converter blew up")
            return original(self, **kwargs)

        monkeypatch.setattr(ReconciliationService, "_reconcile_row", fail_second_row)
        rows = [shipment_row("MSKU1234567"), shipment_row("TGHU7654321"), shipment_row("CMAU1112223")]

        result = _run(db_session, service, dictionary, "batch-boom", make_source(rows))

        assert [record.container_number for record in result.records] == ["MSKU1234567", "CMAU1112223"]
        [failure] = result.mapping_report.failures
        assert failure.row_index == 1
        assert failure.error == "RuntimeError: converter blew up"
        assert ContainerRepository(db_session).get_by_number("TGHU7654321") is None
        batch = ImportBatchRepository(db_session).get_batch("batch-boom")
        assert batch is not None
        assert (batch.rows_processed, batch.rows_succeeded, batch.rows_failed) == (3, 2, 1)


# ---------------------------------------------------------------------------
# Concurrent first insert
# ---------------------------------------------------------------------------


class TestConcurrentInsert:
    def test_container_insert_that_loses_the_race_merges_into_the_winner(
        self, db_session: Session, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        repository = ContainerRepository(db_session)
        repository.upsert(container_number="MSKU1234567", payload={"carrier": "Maersk"})
        db_session.commit()

        # The first read misses, as it would when another process inserts
        # the same key after our SELECT but before our INSERT.
        original = ContainerRepository.get_by_number
        reads: list[str] = []

        def stale_first_read(self: ContainerRepository, container_number: str, *, for_update: bool = False) -> Any:
            reads.append(container_number)
            if len(reads) == 1:
                return None
            return original(self, container_number, for_update=for_update)

        monkeypatch.setattr(ContainerRepository, "get_by_number", stale_first_read)

        upsert = ContainerRepository(db_session).upsert(container_number="MSKU1234567", payload={"pod": "Oakland"})
        db_session.commit()
        monkeypatch.undo()

        assert upsert.created is False
        assert upsert.written_fields == ("pod",)
        container = _container(db_session, "MSKU1234567")
        assert (container.carrier, container.pod) == ("Maersk", "Oakland")
        assert _count(db_session, Container) == 1

    def test_shipment_insert_that_loses_the_race_merges_into_the_winner(
        self, db_session: Session, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ShipmentRepository(db_session).upsert(shipment_reference="SHP-1001", payload={"shipper": "Acme"})
        db_session.commit()

        original = ShipmentRepository.get_by_reference
        reads: list[str] = []

        def stale_first_read(self: ShipmentRepository, shipment_reference: str, *, for_update: bool = False) -> Any:
            reads.append(shipment_reference)
            if len(reads) == 1:
                return None
            return original(self, shipment_reference, for_update=for_update)

        monkeypatch.setattr(ShipmentRepository, "get_by_reference", stale_first_read)

        shipment = ShipmentRepository(db_session).upsert(shipment_reference="SHP-1001", payload={"consignee": "Fram"})
        db_session.commit()
        monkeypatch.undo()

        assert (shipment.shipper, shipment.consignee) == ("Acme", "Fram")
        assert _count(db_session, Shipment) == 1


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def _outcome(db: Session, result: ReconcileResult) -> dict[str, Any]:
    containers = ContainerRepository(db).list_containers(limit=1000)
    batch = ImportBatchRepository(db).get_batch("batch-chunks")
    assert batch is not None
    return {
        "records": [(record.container_number, record.row_index, record.stage) for record in result.records],
        "events": [(event.container_number, event.stage, event.event_time) for event in result.events],
        "containers": {container.container_number: container_snapshot(container) for container in containers},
        "dropped": [row.row_index for row in result.mapping_report.dropped_rows],
        "counters": (batch.rows_processed, batch.rows_succeeded, batch.rows_failed, batch.rows_unmapped),
    }


class TestChunking:
    def test_chunk_size_does_not_change_records_or_events(
        self,
        engine: Engine,
        session_factory: sessionmaker[Session],
        dictionary: CanonicalDictionary,
    ) -> None:
        rows = [
            shipment_row("MSKU1234567"),
            shipment_row("TGHU7654321", Status="Discharged"),
            shipment_row(None),
            shipment_row("msku 1234567", Status="Arrived", POD="Long Beach"),
            shipment_row("CMAU1112223", **{"Delivery Date": "2026-10-10"}),
            shipment_row("OOLU9998887", Status="Customs hold"),
            shipment_row("TGHU7654321", Status="Gated out"),
        ]

        outcomes = []
        for chunk_size in (1, 200):
            Base.metadata.drop_all(engine)
            Base.metadata.create_all(engine)
            service = ReconciliationService(
                oracle=HeuristicClassificationOracle(),
                settings=ReconciliationSettings(chunk_size=chunk_size, audit_workers=1),
            )
            with session_factory() as db:
                result = _run(db, service, dictionary, "batch-chunks", make_source(rows))
                assert result.mapping_report.chunks == (7 if chunk_size == 1 else 1)
                outcomes.append(_outcome(db, result))

        assert outcomes[0] == outcomes[1]
