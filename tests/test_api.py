"""
tests/test_api.py

HTTP surface over the SQLite store. The app is assembled from the routers
directly; app.main validates a PostgreSQL environment at import time.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.api.routers import containers_router, dictionary_router, import_batches_router, shipments_router
from app.config import ReconciliationSettings
from app.dictionary.dictionary_store import DictionaryStore, get_dictionary_store
from app.services.import_orchestrator_service import (
    ImportOrchestratorService,
    get_import_orchestrator_service,
)
from db.models.import_batch import ImportBatchStatus
from db.session import get_db
from factories import NOW, make_source, shipment_row
from oracle.heuristic import HeuristicClassificationOracle

CSV_UPLOAD = (
    "Container,Carrier,POL,POD,Business Unit,Status,ETA\n"
    "MSKU1234567,Maersk,Shanghai,Los Angeles,FRAM,Departed origin,2099-11-02\n"
    "TGHU7654321,MSC,Ningbo,Oakland,FRAM,Discharged,2099-11-05\n"
)


@pytest.fixture()
def orchestrator(db_session: Session, dictionary_store: DictionaryStore) -> ImportOrchestratorService:
    # Background jobs share the request session; the SQLite store has one connection.
    return ImportOrchestratorService(
        session_factory=lambda: db_session,
        oracle=HeuristicClassificationOracle(),
        dictionary_store=dictionary_store,
        settings=ReconciliationSettings(chunk_size=10, audit_workers=1),
    )


@pytest.fixture()
def client(
    db_session: Session,
    dictionary_store: DictionaryStore,
    orchestrator: ImportOrchestratorService,
) -> Iterator[TestClient]:
    application = FastAPI()
    application.include_router(import_batches_router)
    application.include_router(containers_router)
    application.include_router(shipments_router)
    application.include_router(dictionary_router)

    def _get_db() -> Iterator[Session]:
        yield db_session

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_dictionary_store] = lambda: dictionary_store
    application.dependency_overrides[get_import_orchestrator_service] = lambda: orchestrator

    with TestClient(application) as test_client:
        yield test_client


@pytest.fixture()
def seeded(db_session: Session, orchestrator: ImportOrchestratorService) -> None:
    orchestrator.run_batch(
        db=db_session,
        batch_id="batch-seed",
        row_batch=make_source([shipment_row("MSKU1234567"), shipment_row("TGHU7654321")]).read(),
        now=NOW,
    )


# ---------------------------------------------------------------------------
# Import batches
# ---------------------------------------------------------------------------


class TestImportBatchRoutes:
    def test_upload_archives_then_processes(self, client: TestClient) -> None:
        response = client.post(
            "/import-batches",
            params={"batch_id": "upload-1"},
            files={"file": ("tracker.csv", CSV_UPLOAD.encode("utf-8"), "text/csv")},
        )

        assert response.status_code == 202
        assert response.json()["batch_id"] == "upload-1"
        assert response.json()["source_name"] == "tracker.csv"

        status_response = client.get("/import-batches/upload-1")
        assert status_response.status_code == 200
        body = status_response.json()
        assert body["status"] == ImportBatchStatus.COMPLETED
        assert body["rows_succeeded"] == 2

        containers = client.get("/containers").json()["containers"]
        assert [item["container_number"] for item in containers] == ["MSKU1234567", "TGHU7654321"]

    def test_upload_rejects_other_file_types(self, client: TestClient) -> None:
        response = client.post(
            "/import-batches",
            files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert response.status_code == 400

    def test_list_and_filter(self, client: TestClient, seeded: None) -> None:
        listed = client.get("/import-batches").json()["batches"]
        assert [item["batch_id"] for item in listed] == ["batch-seed"]

        failed = client.get("/import-batches", params={"status": ImportBatchStatus.FAILED}).json()["batches"]
        assert failed == []

    def test_unknown_batch_is_404(self, client: TestClient) -> None:
        assert client.get("/import-batches/nope").status_code == 404
        assert client.post("/import-batches/nope/reprocess").status_code == 404
        assert client.post("/import-batches/nope/cancel").status_code == 404

    def test_reprocess_and_cancel(self, client: TestClient, seeded: None) -> None:
        reprocess = client.post("/import-batches/batch-seed/reprocess")
        assert reprocess.status_code == 202
        assert client.get("/import-batches/batch-seed").json()["status"] == ImportBatchStatus.COMPLETED

        cancel = client.post("/import-batches/batch-seed/cancel")
        assert cancel.status_code == 200
        assert cancel.json() == {"batch_id": "batch-seed", "cancellation_requested": False}

    def test_quality_report(self, client: TestClient, seeded: None) -> None:
        response = client.get("/import-batches/batch-seed/quality")

        assert response.status_code == 200
        body = response.json()
        assert body["batch_id"] == "batch-seed"
        assert body["total_containers"] == 2
        assert body["audited_containers"] + body["unaudited_containers"] == 2
        assert set(body["tiers"]) == {"excellent", "good", "needs_improvement", "poor"}
        assert body["grade"] in {"EXCELLENT", "GOOD", "NEEDS_IMPROVEMENT", "POOR", "NO_DATA"}
        assert client.get("/import-batches/nope/quality").status_code == 404

    def test_reset_batch(self, client: TestClient, seeded: None) -> None:
        response = client.delete("/import-batches/batch-seed")

        assert response.status_code == 204
        assert client.get("/import-batches/batch-seed").status_code == 404
        assert client.get("/containers/MSKU1234567").status_code == 200
        assert client.delete("/import-batches/batch-seed").status_code == 404


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


class TestContainerRoutes:
    def test_get_container_with_events_and_references(self, client: TestClient, seeded: None) -> None:
        response = client.get("/containers/msku-1234567")

        assert response.status_code == 200
        body = response.json()
        assert body["container_number"] == "MSKU1234567"
        assert body["fields"]["carrier"] == "Maersk"
        assert body["fields"]["current_status"] == "DEP"
        assert body["shipment_references"] == ["SHP-1001"]
        assert [event["stage_code"] for event in body["events"]] == ["DEP"]
        assert body["metadata"]["_internal"]["import_batch_id"] == "batch-seed"

    def test_missing_container_is_404(self, client: TestClient) -> None:
        assert client.get("/containers/ZZZU0000000").status_code == 404

    def test_edit_then_unlock(self, client: TestClient, seeded: None) -> None:
        edited = client.patch(
            "/containers/MSKU1234567",
            json={"changes": {"carrier": "ONE"}, "actor": "ops@example.com"},
        )
        assert edited.status_code == 200
        assert edited.json()["fields"]["carrier"] == "ONE"
        assert edited.json()["locked_fields"] == ["carrier"]

        unlocked = client.delete("/containers/MSKU1234567/locks/carrier", params={"actor": "lead"})
        assert unlocked.status_code == 200
        assert unlocked.json()["locked_fields"] == []

        again = client.delete("/containers/MSKU1234567/locks/carrier")
        assert again.status_code == 409
        assert again.json()["detail"]["fields"] == ["carrier"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"changes": {"health_score": 5}, "actor": "ops"},
            {"changes": {"eta": "whenever"}, "actor": "ops"},
            {"changes": {}, "actor": "ops"},
            {"changes": {"carrier": "ONE"}, "actor": "   "},
        ],
    )
    def test_invalid_edits_are_422(self, client: TestClient, seeded: None, payload: dict) -> None:
        assert client.patch("/containers/MSKU1234567", json=payload).status_code == 422

    def test_filter_by_exception(self, client: TestClient, seeded: None) -> None:
        response = client.get("/containers", params={"has_exception": "true"})
        assert response.status_code == 200
        assert response.json()["containers"] == []


# ---------------------------------------------------------------------------
# Shipments
# ---------------------------------------------------------------------------


class TestShipmentRoutes:
    def test_get_shipment(self, client: TestClient, seeded: None) -> None:
        response = client.get("/shipments/SHP-1001")

        assert response.status_code == 200
        body = response.json()
        assert body["fields"]["business_unit"] == "FRAM"
        assert body["container_numbers"] == ["MSKU1234567", "TGHU7654321"]
        assert client.get("/shipments/SHP-404").status_code == 404

    def test_edit_then_unlock(self, client: TestClient, seeded: None) -> None:
        edited = client.patch(
            "/shipments/SHP-1001",
            json={"changes": {"business_unit": "AUTO"}, "actor": "ops@example.com"},
        )
        assert edited.status_code == 200
        assert edited.json()["fields"]["business_unit"] == "AUTO"
        assert edited.json()["locked_fields"] == ["business_unit"]

        unlocked = client.delete("/shipments/SHP-1001/locks/business_unit", params={"actor": "lead"})
        assert unlocked.status_code == 200
        assert unlocked.json()["locked_fields"] == []

        assert client.delete("/shipments/SHP-1001/locks/business_unit").status_code == 409

    def test_invalid_edits(self, client: TestClient, seeded: None) -> None:
        assert client.patch("/shipments/SHP-1001", json={"changes": {"carrier": "ONE"}, "actor": "ops"}).status_code == 422
        assert client.patch("/shipments/SHP-404", json={"changes": {"shipper": "ACME"}, "actor": "ops"}).status_code == 404


# ---------------------------------------------------------------------------
# Dictionary
# ---------------------------------------------------------------------------


class TestDictionaryRoute:
    def test_dictionary_view(self, client: TestClient) -> None:
        body = client.get("/dictionary").json()

        assert body["version"] == "1.0.0"
        fields = {field["name"]: field for field in body["fields"]}
        assert fields["container_number"]["required"] is True
        assert "Cntr No" in fields["container_number"]["synonyms"]
        assert "FRAM" in body["business_units"]
