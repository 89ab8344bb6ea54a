"""
app/services package marker.
"""

from app.services.archive_service import ArchiveService, get_archive_service
from app.services.audit_service import AuditService, get_audit_service
from app.services.enrichment_service import EnrichmentService, get_enrichment_service
from app.services.exception_classifier import ExceptionClassifier, get_exception_classifier
from app.services.import_orchestrator_service import (
    ImportOrchestratorService,
    get_import_orchestrator_service,
)
from app.services.manual_edit_service import ManualEditService, get_manual_edit_service
from app.services.quality_service import summarize_batch_quality
from app.services.reconciliation_service import ReconciliationService, get_reconciliation_service

__all__ = [
    "ArchiveService",
    "get_archive_service",
    "AuditService",
    "get_audit_service",
    "EnrichmentService",
    "get_enrichment_service",
    "ExceptionClassifier",
    "get_exception_classifier",
    "ImportOrchestratorService",
    "get_import_orchestrator_service",
    "ManualEditService",
    "get_manual_edit_service",
    "ReconciliationService",
    "get_reconciliation_service",
    "summarize_batch_quality",
]
