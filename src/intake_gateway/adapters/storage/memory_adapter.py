"""In-Memory Storage Adapter.

Dict-backed implementation of StoragePort for tests and local development
(IG_DB_TYPE=memory). It enforces the same uniqueness and tenant-scoping
rules as the DuckDB adapter so domain services behave identically on both.

Security Impact:
    - Patient, document and clinical note operations read the tenant id from
      the tenant context and never return rows of another tenant
    - Idempotency records are write-once
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from intake_gateway.domain.models import (
    AuditEvent,
    IdempotencyRecord,
    IntakeDocument,
    Patient,
    Tenant,
    UnmatchedSubmission,
    format_patient_number,
    patient_number_sequence,
)
from intake_gateway.domain.ports import Result, StorageError, StoragePort, UniqueConflictError
from intake_gateway.infrastructure.request_context import require_tenant_id

logger = logging.getLogger(__name__)


class InMemoryStorageAdapter(StoragePort):
    """Thread-safe in-memory store.

    Example Usage:
        ```python
        storage = InMemoryStorageAdapter()
        storage.save_tenant(Tenant(id=1, subdomain="wellmedr"))
        with tenant_scope(1):
            storage.count_patients()
        ```
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tenants: Dict[int, Tenant] = {}
        self._patients: Dict[int, Patient] = {}
        self._documents: Dict[int, IntakeDocument] = {}
        self._notes: Dict[str, Dict[str, Any]] = {}
        self._idempotency: Dict[str, IdempotencyRecord] = {}
        self._unmatched: List[UnmatchedSubmission] = []
        self._audit: List[AuditEvent] = []
        self._patient_seq = 0
        self._document_seq = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        return Result.success_result(None)

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        self._closed = True

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise StorageError("Storage adapter is closed", operation=operation)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        self._check_open("get_tenant_by_subdomain")
        subdomain = subdomain.strip().lower()
        with self._lock:
            return next((t for t in self._tenants.values() if t.subdomain == subdomain), None)

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        self._check_open("get_tenant")
        with self._lock:
            return self._tenants.get(tenant_id)

    def list_tenants(self) -> List[Tenant]:
        self._check_open("list_tenants")
        with self._lock:
            return sorted(self._tenants.values(), key=lambda t: t.id)

    def save_tenant(self, tenant: Tenant) -> Tenant:
        self._check_open("save_tenant")
        with self._lock:
            for existing in self._tenants.values():
                if existing.subdomain == tenant.subdomain and existing.id != tenant.id:
                    raise UniqueConflictError(
                        f"Tenant subdomain '{tenant.subdomain}' already exists",
                        constraint="tenants.subdomain",
                        operation="save_tenant"
                    )
            self._tenants[tenant.id] = tenant
        return tenant

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def _tenant_patients(self, tenant_id: int) -> List[Patient]:
        return [p for p in self._patients.values() if p.tenant_id == tenant_id]

    def list_recent_patients(self, limit: int) -> List[Patient]:
        self._check_open("list_recent_patients")
        tenant_id = require_tenant_id()
        with self._lock:
            patients = sorted(self._tenant_patients(tenant_id), key=lambda p: (p.created_at, p.id), reverse=True)
            return [p.model_copy(deep=True) for p in patients[:limit]]

    def get_patient(self, patient_id: int) -> Optional[Patient]:
        self._check_open("get_patient")
        tenant_id = require_tenant_id()
        with self._lock:
            patient = self._patients.get(patient_id)
            if patient is None or patient.tenant_id != tenant_id:
                return None
            return patient.model_copy(deep=True)

    def create_patient(self, patient: Patient) -> Patient:
        self._check_open("create_patient")
        tenant_id = require_tenant_id()
        if patient.tenant_id != tenant_id:
            raise StorageError(
                f"Patient tenant {patient.tenant_id} does not match tenant context",
                operation="create_patient"
            )
        with self._lock:
            if any(p.patient_number == patient.patient_number for p in self._tenant_patients(tenant_id)):
                raise UniqueConflictError(
                    f"Patient number {patient.patient_number} already exists",
                    constraint="patients.tenant_id_patient_number",
                    operation="create_patient"
                )
            self._patient_seq += 1
            created = patient.model_copy(update={"id": self._patient_seq}, deep=True)
            self._patients[created.id] = created
            return created.model_copy(deep=True)

    def update_patient(self, patient: Patient) -> Patient:
        self._check_open("update_patient")
        tenant_id = require_tenant_id()
        with self._lock:
            existing = self._patients.get(patient.id) if patient.id is not None else None
            if existing is None or existing.tenant_id != tenant_id:
                raise StorageError(f"Patient {patient.id} not found", operation="update_patient")
            # tenant_id and patient_number are immutable
            updated = patient.model_copy(
                update={"tenant_id": existing.tenant_id, "patient_number": existing.patient_number},
                deep=True
            )
            self._patients[updated.id] = updated
            return updated.model_copy(deep=True)

    def next_patient_number(self, prefix: str) -> str:
        self._check_open("next_patient_number")
        tenant_id = require_tenant_id()
        with self._lock:
            highest = max(
                (patient_number_sequence(p.patient_number, prefix) for p in self._tenant_patients(tenant_id)),
                default=0
            )
        return format_patient_number(prefix, highest + 1)

    def count_patients(self) -> int:
        tenant_id = require_tenant_id()
        with self._lock:
            return len(self._tenant_patients(tenant_id))

    # ------------------------------------------------------------------
    # Documents and clinical notes
    # ------------------------------------------------------------------

    def _find_document(self, tenant_id: int, submission_id: str) -> Optional[IntakeDocument]:
        return next(
            (d for d in self._documents.values() if d.tenant_id == tenant_id and d.submission_id == submission_id),
            None
        )

    def get_document(self, submission_id: str) -> Optional[IntakeDocument]:
        self._check_open("get_document")
        tenant_id = require_tenant_id()
        with self._lock:
            document = self._find_document(tenant_id, submission_id)
            return document.model_copy(deep=True) if document else None

    def upsert_document(self, document: IntakeDocument) -> IntakeDocument:
        self._check_open("upsert_document")
        tenant_id = require_tenant_id()
        with self._lock:
            existing = self._find_document(tenant_id, document.submission_id)
            if existing is None:
                self._document_seq += 1
                stored = document.model_copy(update={"id": self._document_seq, "tenant_id": tenant_id}, deep=True)
            else:
                stored = document.model_copy(update={"id": existing.id, "tenant_id": tenant_id}, deep=True)
            self._documents[stored.id] = stored
            return stored.model_copy(deep=True)

    def attach_clinical_note(self, document_id: int, note_id: str) -> None:
        self._check_open("attach_clinical_note")
        tenant_id = require_tenant_id()
        with self._lock:
            document = self._documents.get(document_id)
            if document is None or document.tenant_id != tenant_id:
                raise StorageError(f"Document {document_id} not found", operation="attach_clinical_note")
            self._documents[document_id] = document.model_copy(
                update={"clinical_note_id": note_id, "updated_at": datetime.now(timezone.utc)}
            )

    def count_documents(self) -> int:
        tenant_id = require_tenant_id()
        with self._lock:
            return sum(1 for d in self._documents.values() if d.tenant_id == tenant_id)

    def insert_clinical_note(self, patient_id: int, document_id: int) -> str:
        self._check_open("insert_clinical_note")
        tenant_id = require_tenant_id()
        note_id = str(uuid.uuid4())
        with self._lock:
            self._notes[note_id] = {
                "id": note_id,
                "tenant_id": tenant_id,
                "patient_id": patient_id,
                "document_id": document_id,
                "status": "draft",
                "created_at": datetime.now(timezone.utc),
            }
        return note_id

    def list_clinical_notes(self, patient_id: int) -> List[Dict[str, Any]]:
        tenant_id = require_tenant_id()
        with self._lock:
            return [
                dict(note) for note in self._notes.values()
                if note["tenant_id"] == tenant_id and note["patient_id"] == patient_id
            ]

    # ------------------------------------------------------------------
    # Idempotency, unmatched submissions, audit
    # ------------------------------------------------------------------

    def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        self._check_open("get_idempotency_record")
        with self._lock:
            return self._idempotency.get(key)

    def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        self._check_open("save_idempotency_record")
        with self._lock:
            if record.key in self._idempotency:
                raise UniqueConflictError(
                    "Idempotency record already exists",
                    constraint="idempotency_records.key",
                    operation="save_idempotency_record"
                )
            self._idempotency[record.key] = record

    def save_unmatched(self, submission: UnmatchedSubmission) -> None:
        self._check_open("save_unmatched")
        with self._lock:
            self._unmatched.append(submission)

    def list_unmatched(self) -> List[UnmatchedSubmission]:
        with self._lock:
            return list(self._unmatched)

    def record(self, event: AuditEvent) -> None:
        self._check_open("record_audit")
        with self._lock:
            self._audit.append(event)

    def audit_events(self, action: Optional[str] = None) -> List[AuditEvent]:
        """Recorded audit events, optionally filtered by action."""
        with self._lock:
            return [e for e in self._audit if action is None or e.action == action]

    def snapshot(self) -> Tuple[int, int]:
        """(patients, documents) across all tenants."""
        with self._lock:
            return len(self._patients), len(self._documents)
