"""DuckDB Storage Adapter.

This adapter implements the StoragePort contract on DuckDB, an in-process
database, so a single-node deployment needs no external database server.

Security Impact:
    - PHI columns hold ciphertext produced by the PHI cipher; this adapter
      never sees plaintext identity values
    - Patient, document and clinical note queries are filtered by the tenant
      id of the active tenant context
    - Uniqueness of (tenant_id, patient_number), (tenant_id, submission_id)
      and idempotency keys is enforced by the schema
    - The audit log table is append-only

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - One connection per adapter guarded by a lock
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import duckdb

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
from intake_gateway.infrastructure.config_manager import DatabaseConfig
from intake_gateway.infrastructure.request_context import require_tenant_id

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = (
    "id, tenant_id, patient_number, first_name, last_name, email, phone, dob, gender, "
    "address1, address2, city, state, zip, tags, notes, source, source_metadata, created_at, updated_at"
)
DOCUMENT_COLUMNS = (
    "id, tenant_id, patient_id, submission_id, source, sections, artifact_url, rendered, "
    "checkout_completed, clinical_note_id, ip_address, user_agent, received_at, updated_at"
)

SCHEMA_STATEMENTS = (
    "CREATE SEQUENCE IF NOT EXISTS patient_id_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS document_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id INTEGER PRIMARY KEY,
        subdomain VARCHAR NOT NULL UNIQUE,
        name VARCHAR,
        inbound_username VARCHAR,
        inbound_password VARCHAR,
        webhook_secret VARCHAR,
        patient_number_prefix VARCHAR NOT NULL DEFAULT 'PT'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patients (
        id INTEGER PRIMARY KEY DEFAULT nextval('patient_id_seq'),
        tenant_id INTEGER NOT NULL,
        patient_number VARCHAR NOT NULL,
        first_name VARCHAR NOT NULL,
        last_name VARCHAR NOT NULL,
        email VARCHAR NOT NULL,
        phone VARCHAR NOT NULL,
        dob VARCHAR NOT NULL,
        gender VARCHAR,
        address1 VARCHAR,
        address2 VARCHAR,
        city VARCHAR,
        state VARCHAR,
        zip VARCHAR,
        tags VARCHAR,
        notes VARCHAR,
        source VARCHAR,
        source_metadata VARCHAR,
        created_at VARCHAR NOT NULL,
        updated_at VARCHAR NOT NULL,
        UNIQUE (tenant_id, patient_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intake_documents (
        id INTEGER PRIMARY KEY DEFAULT nextval('document_id_seq'),
        tenant_id INTEGER NOT NULL,
        patient_id INTEGER NOT NULL,
        submission_id VARCHAR NOT NULL,
        source VARCHAR NOT NULL,
        sections VARCHAR,
        artifact_url VARCHAR,
        rendered BOOLEAN,
        checkout_completed BOOLEAN,
        clinical_note_id VARCHAR,
        ip_address VARCHAR,
        user_agent VARCHAR,
        received_at VARCHAR NOT NULL,
        updated_at VARCHAR NOT NULL,
        UNIQUE (tenant_id, submission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clinical_notes (
        id VARCHAR PRIMARY KEY,
        tenant_id INTEGER NOT NULL,
        patient_id INTEGER NOT NULL,
        document_id INTEGER NOT NULL,
        status VARCHAR NOT NULL,
        created_at VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        key VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        response_status INTEGER NOT NULL,
        response_body VARCHAR NOT NULL,
        created_at VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unmatched_submissions (
        id VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        payload VARCHAR NOT NULL,
        reason VARCHAR NOT NULL,
        request_id VARCHAR,
        received_at VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id VARCHAR PRIMARY KEY,
        action VARCHAR NOT NULL,
        tenant_id INTEGER,
        resource_type VARCHAR,
        resource_id VARCHAR,
        request_id VARCHAR,
        details VARCHAR,
        occurred_at VARCHAR NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_patients_tenant_created ON patients(tenant_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_documents_tenant ON intake_documents(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_patient ON clinical_notes(tenant_id, patient_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)",
)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class DuckDBAdapter(StoragePort):
    """DuckDB implementation of StoragePort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        from intake_gateway.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        result = adapter.initialize_schema()
        if result.is_success():
            with tenant_scope(tenant.id):
                adapter.count_patients()
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialized = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _execute(self, operation: str, sql: str, params: Sequence[Any] = ()) -> duckdb.DuckDBPyConnection:
        """Run one statement, translating DuckDB errors into storage errors."""
        with self._lock:
            if not self._initialized and operation != "initialize_schema":
                result = self.initialize_schema()
                if result.is_failure():
                    raise StorageError(result.error or "Schema initialization failed", operation=operation)
            try:
                return self._get_connection().execute(sql, list(params))
            except duckdb.ConstraintException as e:
                raise UniqueConflictError(
                    f"Constraint violated during {operation}",
                    constraint=str(e).split("\n", 1)[0],
                    operation=operation
                ) from e
            except duckdb.Error as e:
                raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    def _fetchall(self, operation: str, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            return self._execute(operation, sql, params).fetchall()

    def _fetchone(self, operation: str, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self._lock:
            return self._execute(operation, sql, params).fetchone()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        """Initialize tables, sequences and indexes. Idempotent.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            with self._lock:
                for statement in SCHEMA_STATEMENTS:
                    self._execute("initialize_schema", statement)
                self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)
        except StorageError as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def ping(self) -> bool:
        try:
            self._fetchone("ping", "SELECT 1")
        except StorageError as e:
            logger.warning(f"DuckDB ping failed: {e}")
            return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("DuckDB connection closed")
                except duckdb.Error as e:
                    logger.warning(f"Error closing DuckDB connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_tenant(row: tuple) -> Tenant:
        return Tenant(
            id=row[0],
            subdomain=row[1],
            name=row[2] or "",
            inbound_username=row[3],
            inbound_password=row[4],
            webhook_secret=row[5],
            patient_number_prefix=row[6],
        )

    _TENANT_SELECT = (
        "SELECT id, subdomain, name, inbound_username, inbound_password, webhook_secret, "
        "patient_number_prefix FROM tenants"
    )

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        row = self._fetchone(
            "get_tenant_by_subdomain",
            f"{self._TENANT_SELECT} WHERE subdomain = ?",
            [subdomain.strip().lower()]
        )
        return self._row_to_tenant(row) if row else None

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        row = self._fetchone("get_tenant", f"{self._TENANT_SELECT} WHERE id = ?", [tenant_id])
        return self._row_to_tenant(row) if row else None

    def list_tenants(self) -> List[Tenant]:
        rows = self._fetchall("list_tenants", f"{self._TENANT_SELECT} ORDER BY id")
        return [self._row_to_tenant(row) for row in rows]

    def save_tenant(self, tenant: Tenant) -> Tenant:
        params = [
            tenant.subdomain,
            tenant.name,
            tenant.inbound_username,
            tenant.inbound_password,
            tenant.webhook_secret,
            tenant.patient_number_prefix,
        ]
        with self._lock:
            if self.get_tenant(tenant.id) is None:
                self._execute(
                    "save_tenant",
                    "INSERT INTO tenants (id, subdomain, name, inbound_username, inbound_password, "
                    "webhook_secret, patient_number_prefix) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [tenant.id, *params]
                )
            else:
                # subdomain is immutable once stored
                self._execute(
                    "save_tenant",
                    "UPDATE tenants SET name = ?, inbound_username = ?, inbound_password = ?, "
                    "webhook_secret = ?, patient_number_prefix = ? WHERE id = ?",
                    [*params[1:], tenant.id]
                )
        logger.info(f"Saved tenant {tenant.id} ({tenant.subdomain})")
        return tenant

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_patient(row: tuple) -> Patient:
        return Patient(
            id=row[0],
            tenant_id=row[1],
            patient_number=row[2],
            first_name=row[3],
            last_name=row[4],
            email=row[5],
            phone=row[6],
            dob=row[7],
            gender=row[8] or "m",
            address1=row[9] or "",
            address2=row[10] or "",
            city=row[11] or "",
            state=row[12] or "",
            zip=row[13] or "",
            tags=json.loads(row[14]) if row[14] else [],
            notes=row[15] or "",
            source=row[16] or "webhook",
            source_metadata=json.loads(row[17]) if row[17] else {},
            created_at=_parse_ts(row[18]),
            updated_at=_parse_ts(row[19]),
        )

    def list_recent_patients(self, limit: int) -> List[Patient]:
        tenant_id = require_tenant_id()
        rows = self._fetchall(
            "list_recent_patients",
            f"SELECT {PATIENT_COLUMNS} FROM patients WHERE tenant_id = ? "
            f"ORDER BY created_at DESC, id DESC LIMIT {int(limit)}",
            [tenant_id]
        )
        return [self._row_to_patient(row) for row in rows]

    def get_patient(self, patient_id: int) -> Optional[Patient]:
        tenant_id = require_tenant_id()
        row = self._fetchone(
            "get_patient",
            f"SELECT {PATIENT_COLUMNS} FROM patients WHERE tenant_id = ? AND id = ?",
            [tenant_id, patient_id]
        )
        return self._row_to_patient(row) if row else None

    def create_patient(self, patient: Patient) -> Patient:
        tenant_id = require_tenant_id()
        if patient.tenant_id != tenant_id:
            raise StorageError(
                f"Patient tenant {patient.tenant_id} does not match tenant context",
                operation="create_patient"
            )
        row = self._fetchone(
            "create_patient",
            "INSERT INTO patients (tenant_id, patient_number, first_name, last_name, email, phone, dob, "
            "gender, address1, address2, city, state, zip, tags, notes, source, source_metadata, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "RETURNING id",
            [
                tenant_id,
                patient.patient_number,
                patient.first_name,
                patient.last_name,
                patient.email,
                patient.phone,
                patient.dob,
                patient.gender,
                patient.address1,
                patient.address2,
                patient.city,
                patient.state,
                patient.zip,
                json.dumps(patient.tags),
                patient.notes,
                patient.source,
                json.dumps(patient.source_metadata, default=str),
                _ts(patient.created_at),
                _ts(patient.updated_at),
            ]
        )
        return patient.model_copy(update={"id": row[0]})

    def update_patient(self, patient: Patient) -> Patient:
        tenant_id = require_tenant_id()
        with self._lock:
            existing = self.get_patient(patient.id) if patient.id is not None else None
            if existing is None:
                raise StorageError(f"Patient {patient.id} not found", operation="update_patient")
            self._execute(
                "update_patient",
                "UPDATE patients SET first_name = ?, last_name = ?, email = ?, phone = ?, dob = ?, gender = ?, "
                "address1 = ?, address2 = ?, city = ?, state = ?, zip = ?, tags = ?, notes = ?, "
                "source_metadata = ?, updated_at = ? WHERE tenant_id = ? AND id = ?",
                [
                    patient.first_name,
                    patient.last_name,
                    patient.email,
                    patient.phone,
                    patient.dob,
                    patient.gender,
                    patient.address1,
                    patient.address2,
                    patient.city,
                    patient.state,
                    patient.zip,
                    json.dumps(patient.tags),
                    patient.notes,
                    json.dumps(patient.source_metadata, default=str),
                    _ts(patient.updated_at),
                    tenant_id,
                    patient.id,
                ]
            )
        return patient.model_copy(update={"tenant_id": existing.tenant_id, "patient_number": existing.patient_number})

    def next_patient_number(self, prefix: str) -> str:
        tenant_id = require_tenant_id()
        rows = self._fetchall(
            "next_patient_number",
            "SELECT patient_number FROM patients WHERE tenant_id = ? AND patient_number LIKE ?",
            [tenant_id, f"{prefix}-%"]
        )
        highest = max((patient_number_sequence(row[0], prefix) for row in rows), default=0)
        return format_patient_number(prefix, highest + 1)

    def count_patients(self) -> int:
        tenant_id = require_tenant_id()
        return self._fetchone("count_patients", "SELECT COUNT(*) FROM patients WHERE tenant_id = ?", [tenant_id])[0]

    # ------------------------------------------------------------------
    # Documents and clinical notes
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_document(row: tuple) -> IntakeDocument:
        return IntakeDocument(
            id=row[0],
            tenant_id=row[1],
            patient_id=row[2],
            submission_id=row[3],
            source=row[4],
            sections=json.loads(row[5]) if row[5] else [],
            artifact_url=row[6],
            rendered=bool(row[7]),
            checkout_completed=bool(row[8]),
            clinical_note_id=row[9],
            ip_address=row[10],
            user_agent=row[11],
            received_at=_parse_ts(row[12]),
            updated_at=_parse_ts(row[13]),
        )

    def get_document(self, submission_id: str) -> Optional[IntakeDocument]:
        tenant_id = require_tenant_id()
        row = self._fetchone(
            "get_document",
            f"SELECT {DOCUMENT_COLUMNS} FROM intake_documents WHERE tenant_id = ? AND submission_id = ?",
            [tenant_id, submission_id]
        )
        return self._row_to_document(row) if row else None

    def upsert_document(self, document: IntakeDocument) -> IntakeDocument:
        tenant_id = require_tenant_id()
        values = [
            document.patient_id,
            document.source,
            json.dumps(document.sections, default=str),
            document.artifact_url,
            document.rendered,
            document.checkout_completed,
            document.clinical_note_id,
            document.ip_address,
            document.user_agent,
            _ts(document.updated_at),
        ]
        with self._lock:
            existing = self.get_document(document.submission_id)
            if existing is None:
                row = self._fetchone(
                    "upsert_document",
                    "INSERT INTO intake_documents (patient_id, source, sections, artifact_url, rendered, "
                    "checkout_completed, clinical_note_id, ip_address, user_agent, updated_at, "
                    "tenant_id, submission_id, received_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING id",
                    [*values, tenant_id, document.submission_id, _ts(document.received_at)]
                )
                document_id = row[0]
            else:
                self._execute(
                    "upsert_document",
                    "UPDATE intake_documents SET patient_id = ?, source = ?, sections = ?, artifact_url = ?, "
                    "rendered = ?, checkout_completed = ?, clinical_note_id = ?, ip_address = ?, "
                    "user_agent = ?, updated_at = ? WHERE tenant_id = ? AND id = ?",
                    [*values, tenant_id, existing.id]
                )
                document_id = existing.id
        return document.model_copy(update={"id": document_id, "tenant_id": tenant_id})

    def attach_clinical_note(self, document_id: int, note_id: str) -> None:
        tenant_id = require_tenant_id()
        self._execute(
            "attach_clinical_note",
            "UPDATE intake_documents SET clinical_note_id = ?, updated_at = ? WHERE tenant_id = ? AND id = ?",
            [note_id, _ts(datetime.now(timezone.utc)), tenant_id, document_id]
        )

    def count_documents(self) -> int:
        tenant_id = require_tenant_id()
        return self._fetchone(
            "count_documents", "SELECT COUNT(*) FROM intake_documents WHERE tenant_id = ?", [tenant_id]
        )[0]

    def insert_clinical_note(self, patient_id: int, document_id: int) -> str:
        tenant_id = require_tenant_id()
        note_id = str(uuid.uuid4())
        self._execute(
            "insert_clinical_note",
            "INSERT INTO clinical_notes (id, tenant_id, patient_id, document_id, status, created_at) "
            "VALUES (?, ?, ?, ?, 'draft', ?)",
            [note_id, tenant_id, patient_id, document_id, _ts(datetime.now(timezone.utc))]
        )
        return note_id

    def list_clinical_notes(self, patient_id: int) -> List[Dict[str, Any]]:
        tenant_id = require_tenant_id()
        rows = self._fetchall(
            "list_clinical_notes",
            "SELECT id, tenant_id, patient_id, document_id, status, created_at FROM clinical_notes "
            "WHERE tenant_id = ? AND patient_id = ? ORDER BY created_at",
            [tenant_id, patient_id]
        )
        keys = ("id", "tenant_id", "patient_id", "document_id", "status", "created_at")
        return [dict(zip(keys, row)) for row in rows]

    # ------------------------------------------------------------------
    # Idempotency, unmatched submissions, audit
    # ------------------------------------------------------------------

    def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        row = self._fetchone(
            "get_idempotency_record",
            "SELECT key, source, response_status, response_body, created_at FROM idempotency_records WHERE key = ?",
            [key]
        )
        if row is None:
            return None
        return IdempotencyRecord(
            key=row[0],
            source=row[1],
            response_status=row[2],
            response_body=json.loads(row[3]),
            created_at=_parse_ts(row[4]),
        )

    def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        self._execute(
            "save_idempotency_record",
            "INSERT INTO idempotency_records (key, source, response_status, response_body, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                record.key,
                record.source,
                record.response_status,
                json.dumps(record.response_body, default=str),
                _ts(record.created_at),
            ]
        )

    def save_unmatched(self, submission: UnmatchedSubmission) -> None:
        self._execute(
            "save_unmatched",
            "INSERT INTO unmatched_submissions (id, source, payload, reason, request_id, received_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                submission.id,
                submission.source,
                submission.payload,
                submission.reason,
                submission.request_id,
                _ts(submission.received_at),
            ]
        )

    def list_unmatched(self) -> List[UnmatchedSubmission]:
        rows = self._fetchall(
            "list_unmatched",
            "SELECT id, source, payload, reason, request_id, received_at FROM unmatched_submissions "
            "ORDER BY received_at"
        )
        return [
            UnmatchedSubmission(
                id=row[0],
                source=row[1],
                payload=row[2],
                reason=row[3],
                request_id=row[4],
                received_at=_parse_ts(row[5]),
            )
            for row in rows
        ]

    def record(self, event: AuditEvent) -> None:
        """Append an audit event. The audit log is never updated or deleted."""
        self._execute(
            "record_audit",
            "INSERT INTO audit_log (audit_id, action, tenant_id, resource_type, resource_id, request_id, "
            "details, occurred_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                event.id,
                event.action,
                event.tenant_id,
                event.resource_type,
                event.resource_id,
                event.request_id,
                json.dumps(event.details, default=str),
                _ts(event.occurred_at),
            ]
        )

    def audit_events(self, action: Optional[str] = None) -> List[AuditEvent]:
        """Recorded audit events, optionally filtered by action."""
        sql = (
            "SELECT audit_id, action, tenant_id, resource_type, resource_id, request_id, details, occurred_at "
            "FROM audit_log"
        )
        params: List[Any] = []
        if action is not None:
            sql += " WHERE action = ?"
            params.append(action)
        rows = self._fetchall("audit_events", sql + " ORDER BY occurred_at", params)
        return [
            AuditEvent(
                id=row[0],
                action=row[1],
                tenant_id=row[2],
                resource_type=row[3],
                resource_id=row[4],
                request_id=row[5],
                details=json.loads(row[6]) if row[6] else {},
                occurred_at=_parse_ts(row[7]),
            )
            for row in rows
        ]
