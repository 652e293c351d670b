"""Domain Ports - Abstract Contracts for the Intake Pipeline.

This module defines the Port interfaces (abstract contracts) that Adapters must implement,
plus the exception taxonomy and Result type shared across the pipeline.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Tenant-scoped repository operations read the tenant from the active tenant
      context, so no adapter call can run without an explicit tenant stamp
    - Security-class faults (authentication, tenant) are typed separately so
      operators can alert on them without paging on ordinary failures
    - The PHI cipher contract forbids raising on malformed ciphertext

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Storage adapters (in-memory, DuckDB) implement the repository ports
    - Collaborator adapters (renderer, object store, notifier, etc.) implement
      the collaborator ports
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.models import (
    AttributionResult,
    AuditEvent,
    DeadLetterEntry,
    IdempotencyRecord,
    IntakeDocument,
    NotificationEvent,
    Patient,
    Tenant,
    UnmatchedSubmission,
)

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Used by adapter lifecycle operations (schema initialization, health
    probes) where the caller wants to report rather than abort.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, etc.)
        error_details: Additional error context
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class IntakeError(Exception):
    """Base exception for all intake pipeline errors.

    Attributes:
        source: Intake source the error occurred for (if known)
        details: Additional error context (never PHI)
        http_status: Status code the HTTP layer maps this error to
        code: Stable machine-readable error code
        security_event: True for faults operators must be alerted on
    """

    http_status = 500
    code = "INTAKE_ERROR"
    security_event = False

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.details = details or {}


class AuthenticationFault(IntakeError):
    """Raised when a request carries no valid credential. Terminal (401)."""

    http_status = 401
    code = "UNAUTHORIZED"
    security_event = True


class TenantFault(IntakeError):
    """Raised when tenant binding is misconfigured or fails its assertion.

    A mismatch between the resolved tenant and the pinned expected tenant is
    a security alert: the request is aborted before any tenant data is read.

    Attributes:
        expected_tenant_id: Pinned tenant id (if any)
        resolved_tenant_id: Tenant id the lookup returned (if any)
    """

    http_status = 500
    code = "TENANT_FAULT"
    security_event = True

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        details: Optional[dict] = None,
        expected_tenant_id: Optional[int] = None,
        resolved_tenant_id: Optional[int] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, source=source, details=details)
        self.expected_tenant_id = expected_tenant_id
        self.resolved_tenant_id = resolved_tenant_id
        if code:
            self.code = code


class TenantNotResolvedError(IntakeError):
    """Raised when a multi-tenant source cannot bind a payload to any tenant.

    Not a fault: the delivery is stored for reconciliation and acknowledged
    with 202.
    """

    http_status = 202
    code = "TENANT_UNRESOLVED"


class PayloadFault(IntakeError):
    """Raised when the request body is not a usable JSON object. Terminal (400)."""

    http_status = 400
    code = "INVALID_PAYLOAD"


class NormalizationFault(IntakeError):
    """Raised by a normalizer strategy; callers degrade to a fallback record."""

    code = "NORMALIZATION_FAILED"


class StorageError(IntakeError):
    """Raised when a storage operation fails.

    Attributes:
        operation: The storage operation that failed (connect, create_patient, etc.)
        details: Additional error details
    """

    code = "STORAGE_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.operation = operation


class UniqueConflictError(StorageError):
    """Raised when an insert violates a storage-enforced uniqueness constraint.

    Attributes:
        constraint: Name of the violated constraint
    """

    code = "UNIQUE_CONFLICT"

    def __init__(self, message: str, constraint: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, operation=operation, details=details)
        self.constraint = constraint


class PersistenceFault(IntakeError):
    """Raised when a transient-infrastructure step exhausts its retries.

    Attributes:
        operation: Operation that was retried (tenant_lookup, patient_upsert)
        attempts: Number of attempts made
    """

    http_status = 500
    code = "PERSISTENCE_FAILED"

    def __init__(
        self,
        message: str,
        operation: str,
        attempts: int,
        source: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, source=source, details=details)
        self.operation = operation
        self.attempts = attempts


class SideEffectFault(IntakeError):
    """Raised by a best-effort orchestration step; always converted to a warning.

    Attributes:
        step: Orchestration step name (document, artifact, clinical_note, ...)
    """

    code = "SIDE_EFFECT_FAILED"

    def __init__(self, message: str, step: str, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.step = step

    def as_warning(self) -> str:
        return f"{self.step}: {self}"


# ============================================================================
# Normalizer Port
# ============================================================================

class NormalizerPort(ABC):
    """Abstract contract for per-source payload normalizers.

    Each intake platform gets one strategy that maps its key set onto the
    CanonicalIntake record.

    Key Principles:
        - Alias lists per canonical field, first non-empty value wins
        - Missing identity data becomes a placeholder sentinel, never ''
        - Strategies raise NormalizationFault; the pipeline degrades to a
          fallback record
    """

    source_name: str = ""

    @abstractmethod
    def normalize(self, payload: Dict[str, Any], raw_body: bytes = b"") -> CanonicalIntake:
        """Normalize a decoded payload.

        Parameters:
            payload: Decoded JSON object
            raw_body: Raw request bytes (used to derive a stable submission id)

        Returns:
            CanonicalIntake: Normalized record

        Raises:
            NormalizationFault: If the payload cannot be normalized
        """
        pass


# ============================================================================
# Storage Ports
# ============================================================================

class TenantRepositoryPort(ABC):
    """Tenant lookups. Tenants are global, so these are not tenant-scoped."""

    @abstractmethod
    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        pass

    @abstractmethod
    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        pass

    @abstractmethod
    def list_tenants(self) -> List[Tenant]:
        pass

    @abstractmethod
    def save_tenant(self, tenant: Tenant) -> Tenant:
        pass


class PatientRepositoryPort(ABC):
    """Patient persistence, scoped to the active tenant context.

    Every method reads the tenant id from the tenant context and raises
    TenantFault when called outside one.
    """

    @abstractmethod
    def list_recent_patients(self, limit: int) -> List[Patient]:
        """Return up to `limit` patients of the current tenant, newest first."""
        pass

    @abstractmethod
    def get_patient(self, patient_id: int) -> Optional[Patient]:
        pass

    @abstractmethod
    def create_patient(self, patient: Patient) -> Patient:
        """Insert a patient.

        Raises:
            UniqueConflictError: If (tenant_id, patient_number) already exists
            StorageError: On any other storage failure
        """
        pass

    @abstractmethod
    def update_patient(self, patient: Patient) -> Patient:
        pass

    @abstractmethod
    def next_patient_number(self, prefix: str) -> str:
        """Generate the next sequential patient number for the current tenant."""
        pass

    @abstractmethod
    def count_patients(self) -> int:
        pass


class DocumentRepositoryPort(ABC):
    """Intake document persistence, keyed by (tenant, submission id)."""

    @abstractmethod
    def get_document(self, submission_id: str) -> Optional[IntakeDocument]:
        pass

    @abstractmethod
    def upsert_document(self, document: IntakeDocument) -> IntakeDocument:
        """Insert or update the document for document.submission_id."""
        pass

    @abstractmethod
    def attach_clinical_note(self, document_id: int, note_id: str) -> None:
        pass

    @abstractmethod
    def count_documents(self) -> int:
        pass


class ClinicalNoteRepositoryPort(ABC):
    """Draft clinical note records, scoped to the active tenant context."""

    @abstractmethod
    def insert_clinical_note(self, patient_id: int, document_id: int) -> str:
        pass

    @abstractmethod
    def list_clinical_notes(self, patient_id: int) -> List[Dict[str, Any]]:
        pass


class IdempotencyStorePort(ABC):
    """Write-once store of delivery keys and their cached responses."""

    @abstractmethod
    def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        pass


class UnmatchedSubmissionPort(ABC):
    """Store for deliveries that could not be bound to a tenant."""

    @abstractmethod
    def save_unmatched(self, submission: UnmatchedSubmission) -> None:
        pass

    @abstractmethod
    def list_unmatched(self) -> List[UnmatchedSubmission]:
        pass


class AuditWriterPort(ABC):
    """Audit trail sink: record(event)."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass


class StoragePort(
    TenantRepositoryPort,
    PatientRepositoryPort,
    DocumentRepositoryPort,
    ClinicalNoteRepositoryPort,
    IdempotencyStorePort,
    UnmatchedSubmissionPort,
    AuditWriterPort,
):
    """Complete storage contract implemented by one storage engine.

    Security Impact:
        - Patient, document and clinical note operations are tenant-scoped
        - Uniqueness of (tenant_id, patient_number) and (tenant_id, submission_id)
          is enforced by the store, not by application locks
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables/indexes. Idempotent."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the store answers a trivial query."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


# ============================================================================
# Collaborator Ports
# ============================================================================

class PHICipherPort(ABC):
    """Field-level PHI encryption.

    decrypt() must never raise: malformed or foreign ciphertext degrades to
    returning the input unchanged.
    """

    @abstractmethod
    def encrypt(self, value: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, cipher: str) -> str:
        pass


class DocumentRendererPort(ABC):
    """Render an intake document for the patient chart."""

    file_extension: str = "pdf"

    @abstractmethod
    def render(self, intake: CanonicalIntake, patient: Patient) -> bytes:
        pass


class ObjectStorePort(ABC):
    @abstractmethod
    def put(self, data: bytes, key: str) -> str:
        """Store bytes under key and return a retrievable URL."""
        pass


class ClinicalNotePort(ABC):
    @abstractmethod
    def generate(self, patient_id: int, document_id: int) -> str:
        """Create a clinical note for the document and return its id."""
        pass


class AffiliateEnginePort(ABC):
    """Referral attribution engine."""

    @abstractmethod
    def attribute(self, patient_id: int, code: str, tenant_id: int) -> Optional[AttributionResult]:
        """Attribute to the active affiliate owning code, or None if unknown."""
        pass

    @abstractmethod
    def attribute_by_recent_touch(
        self,
        patient_id: int,
        referrer: Optional[str],
        tenant_id: int
    ) -> Optional[AttributionResult]:
        """Infer attribution from recent click/touch history."""
        pass


class NotifierPort(ABC):
    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        pass


class DeadLetterPort(ABC):
    """Durable queue for deliveries awaiting out-of-band replay."""

    @abstractmethod
    def enqueue(self, entry: DeadLetterEntry) -> None:
        pass

    @abstractmethod
    def list_entries(self) -> List[DeadLetterEntry]:
        pass
