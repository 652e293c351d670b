"""Persistent Domain Models.

Pydantic models for everything the intake pipeline stores or hands to a
collaborator: tenants, patients, intake documents, idempotency records,
dead-letter entries and audit events.

Security Impact:
    - Patient identity fields hold ciphertext only; plain values exist in
      memory during identity resolution and are never assigned back here
    - Tenant credentials are stored encrypted and decrypted on demand
    - tenant_id on a Patient is immutable once set

Architecture:
    - Domain layer, no infrastructure imports
    - Storage adapters persist and rehydrate these models
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_patient_number(prefix: str, sequence: int) -> str:
    """Per-tenant sequential patient number, e.g. PT-000042."""
    return f"{prefix}-{sequence:06d}"


def patient_number_sequence(patient_number: str, prefix: str) -> int:
    """Numeric suffix of a patient number, or 0 if it has another prefix."""
    head, _, tail = patient_number.rpartition("-")
    if head != prefix or not tail.isdigit():
        return 0
    return int(tail)


class Tenant(BaseModel):
    """A clinic: the isolation boundary for all patient data.

    Attributes:
        id: Numeric tenant identifier
        subdomain: Unique clinic subdomain used for static source binding
        name: Display name
        inbound_username: Encrypted Basic-auth username (optional)
        inbound_password: Encrypted Basic-auth password (optional)
        webhook_secret: Encrypted per-tenant shared secret (optional)
        patient_number_prefix: Prefix for per-tenant sequential patient numbers
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    subdomain: str = Field(..., min_length=1)
    name: str = Field(default="")
    inbound_username: Optional[str] = None
    inbound_password: Optional[str] = None
    webhook_secret: Optional[str] = None
    patient_number_prefix: str = Field(default="PT")

    @field_validator("subdomain")
    @classmethod
    def normalize_subdomain(cls, v: str) -> str:
        return v.strip().lower()


class Patient(BaseModel):
    """Stored patient record with encrypted identity fields.

    Tags are an ordered set (list without duplicates) and notes are an
    append-only newline-separated log.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: Optional[int] = Field(default=None, description="Storage surrogate key")
    tenant_id: int = Field(..., ge=1)
    patient_number: str = Field(..., min_length=1)
    first_name: str = Field(..., description="Encrypted")
    last_name: str = Field(..., description="Encrypted")
    email: str = Field(..., description="Encrypted")
    phone: str = Field(..., description="Encrypted")
    dob: str = Field(..., description="Encrypted")
    gender: str = Field(default="m")
    address1: str = Field(default="", description="Encrypted")
    address2: str = Field(default="", description="Encrypted")
    city: str = Field(default="")
    state: str = Field(default="")
    zip: str = Field(default="")
    tags: List[str] = Field(default_factory=list)
    notes: str = Field(default="")
    source: str = Field(default="webhook")
    source_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in v:
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class IntakeDocument(BaseModel):
    """Structured intake document, unique per (tenant, submission id)."""

    id: Optional[int] = None
    tenant_id: int
    patient_id: int
    submission_id: str
    source: str
    sections: List[Dict[str, Any]] = Field(default_factory=list)
    artifact_url: Optional[str] = None
    rendered: bool = False
    checkout_completed: bool = False
    clinical_note_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    received_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class IdempotencyRecord(BaseModel):
    """Cached response for one unique delivery. Write-once."""

    model_config = ConfigDict(frozen=True)

    key: str
    source: str
    response_status: int
    response_body: Dict[str, Any]
    created_at: datetime = Field(default_factory=utc_now)


class DeadLetterEntry(BaseModel):
    """Unprocessed delivery awaiting out-of-band replay. Write-once."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: str
    source: str
    submission_id: Optional[str] = None
    reason: str
    request_id: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utc_now)


class UnmatchedSubmission(BaseModel):
    """Valid delivery that could not be bound to a tenant."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    payload: str
    reason: str
    request_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utc_now)


class AttributionTier(str, Enum):
    EXPLICIT_MATCH = "explicit_match"
    TAG_ONLY = "tag_only"
    INFERRED = "inferred"


class AttributionResult(BaseModel):
    """Outcome of referral attribution for one submission."""

    model_config = ConfigDict(frozen=True)

    code: Optional[str] = None
    affiliate_id: Optional[int] = None
    tier: AttributionTier


class AuditEvent(BaseModel):
    """Audit trail entry handed to the audit writer."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: str
    tenant_id: Optional[int] = None
    resource_type: str = "patient"
    resource_id: Optional[str] = None
    request_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)


class NotificationEvent(BaseModel):
    """Fire-and-forget notification payload."""

    model_config = ConfigDict(frozen=True)

    kind: str
    tenant_id: int
    patient_id: int
    submission_id: str
    source: str
    occurred_at: datetime = Field(default_factory=utc_now)


class CredentialKind(str, Enum):
    """Credential kinds a source may accept."""
    HEADER_SECRET = "header_secret"
    BEARER = "bearer"
    BASIC = "basic"


class SourceConfig(BaseModel):
    """Binding and authentication policy for one intake source.

    A source with tenant_subdomain is statically bound to that clinic; a
    source without one is multi-tenant and resolves the clinic per request.

    Security Impact:
        - Secrets are SecretStr and never appear in logs or repr
        - expected_tenant_id pins the static binding as a defense-in-depth
          assertion checked after every tenant lookup
    """

    name: str = Field(..., min_length=1)
    normalizer: Optional[str] = Field(default=None, description="Normalizer strategy (defaults to name)")
    tenant_subdomain: Optional[str] = Field(default=None, description="Static tenant binding")
    expected_tenant_id: Optional[int] = Field(default=None, description="Pinned tenant id assertion")
    secret: Optional[SecretStr] = Field(default=None, description="Source-level shared secret")
    auth_kinds: List[CredentialKind] = Field(
        default_factory=lambda: [CredentialKind.HEADER_SECRET, CredentialKind.BEARER]
    )
    accepted_usernames: List[str] = Field(default_factory=list)
    require_signature: bool = False
    signing_secret: Optional[SecretStr] = None

    @field_validator("name", "normalizer", "tenant_subdomain")
    @classmethod
    def lowercase_identifiers(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else v

    @property
    def strategy(self) -> str:
        return self.normalizer or self.name

    @property
    def is_multi_tenant(self) -> bool:
        return self.tenant_subdomain is None

    def accepts(self, kind: CredentialKind) -> bool:
        return kind in self.auth_kinds
