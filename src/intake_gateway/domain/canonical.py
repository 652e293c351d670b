"""Canonical Intake Model.

This module defines the source-independent intake record that every payload
normalizer produces. Downstream services (identity resolution, document
rendering, attribution) only ever see this shape, never raw vendor payloads.

Security Impact:
    - Placeholder sentinels are explicit constants so dedup logic can tell
      "not provided" apart from real identity data
    - Identity values are plain text here and only leave the process encrypted
    - The canonical record is derived per request and never persisted as-is

Architecture:
    - Pure domain models (Pydantic) with zero infrastructure dependencies
    - Produced by adapters.normalizers, consumed by domain services
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Placeholder Sentinels
# ============================================================================

PLACEHOLDER_EMAIL = "unknown@example.com"
PLACEHOLDER_PHONE = "0000000000"
PLACEHOLDER_NAME = "Unknown"
PLACEHOLDER_DOB = "1900-01-01"
DEFAULT_GENDER = "m"

# Fallback records use generated addresses such as unknown-1712345678@intake.wellmedr.invalid
_PLACEHOLDER_EMAIL_PATTERN = re.compile(r"^unknown(-[^@\s]+)?@intake\.[^@\s]+\.invalid$", re.IGNORECASE)


def is_placeholder_email(value: Optional[str]) -> bool:
    """Return True when the email carries no real identity data."""
    if not value or not value.strip():
        return True
    candidate = value.strip().lower()
    return candidate == PLACEHOLDER_EMAIL or bool(_PLACEHOLDER_EMAIL_PATTERN.match(candidate))


def is_placeholder_phone(value: Optional[str]) -> bool:
    """Return True when the phone carries no real identity data."""
    if not value:
        return True
    digits = re.sub(r"\D", "", value)
    return not digits or digits == PLACEHOLDER_PHONE


def is_placeholder_name(value: Optional[str]) -> bool:
    if not value or not value.strip():
        return True
    return value.strip().lower() in ("unknown", "lead", "patient")


def is_placeholder_dob(value: Optional[str]) -> bool:
    return not value or value == PLACEHOLDER_DOB


def placeholder_email_for(source: str, token: str) -> str:
    """Build an obviously fake, unique email for fallback records."""
    return f"unknown-{token}@intake.{source}.invalid"


# ============================================================================
# Enumerations
# ============================================================================

class TreatmentType(str, Enum):
    """Programme a submission belongs to."""
    WEIGHT_LOSS = "weight_loss"
    PEPTIDES = "peptides"
    NAD_PLUS = "nad_plus"
    BETTER_SEX = "better_sex"
    TESTOSTERONE = "testosterone"
    BASELINE_BLOODWORK = "baseline_bloodwork"
    GENERAL = "general"


TREATMENT_TAGS = {
    TreatmentType.WEIGHT_LOSS: ["weight-loss", "glp1"],
    TreatmentType.PEPTIDES: ["peptides"],
    TreatmentType.NAD_PLUS: ["nad-plus"],
    TreatmentType.BETTER_SEX: ["better-sex"],
    TreatmentType.TESTOSTERONE: ["testosterone", "trt"],
    TreatmentType.BASELINE_BLOODWORK: ["baseline-bloodwork", "labs"],
    TreatmentType.GENERAL: [],
}


# ============================================================================
# Canonical Models
# ============================================================================

class IntakeIdentity(BaseModel):
    """Identity and address fields of an intake submission.

    Every field holds either a real value or its placeholder sentinel; it is
    never empty after normalization.
    """

    model_config = ConfigDict(frozen=True)

    first_name: str = Field(default=PLACEHOLDER_NAME, description="Title-cased given name")
    last_name: str = Field(default=PLACEHOLDER_NAME, description="Title-cased family name")
    email: str = Field(default=PLACEHOLDER_EMAIL, description="Lowercased email address")
    phone: str = Field(default=PLACEHOLDER_PHONE, description="Digits-only phone, no US country code")
    dob: str = Field(default=PLACEHOLDER_DOB, description="Date of birth (YYYY-MM-DD)")
    gender: str = Field(default=DEFAULT_GENDER, description="Canonical gender code (f/m)")
    address1: str = Field(default="", description="Street address line 1")
    address2: str = Field(default="", description="Street address line 2")
    city: str = Field(default="", description="City")
    state: str = Field(default="", description="State / region code")
    zip: str = Field(default="", description="Postal code")

    @field_validator("gender")
    @classmethod
    def validate_gender(cls, v: str) -> str:
        if v not in ("f", "m"):
            raise ValueError(f"Gender must be canonical 'f' or 'm', got '{v}'")
        return v

    @field_validator("dob")
    @classmethod
    def validate_dob(cls, v: str) -> str:
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", v):
            raise ValueError(f"Date of birth must be YYYY-MM-DD, got '{v}'")
        return v

    def has_real_email(self) -> bool:
        return not is_placeholder_email(self.email)

    def has_real_phone(self) -> bool:
        return not is_placeholder_phone(self.phone)

    def has_real_name_and_dob(self) -> bool:
        return not (
            is_placeholder_name(self.first_name)
            or is_placeholder_name(self.last_name)
            or is_placeholder_dob(self.dob)
        )


class IntakeAnswer(BaseModel):
    """A single question/answer pair as submitted."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    value: str


class IntakeSection(BaseModel):
    """A titled group of answers, in display order."""

    model_config = ConfigDict(frozen=True)

    title: str
    answers: List[IntakeAnswer] = Field(default_factory=list)


class CanonicalIntake(BaseModel):
    """Source-independent intake submission.

    Derived per request by a payload normalizer and discarded once the
    orchestrator has finished with it.

    Security Impact:
        - `is_fallback` marks records built after a normalization failure so
          they are tagged for review instead of trusted
        - Identity values are plain text and must be encrypted before storage
    """

    model_config = ConfigDict(frozen=True)

    submission_id: str = Field(..., min_length=1, description="Stable id across redelivery")
    source: str = Field(..., min_length=1, description="Originating platform identifier")
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    identity: IntakeIdentity = Field(default_factory=IntakeIdentity)
    sections: List[IntakeSection] = Field(default_factory=list)
    treatment_type: TreatmentType = Field(default=TreatmentType.GENERAL)
    is_complete: bool = Field(default=False, description="Completion signal or checkout marker present")
    promo_code: Optional[str] = Field(default=None, description="Uppercased referral/promo code")
    referrer: Optional[str] = Field(default=None, description="Referring URL or utm source")
    is_fallback: bool = Field(default=False)

    @field_validator("promo_code")
    @classmethod
    def normalize_promo_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @property
    def answers(self) -> List[IntakeAnswer]:
        """All answers across sections, flattened."""
        return [answer for section in self.sections for answer in section.answers]

    @property
    def treatment_tags(self) -> List[str]:
        return list(TREATMENT_TAGS.get(self.treatment_type, []))
