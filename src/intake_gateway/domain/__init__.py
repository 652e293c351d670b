"""Domain layer for Intake-Gateway.

This module contains the canonical intake schema, the stored record models,
the ports the core depends on, and the domain services that implement intake
processing. Domain models are pure Python with no external dependencies
beyond Pydantic.
"""

from .canonical import CanonicalIntake, IntakeAnswer, IntakeIdentity, IntakeSection
from .models import Patient, SourceConfig, Tenant

__all__ = [
    "CanonicalIntake",
    "IntakeAnswer",
    "IntakeIdentity",
    "IntakeSection",
    "Patient",
    "SourceConfig",
    "Tenant",
]
