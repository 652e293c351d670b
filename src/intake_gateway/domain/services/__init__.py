"""Domain Services.

This package contains domain services that implement intake business logic
without infrastructure dependencies beyond the tenant context and logging.
"""

from intake_gateway.domain.services.attribution import ReferralAttributor
from intake_gateway.domain.services.dead_letter import DeadLetterHandler
from intake_gateway.domain.services.idempotency import IdempotencyGuard
from intake_gateway.domain.services.identity_resolver import PatientIdentityResolver
from intake_gateway.domain.services.intake_pipeline import IntakePipeline, PipelineResponse
from intake_gateway.domain.services.orchestrator import SubmissionOrchestrator, SubmissionOutcome
from intake_gateway.domain.services.tenant_auth import TenantResolver, WebhookAuthenticator, WebhookRequest

__all__ = [
    "DeadLetterHandler",
    "IdempotencyGuard",
    "IntakePipeline",
    "PatientIdentityResolver",
    "PipelineResponse",
    "ReferralAttributor",
    "SubmissionOrchestrator",
    "SubmissionOutcome",
    "TenantResolver",
    "WebhookAuthenticator",
    "WebhookRequest",
]
