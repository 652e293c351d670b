"""Webhook Intake Pipeline.

Request-level flow for one webhook delivery:

    source detection -> tenant resolution + authentication -> tenant context
    -> idempotency guard -> payload parse -> normalizer -> orchestrator
    -> idempotency persist -> response

Every outcome is returned as a PipelineResponse (status + JSON body) so the
HTTP layer only has to serialize it.

Security Impact:
    - The source-level secret is checked before tenant resolution so that
      tenant lookup failures are only dead-lettered for callers who proved
      they hold a credential
    - Unauthenticated bodies are never parsed strictly, queued or stored
    - All patient work runs inside tenant_scope(); the scope is torn down on
      every exit path

Architecture:
    - Domain service over ports; normalizers are injected as a factory so the
      domain never imports adapters
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.models import SourceConfig, Tenant, UnmatchedSubmission
from intake_gateway.domain.ports import (
    AuthenticationFault,
    IntakeError,
    NormalizationFault,
    NormalizerPort,
    PayloadFault,
    PersistenceFault,
    StorageError,
    TenantFault,
    TenantNotResolvedError,
    UnmatchedSubmissionPort,
)
from intake_gateway.domain.services.dead_letter import DeadLetterHandler
from intake_gateway.domain.services.idempotency import IdempotencyGuard
from intake_gateway.domain.services.normalization import fallback_intake
from intake_gateway.domain.services.orchestrator import SubmissionContext, SubmissionOrchestrator
from intake_gateway.domain.services.tenant_auth import TenantResolver, WebhookAuthenticator, WebhookRequest
from intake_gateway.infrastructure.request_context import tenant_scope

logger = logging.getLogger(__name__)

SOURCE_HEADER = "x-intake-source"

# Vendor-specific headers that identify the sending platform
SOURCE_SNIFF_HEADERS = {
    "x-heyflow-secret": "heyflow",
    "x-heyflow-signature": "heyflow",
}


@dataclass(frozen=True)
class PipelineResponse:
    status: int
    body: Dict[str, Any]


def detect_source(hint: Optional[str], headers: Mapping[str, str]) -> Optional[str]:
    """Determine the intake source for a delivery.

    Order: explicit hint (query parameter or path), X-Intake-Source header,
    then vendor header sniffing.

    Parameters:
        hint: Source named by the caller, if any
        headers: Request headers with lower-cased names

    Returns:
        Lower-cased source name, or None if nothing identifies the source
    """
    for candidate in (hint, headers.get(SOURCE_HEADER)):
        if candidate and candidate.strip():
            return candidate.strip().lower()
    for header, source in SOURCE_SNIFF_HEADERS.items():
        if headers.get(header):
            return source
    return None


def peek_payload(raw_body: bytes) -> Optional[Dict[str, Any]]:
    """Lenient decode used for tenant hints. Never raises."""
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def parse_payload(raw_body: bytes, source: str) -> Dict[str, Any]:
    """Strict decode of an authenticated delivery.

    Raises:
        PayloadFault: If the body is empty, not JSON, or not a JSON object
    """
    if not raw_body or not raw_body.strip():
        raise PayloadFault("Empty request body", source=source)
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise PayloadFault(f"Request body is not valid JSON: {e}", source=source) from e
    if not isinstance(payload, dict):
        raise PayloadFault("Request body must be a JSON object", source=source)
    return payload


def error_body(error: IntakeError, request_id: str, queued: Optional[bool] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "error": str(error),
        "code": error.code,
        "requestId": request_id,
    }
    if queued is not None:
        body["queued"] = queued
    return body


class IntakePipeline:
    """Process webhook deliveries end to end.

    Parameters:
        sources: Source bindings keyed by source name
        authenticator: Webhook authenticator
        tenant_resolver: Tenant resolver
        idempotency: Idempotency guard
        orchestrator: Submission orchestrator
        dead_letters: Dead-letter handler
        unmatched: Store for deliveries with no resolvable tenant
        normalizer_factory: Maps a strategy name to a NormalizerPort
    """

    def __init__(
        self,
        sources: Dict[str, SourceConfig],
        authenticator: WebhookAuthenticator,
        tenant_resolver: TenantResolver,
        idempotency: IdempotencyGuard,
        orchestrator: SubmissionOrchestrator,
        dead_letters: DeadLetterHandler,
        unmatched: UnmatchedSubmissionPort,
        normalizer_factory: Callable[[str], NormalizerPort]
    ):
        self._sources = sources
        self._authenticator = authenticator
        self._tenant_resolver = tenant_resolver
        self._idempotency = idempotency
        self._orchestrator = orchestrator
        self._dead_letters = dead_letters
        self._unmatched = unmatched
        self._normalizer_factory = normalizer_factory

    @property
    def sources(self) -> Dict[str, SourceConfig]:
        return self._sources

    def close(self) -> None:
        """Wait for detached notifications and release their workers."""
        self._orchestrator.shutdown()

    def source_status(self, name: str) -> Dict[str, Any]:
        """Describe a source binding for the health endpoint. Never includes secrets."""
        source = self._sources.get(name.strip().lower())
        if source is None:
            return {"source": name, "configured": False}
        return {
            "source": source.name,
            "configured": True,
            "clinicIsolation": "dynamic" if source.is_multi_tenant else "static",
            "authKinds": [kind.value for kind in source.auth_kinds],
            "tenantSubdomain": source.tenant_subdomain,
            "signatureRequired": source.require_signature,
        }

    def handle(self, request: WebhookRequest) -> PipelineResponse:
        """Process one delivery.

        Parameters:
            request: Webhook request; request.source holds the caller's hint

        Returns:
            PipelineResponse: Status code and JSON body
        """
        request_id = request.request_id
        source_name = detect_source(request.source, request.headers)
        source = self._sources.get(source_name) if source_name else None
        if source is None:
            fault = PayloadFault(f"Unknown intake source '{source_name}'" if source_name else "Intake source not specified")
            logger.warning(f"Rejected delivery {request_id}: {fault}")
            return PipelineResponse(400, error_body(fault, request_id))

        pre_authenticated = self._authenticator.authenticate_source(request, source) is not None

        try:
            tenant = self._tenant_resolver.resolve(request, source, peek_payload(request.raw_body))
        except TenantNotResolvedError as e:
            if pre_authenticated:
                return self._store_unmatched(request, source, str(e))
            fault = AuthenticationFault("Invalid or missing webhook credentials", source=source.name)
            return PipelineResponse(401, error_body(fault, request_id))
        except TenantFault as e:
            return PipelineResponse(500, error_body(e, request_id, queued=False))
        except PersistenceFault as e:
            queued = False
            if pre_authenticated:
                queued = self._dead_letters.capture(request.raw_body, source.name, str(e), request_id=request_id)
            return PipelineResponse(500, error_body(e, request_id, queued=queued))

        try:
            if not pre_authenticated:
                self._authenticator.authenticate(request, source, tenant)
            self._authenticator.verify_signature(request, source)
        except AuthenticationFault as e:
            return PipelineResponse(401, error_body(e, request_id))
        except TenantFault as e:
            return PipelineResponse(500, error_body(e, request_id, queued=False))

        with tenant_scope(tenant.id):
            return self._process(request, source, tenant)

    def _process(self, request: WebhookRequest, source: SourceConfig, tenant: Tenant) -> PipelineResponse:
        request_id = request.request_id

        hit = self._idempotency.check(source.name, request.raw_body, tenant.id)
        if hit is not None:
            return PipelineResponse(hit.status, hit.duplicate_response(request_id))

        try:
            payload = parse_payload(request.raw_body, source.name)
        except PayloadFault as e:
            logger.warning(f"Rejected {source.name} delivery {request_id}: {e}")
            return PipelineResponse(400, error_body(e, request_id))

        context = SubmissionContext(
            request_id=request_id,
            client_ip=request.client_ip,
            user_agent=request.user_agent,
        )
        intake = self._normalize(payload, request, source, context)

        try:
            outcome = self._orchestrator.process(intake, tenant, context)
        except PersistenceFault as e:
            queued = self._dead_letters.capture(
                request.raw_body,
                source.name,
                str(e),
                submission_id=intake.submission_id,
                request_id=request_id
            )
            return PipelineResponse(500, error_body(e, request_id, queued=queued))

        body = outcome.to_response(request_id)
        self._idempotency.remember(source.name, request.raw_body, 200, body, tenant.id)
        return PipelineResponse(200, body)

    def _normalize(
        self,
        payload: Dict[str, Any],
        request: WebhookRequest,
        source: SourceConfig,
        context: SubmissionContext
    ) -> CanonicalIntake:
        normalizer = self._normalizer_factory(source.strategy)
        try:
            return normalizer.normalize(payload, request.raw_body)
        except NormalizationFault as e:
            logger.warning(f"Normalization failed for {source.name} delivery {request.request_id}, using fallback: {e}")
            context.warnings.append(f"normalization: {e}; stored as fallback record")
            return fallback_intake(source.name, request.request_id)

    def _store_unmatched(self, request: WebhookRequest, source: SourceConfig, reason: str) -> PipelineResponse:
        request_id = request.request_id
        hit = self._idempotency.check(source.name, request.raw_body)
        if hit is not None:
            return PipelineResponse(hit.status, hit.duplicate_response(request_id))

        body = {"received": True, "status": "unmatched", "requestId": request_id}
        try:
            self._unmatched.save_unmatched(UnmatchedSubmission(
                source=source.name,
                payload=request.raw_body.decode("utf-8", errors="replace"),
                reason=reason,
                request_id=request_id,
            ))
        except StorageError as e:
            logger.error(f"Failed to store unmatched {source.name} delivery {request_id}: {e}")
            queued = self._dead_letters.capture(request.raw_body, source.name, reason, request_id=request_id)
            fault = PersistenceFault(str(e), operation="save_unmatched", attempts=1, source=source.name)
            return PipelineResponse(500, error_body(fault, request_id, queued=queued))

        logger.warning(f"Stored unmatched {source.name} delivery {request_id}: {reason}")
        self._idempotency.remember(source.name, request.raw_body, 202, body)
        return PipelineResponse(202, body)
