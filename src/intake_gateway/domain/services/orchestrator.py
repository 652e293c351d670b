"""Submission Orchestrator.

Sequences the work for one normalized submission inside an active tenant
context:

    4. resolve/upsert the patient (retried, hard failure on exhaustion)
    5. render the intake document (best effort)
    6. upload the rendered artifact (best effort)
    7. upsert the document record keyed by submission id
    8. generate a clinical note, complete submissions only, once per submission id
    9. referral attribution (explicit code / tag-only / inferred)
    10. audit entry recording which optional steps succeeded
    11. detached notification for new, complete patients

Steps 1-3 (idempotency, normalization, completeness) run in the intake
pipeline before this class is called.

Security Impact:
    - Only patient persistence can fail the request; every later step's
      failure is recorded as a warning so a broken collaborator can never
      lose a committed patient write
    - Warnings carry step names and error types, never PHI

Architecture:
    - Domain service coordinating ports; no transport concerns
    - Notification is the only detached step (thread pool); its failures
      are logged and discarded
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.guardrails import RetryPolicy, retry_call
from intake_gateway.domain.models import (
    AttributionResult,
    AuditEvent,
    IntakeDocument,
    NotificationEvent,
    Patient,
    Tenant,
)
from intake_gateway.domain.ports import (
    AuditWriterPort,
    ClinicalNotePort,
    DocumentRendererPort,
    DocumentRepositoryPort,
    NotifierPort,
    ObjectStorePort,
    SideEffectFault,
)
from intake_gateway.domain.services.attribution import ReferralAttributor
from intake_gateway.domain.services.identity_resolver import PatientIdentityResolver

logger = logging.getLogger(__name__)

T = TypeVar('T')

ACTION_COMPLETE = "PATIENT_INTAKE_RECEIVED"
ACTION_PARTIAL = "PARTIAL_INTAKE_RECEIVED"
NEW_PATIENT_EVENT = "new_patient_intake"


@dataclass
class SubmissionContext:
    """Request facts the orchestrator stores alongside the document."""
    request_id: str
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class SubmissionOutcome:
    """Result of orchestrating one submission."""
    patient: Patient
    submission_id: str
    is_new_patient: bool
    is_complete: bool
    upgraded: bool = False
    document: Optional[IntakeDocument] = None
    clinical_note_id: Optional[str] = None
    affiliate: Optional[AttributionResult] = None
    warnings: List[str] = field(default_factory=list)

    def to_response(self, request_id: str) -> Dict[str, Any]:
        """Serialize as the 200 webhook response body."""
        return {
            "success": True,
            "requestId": request_id,
            "patientId": self.patient.id,
            "patientNumber": self.patient.patient_number,
            "submissionId": self.submission_id,
            "isNewPatient": self.is_new_patient,
            "isComplete": self.is_complete,
            "document": {
                "id": self.document.id,
                "url": self.document.artifact_url,
                "rendered": self.document.rendered,
            } if self.document else None,
            "clinicalNote": {"id": self.clinical_note_id} if self.clinical_note_id else None,
            "affiliate": {
                "code": self.affiliate.code,
                "affiliateId": self.affiliate.affiliate_id,
                "tier": self.affiliate.tier.value,
            } if self.affiliate else None,
            "warnings": list(self.warnings),
        }


class SubmissionOrchestrator:
    """Run the patient write and the best-effort side effects for a submission.

    Parameters:
        resolver: Patient identity resolver
        documents: Document repository
        retry_policy: Backoff for the patient upsert
        renderer: Document renderer (optional)
        object_store: Artifact store (optional)
        note_generator: Clinical note generator (optional)
        attributor: Referral attributor (optional)
        audit: Audit writer (optional)
        notifier: Notifier (optional)
        executor: Executor for detached notifications (created on demand)
    """

    def __init__(
        self,
        resolver: PatientIdentityResolver,
        documents: DocumentRepositoryPort,
        retry_policy: Optional[RetryPolicy] = None,
        renderer: Optional[DocumentRendererPort] = None,
        object_store: Optional[ObjectStorePort] = None,
        note_generator: Optional[ClinicalNotePort] = None,
        attributor: Optional[ReferralAttributor] = None,
        audit: Optional[AuditWriterPort] = None,
        notifier: Optional[NotifierPort] = None,
        executor: Optional[Executor] = None,
        notify_workers: int = 2
    ):
        self._resolver = resolver
        self._documents = documents
        self._retry_policy = retry_policy or RetryPolicy()
        self._renderer = renderer
        self._object_store = object_store
        self._note_generator = note_generator
        self._attributor = attributor
        self._audit = audit
        self._notifier = notifier
        self._executor = executor
        self._executor_lock = threading.Lock()
        self._notify_workers = notify_workers
        self._owns_executor = executor is None

    def process(self, intake: CanonicalIntake, tenant: Tenant, context: SubmissionContext) -> SubmissionOutcome:
        """Orchestrate one submission.

        Parameters:
            intake: Normalized submission
            tenant: Tenant bound to the active tenant context
            context: Request facts and warnings collected so far

        Returns:
            SubmissionOutcome

        Raises:
            PersistenceFault: If the patient upsert exhausted its retries
        """
        resolved = retry_call(
            lambda: self._resolver.resolve(intake, tenant),
            self._retry_policy,
            operation="patient_upsert",
            source=intake.source
        )

        outcome = SubmissionOutcome(
            patient=resolved.patient,
            submission_id=intake.submission_id,
            is_new_patient=resolved.is_new,
            is_complete=intake.is_complete,
            upgraded=resolved.upgraded,
            warnings=context.warnings,
        )

        rendered = self._best_effort("document", outcome, lambda: self._render(intake, outcome.patient))
        artifact_url = None
        if rendered:
            artifact_url = self._best_effort(
                "artifact", outcome, lambda: self._upload(rendered, tenant, outcome.patient, intake)
            )
        outcome.document = self._best_effort(
            "document_record", outcome,
            lambda: self._save_document(intake, tenant, outcome.patient, context, rendered, artifact_url)
        )
        outcome.clinical_note_id = self._best_effort(
            "clinical_note", outcome, lambda: self._clinical_note(intake, outcome)
        )
        if self._attributor is not None:
            outcome.affiliate = self._best_effort(
                "attribution", outcome, lambda: self._attributor.attribute(outcome.patient, intake)
            )
        self._best_effort("audit", outcome, lambda: self._record_audit(intake, tenant, context, outcome, artifact_url))
        self._dispatch_notification(intake, tenant, outcome)

        logger.info(
            f"Processed {intake.source} submission {intake.submission_id} for patient "
            f"{outcome.patient.patient_number} (new={outcome.is_new_patient}, "
            f"complete={outcome.is_complete}, warnings={len(outcome.warnings)})"
        )
        return outcome

    def shutdown(self) -> None:
        with self._executor_lock:
            executor = self._executor if self._owns_executor else None
            if executor is not None:
                self._executor = None
        if executor is not None:
            executor.shutdown(wait=True)

    def notification_executor(self) -> Executor:
        """Return the notification executor, creating it once on first use."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._notify_workers, thread_name_prefix="notify")
            return self._executor

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _best_effort(self, step: str, outcome: SubmissionOutcome, fn: Callable[[], T]) -> Optional[T]:
        try:
            return fn()
        except SideEffectFault as e:
            logger.warning(f"Step {e.step} skipped: {e}")
            outcome.warnings.append(e.as_warning())
        except Exception as e:
            logger.warning(f"Step {step} failed: {type(e).__name__}: {e}", exc_info=True)
            outcome.warnings.append(f"{step}: {type(e).__name__}: {e}")
        return None

    def _render(self, intake: CanonicalIntake, patient: Patient) -> Optional[bytes]:
        if self._renderer is None:
            return None
        data = self._renderer.render(intake, patient)
        if not data:
            raise SideEffectFault("Renderer returned an empty document", step="document")
        return data

    def _upload(self, data: bytes, tenant: Tenant, patient: Patient, intake: CanonicalIntake) -> Optional[str]:
        if self._object_store is None:
            return None
        extension = getattr(self._renderer, "file_extension", "pdf")
        key = f"intake/{tenant.id}/{patient.patient_number}/{intake.submission_id}.{extension}"
        return self._object_store.put(data, key)

    def _save_document(
        self,
        intake: CanonicalIntake,
        tenant: Tenant,
        patient: Patient,
        context: SubmissionContext,
        rendered: Optional[bytes],
        artifact_url: Optional[str]
    ) -> IntakeDocument:
        existing = self._documents.get_document(intake.submission_id)
        now = datetime.now(timezone.utc)
        document = IntakeDocument(
            id=existing.id if existing else None,
            tenant_id=tenant.id,
            patient_id=patient.id,
            submission_id=intake.submission_id,
            source=intake.source,
            sections=[section.model_dump() for section in intake.sections],
            artifact_url=artifact_url or (existing.artifact_url if existing else None),
            rendered=bool(rendered) or (existing.rendered if existing else False),
            checkout_completed=intake.is_complete or (existing.checkout_completed if existing else False),
            clinical_note_id=existing.clinical_note_id if existing else None,
            ip_address=context.client_ip,
            user_agent=context.user_agent,
            received_at=existing.received_at if existing else now,
            updated_at=now,
        )
        return self._documents.upsert_document(document)

    def _clinical_note(self, intake: CanonicalIntake, outcome: SubmissionOutcome) -> Optional[str]:
        if not intake.is_complete or self._note_generator is None:
            return None
        document = outcome.document
        if document is None or document.id is None:
            raise SideEffectFault("No document record to attach a note to", step="clinical_note")
        if document.clinical_note_id:
            logger.debug(f"Submission {intake.submission_id} already has clinical note {document.clinical_note_id}")
            return document.clinical_note_id

        note_id = self._note_generator.generate(outcome.patient.id, document.id)
        self._documents.attach_clinical_note(document.id, note_id)
        outcome.document = document.model_copy(update={"clinical_note_id": note_id})
        return note_id

    def _record_audit(
        self,
        intake: CanonicalIntake,
        tenant: Tenant,
        context: SubmissionContext,
        outcome: SubmissionOutcome,
        artifact_url: Optional[str]
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(AuditEvent(
            action=ACTION_COMPLETE if intake.is_complete else ACTION_PARTIAL,
            tenant_id=tenant.id,
            resource_type="patient",
            resource_id=str(outcome.patient.id),
            request_id=context.request_id,
            details={
                "source": intake.source,
                "submission_id": intake.submission_id,
                "is_new_patient": outcome.is_new_patient,
                "upgraded": outcome.upgraded,
                "fallback": intake.is_fallback,
                "document_id": outcome.document.id if outcome.document else None,
                "clinical_note_id": outcome.clinical_note_id,
                "attribution": outcome.affiliate.tier.value if outcome.affiliate else None,
                "steps": {
                    "document": bool(outcome.document and outcome.document.rendered),
                    "artifact": artifact_url is not None,
                    "document_record": outcome.document is not None,
                    "clinical_note": outcome.clinical_note_id is not None,
                    "attribution": outcome.affiliate is not None,
                },
                "warnings": list(outcome.warnings),
            },
        ))

    def _dispatch_notification(self, intake: CanonicalIntake, tenant: Tenant, outcome: SubmissionOutcome) -> None:
        if self._notifier is None or not (outcome.is_new_patient and intake.is_complete):
            return
        event = NotificationEvent(
            kind=NEW_PATIENT_EVENT,
            tenant_id=tenant.id,
            patient_id=outcome.patient.id,
            submission_id=intake.submission_id,
            source=intake.source,
        )
        try:
            self.notification_executor().submit(self._notify_quietly, event)
        except RuntimeError as e:
            logger.warning(f"Notification not dispatched: {e}")

    def _notify_quietly(self, event: NotificationEvent) -> None:
        try:
            self._notifier.notify(event)
        except Exception as e:
            logger.warning(f"Notification {event.kind} for patient {event.patient_id} failed: {type(e).__name__}: {e}")
