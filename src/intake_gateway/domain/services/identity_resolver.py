"""Patient Identity Resolver.

Decides whether an intake submission belongs to an existing patient of the
current tenant, then creates or updates that patient.

Identity fields are encrypted at rest, so equality cannot be pushed down to
storage. Resolution fetches a bounded, recency-ordered window of the tenant's
patients, decrypts them in memory and compares in priority order:

    1. email (case-insensitive), skipped for placeholder emails
    2. phone, skipped for the placeholder phone
    3. (first name, last name, date of birth), case-insensitive, skipped if
       any part is a placeholder

Each rule is evaluated across the whole window before the next rule runs, so
an email match always beats a phone match on a different, more recent patient.

Security Impact:
    - Candidates come only from the active tenant context
    - Decryption failures degrade to comparing ciphertext, never raise
    - Placeholder sentinels never match, so "no data" submissions cannot be
      merged into an unrelated patient

Architecture:
    - Domain service over PatientRepositoryPort and PHICipherPort
    - Creation is optimistic: storage enforces unique patient numbers, and a
      conflict is retried with jittered backoff, switching to update once a
      concurrent writer's row becomes visible
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from intake_gateway.domain.canonical import (
    CanonicalIntake,
    IntakeIdentity,
    is_placeholder_dob,
    is_placeholder_email,
    is_placeholder_name,
    is_placeholder_phone,
)
from intake_gateway.domain.guardrails import RetryPolicy
from intake_gateway.domain.models import Patient, Tenant
from intake_gateway.domain.ports import (
    PersistenceFault,
    PHICipherPort,
    PatientRepositoryPort,
    UniqueConflictError,
)

logger = logging.getLogger(__name__)

COMPLETE_TAG = "complete-intake"
PARTIAL_TAGS = ("partial", "partial-lead", "needs-followup")
STUB_TAGS = ("stub-from-invoice", "needs-intake-merge")
MERGED_STUB_TAG = "merged-from-stub"
REVIEW_TAG = "needs-review"


def submission_tags(intake: CanonicalIntake) -> List[str]:
    """Tags a submission contributes to its patient."""
    tags = [intake.source] + intake.treatment_tags
    if intake.is_complete:
        tags.append(COMPLETE_TAG)
    else:
        tags.extend(["partial", "needs-followup"])
    if intake.is_fallback:
        tags.append(REVIEW_TAG)
    return tags


def merge_tags(existing: Sequence[str], incoming: Sequence[str], is_complete: bool) -> Tuple[List[str], bool]:
    """Union existing and incoming tags, applying lifecycle transitions.

    Parameters:
        existing: Tags currently on the patient
        incoming: Tags contributed by this submission
        is_complete: Whether this submission is complete

    Returns:
        (merged tags, upgraded) where upgraded is True for a partial to
        complete transition
    """
    was_partial = any(tag in existing for tag in PARTIAL_TAGS)
    already_complete = COMPLETE_TAG in existing

    merged = list(existing)
    for tag in incoming:
        # A late partial delivery must not reopen a completed intake
        if already_complete and not is_complete and tag in PARTIAL_TAGS:
            continue
        if tag not in merged:
            merged.append(tag)

    if is_complete:
        merged = [tag for tag in merged if tag not in PARTIAL_TAGS]

    if any(tag in merged for tag in STUB_TAGS):
        merged = [tag for tag in merged if tag not in STUB_TAGS]
        if MERGED_STUB_TAG not in merged:
            merged.append(MERGED_STUB_TAG)

    return merged, is_complete and was_partial


def note_line(intake: CanonicalIntake, at: datetime) -> str:
    status = "COMPLETE" if intake.is_complete else "PARTIAL"
    return f"[{at.isoformat()}] {status}: {intake.submission_id}"


def append_note(notes: str, line: str) -> str:
    return f"{notes}\n{line}" if notes else line


@dataclass(frozen=True)
class MatchCriteria:
    """Plain-text identity values to match against decrypted candidates."""
    email: str
    phone: str
    first_name: str
    last_name: str
    dob: str

    @classmethod
    def from_identity(cls, identity: IntakeIdentity) -> 'MatchCriteria':
        return cls(
            email=identity.email,
            phone=identity.phone,
            first_name=identity.first_name,
            last_name=identity.last_name,
            dob=identity.dob,
        )


@dataclass(frozen=True)
class _Candidate:
    patient: Patient
    email: str
    phone: str
    first_name: str
    last_name: str
    dob: str


@dataclass(frozen=True)
class ResolvedPatient:
    """Outcome of identity resolution.

    Attributes:
        patient: Stored patient after create/update
        is_new: True if this submission created the patient
        upgraded: True if the patient went from partial to complete
        matched_by: Rule that matched (email, phone, name_dob) or None for new
    """
    patient: Patient
    is_new: bool
    upgraded: bool = False
    matched_by: Optional[str] = None


class PatientIdentityResolver:
    """Match-or-create for intake submissions within one tenant.

    Parameters:
        patients: Tenant-scoped patient repository
        cipher: PHI cipher (decrypt never raises)
        window: Number of most recent patients scanned per resolution
        create_max_attempts: Creation attempts before giving up
        relookup_after_conflicts: Conflicts after which lookup is re-run
        conflict_backoff: Backoff between conflicting creates
    """

    def __init__(
        self,
        patients: PatientRepositoryPort,
        cipher: PHICipherPort,
        window: int = 500,
        create_max_attempts: int = 5,
        relookup_after_conflicts: int = 3,
        conflict_backoff: Optional[RetryPolicy] = None
    ):
        if window < 1:
            raise ValueError(f"Candidate window must be positive, got {window}")
        self._patients = patients
        self._cipher = cipher
        self._window = window
        self._create_max_attempts = create_max_attempts
        self._relookup_after = relookup_after_conflicts
        self._backoff = conflict_backoff or RetryPolicy(max_attempts=create_max_attempts, base_delay=0.1, jitter=0.05)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match_candidate(self, criteria: MatchCriteria) -> Optional[Patient]:
        """Return the existing patient matching criteria, or None."""
        match = self._find(criteria)
        return match[0] if match else None

    def _find(self, criteria: MatchCriteria) -> Optional[Tuple[Patient, str]]:
        candidates = [self._decrypt(p) for p in self._patients.list_recent_patients(self._window)]

        if not is_placeholder_email(criteria.email):
            email = criteria.email.strip().lower()
            for candidate in candidates:
                if candidate.email.strip().lower() == email:
                    return candidate.patient, "email"

        if not is_placeholder_phone(criteria.phone):
            for candidate in candidates:
                if candidate.phone == criteria.phone:
                    return candidate.patient, "phone"

        if not (
            is_placeholder_name(criteria.first_name)
            or is_placeholder_name(criteria.last_name)
            or is_placeholder_dob(criteria.dob)
        ):
            first = criteria.first_name.lower()
            last = criteria.last_name.lower()
            for candidate in candidates:
                if (
                    candidate.first_name.lower() == first
                    and candidate.last_name.lower() == last
                    and candidate.dob == criteria.dob
                ):
                    return candidate.patient, "name_dob"

        return None

    def _decrypt(self, patient: Patient) -> _Candidate:
        return _Candidate(
            patient=patient,
            email=self._cipher.decrypt(patient.email),
            phone=self._cipher.decrypt(patient.phone),
            first_name=self._cipher.decrypt(patient.first_name),
            last_name=self._cipher.decrypt(patient.last_name),
            dob=self._cipher.decrypt(patient.dob),
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, intake: CanonicalIntake, tenant: Tenant, now: Optional[datetime] = None) -> ResolvedPatient:
        """Match the submission to a patient, creating one on a miss.

        Parameters:
            intake: Normalized submission
            tenant: Tenant the active context is bound to
            now: Timestamp for notes/metadata (defaults to current UTC time)

        Returns:
            ResolvedPatient

        Raises:
            PersistenceFault: If creation keeps conflicting
            StorageError: On storage failures (retried by the caller)
        """
        now = now or datetime.now(timezone.utc)
        criteria = MatchCriteria.from_identity(intake.identity)

        match = self._find(criteria)
        if match is not None:
            return self._update(match[0], intake, tenant, now, matched_by=match[1])

        conflicts = 0
        for attempt in range(1, self._create_max_attempts + 1):
            if conflicts >= self._relookup_after:
                match = self._find(criteria)
                if match is not None:
                    logger.info(
                        f"Patient for submission {intake.submission_id} appeared after "
                        f"{conflicts} conflicts; switching to update"
                    )
                    return self._update(match[0], intake, tenant, now, matched_by=match[1])

            patient = self._build_patient(intake, tenant, now)
            try:
                created = self._patients.create_patient(patient)
            except UniqueConflictError as e:
                conflicts += 1
                logger.warning(
                    f"Patient number conflict on {e.constraint} "
                    f"(attempt {attempt}/{self._create_max_attempts})"
                )
                if attempt < self._create_max_attempts:
                    self._backoff.wait(attempt)
                continue

            logger.info(
                f"Created patient {created.patient_number} for tenant {tenant.id} "
                f"from {intake.source} submission {intake.submission_id}"
            )
            return ResolvedPatient(patient=created, is_new=True)

        raise PersistenceFault(
            f"Patient creation conflicted {conflicts} times",
            operation="patient_create",
            attempts=self._create_max_attempts,
            source=intake.source
        )

    def _build_patient(self, intake: CanonicalIntake, tenant: Tenant, now: datetime) -> Patient:
        identity = intake.identity
        tags, _ = merge_tags([], submission_tags(intake), intake.is_complete)
        return Patient(
            tenant_id=tenant.id,
            patient_number=self._patients.next_patient_number(tenant.patient_number_prefix),
            first_name=self._cipher.encrypt(identity.first_name),
            last_name=self._cipher.encrypt(identity.last_name),
            email=self._cipher.encrypt(identity.email),
            phone=self._cipher.encrypt(identity.phone),
            dob=self._cipher.encrypt(identity.dob),
            gender=identity.gender,
            address1=self._cipher.encrypt(identity.address1),
            address2=self._cipher.encrypt(identity.address2),
            city=identity.city,
            state=identity.state,
            zip=identity.zip,
            tags=tags,
            notes=note_line(intake, now),
            source=intake.source,
            source_metadata=self._source_metadata(intake, tenant, now),
            created_at=now,
            updated_at=now,
        )

    def _update(
        self,
        existing: Patient,
        intake: CanonicalIntake,
        tenant: Tenant,
        now: datetime,
        matched_by: str
    ) -> ResolvedPatient:
        tags, upgraded = merge_tags(existing.tags, submission_tags(intake), intake.is_complete)
        updates: Dict[str, object] = {
            "tags": tags,
            "notes": append_note(existing.notes, note_line(intake, now)),
            "source_metadata": self._source_metadata(intake, tenant, now),
            "updated_at": now,
        }
        updates.update(self._identity_updates(intake.identity, intake.is_complete))

        updated = self._patients.update_patient(existing.model_copy(update=updates))
        logger.info(
            f"Matched patient {updated.patient_number} by {matched_by} for "
            f"{intake.source} submission {intake.submission_id}"
            + (" (upgraded to complete)" if upgraded else "")
        )
        return ResolvedPatient(patient=updated, is_new=False, upgraded=upgraded, matched_by=matched_by)

    def _identity_updates(self, identity: IntakeIdentity, is_complete: bool) -> Dict[str, object]:
        """Encrypted values for real incoming identity data; placeholders never overwrite."""
        updates: Dict[str, object] = {}
        if not is_placeholder_name(identity.first_name):
            updates["first_name"] = self._cipher.encrypt(identity.first_name)
        if not is_placeholder_name(identity.last_name):
            updates["last_name"] = self._cipher.encrypt(identity.last_name)
        if not is_placeholder_email(identity.email):
            updates["email"] = self._cipher.encrypt(identity.email)
        if not is_placeholder_phone(identity.phone):
            updates["phone"] = self._cipher.encrypt(identity.phone)
        if not is_placeholder_dob(identity.dob):
            updates["dob"] = self._cipher.encrypt(identity.dob)
        if is_complete:
            updates["gender"] = identity.gender
        if identity.address1:
            updates.update({
                "address1": self._cipher.encrypt(identity.address1),
                "address2": self._cipher.encrypt(identity.address2),
                "city": identity.city,
                "state": identity.state,
                "zip": identity.zip,
            })
        return updates

    @staticmethod
    def _source_metadata(intake: CanonicalIntake, tenant: Tenant, now: datetime) -> Dict[str, object]:
        return {
            "type": intake.source,
            "submission_id": intake.submission_id,
            "checkout_completed": intake.is_complete,
            "treatment": intake.treatment_type.value,
            "timestamp": now.isoformat(),
            "tenant_id": tenant.id,
        }
