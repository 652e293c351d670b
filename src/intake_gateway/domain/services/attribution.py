"""Referral Attribution.

Three-tier attribution for an intake submission:

    1. explicit code that matches an active affiliate -> explicit_match
    2. explicit code nobody owns -> the patient is tagged with the code (tag_only)
    3. no code at all -> inferred from recent click/touch history, if any

Patients already attributed to an affiliate are left alone.
"""

import logging
from typing import Optional

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.models import AttributionResult, AttributionTier, Patient
from intake_gateway.domain.ports import AffiliateEnginePort, PatientRepositoryPort

logger = logging.getLogger(__name__)

AFFILIATE_TAG_PREFIX = "affiliate:"
REFERRAL_TAG_PREFIX = "referral:"


class ReferralAttributor:
    """Apply the attribution tiers for one submission.

    Parameters:
        engine: Affiliate engine (code lookup and touch history)
        patients: Patient repository, for tagging
    """

    def __init__(self, engine: AffiliateEnginePort, patients: PatientRepositoryPort):
        self._engine = engine
        self._patients = patients

    def attribute(self, patient: Patient, intake: CanonicalIntake) -> Optional[AttributionResult]:
        """Attribute the patient and return the tier used, or None.

        Returns:
            AttributionResult, or None when nothing could be attributed
        """
        if any(tag.startswith(AFFILIATE_TAG_PREFIX) for tag in patient.tags):
            logger.debug(f"Patient {patient.patient_number} already attributed; skipping")
            return None

        code = intake.promo_code
        if code:
            result = self._engine.attribute(patient.id, code, patient.tenant_id)
            if result is not None:
                self._tag(patient, f"{AFFILIATE_TAG_PREFIX}{code}")
                logger.info(f"Attributed patient {patient.patient_number} to affiliate {result.affiliate_id}")
                return result

            self._tag(patient, f"{REFERRAL_TAG_PREFIX}{code}")
            logger.info(f"Referral code {code} has no active affiliate; tagged patient {patient.patient_number}")
            return AttributionResult(code=code, tier=AttributionTier.TAG_ONLY)

        result = self._engine.attribute_by_recent_touch(patient.id, intake.referrer, patient.tenant_id)
        if result is not None:
            if result.code:
                self._tag(patient, f"{AFFILIATE_TAG_PREFIX}{result.code}")
            logger.info(f"Inferred attribution for patient {patient.patient_number} from recent touch")
        return result

    def _tag(self, patient: Patient, tag: str) -> None:
        if tag in patient.tags:
            return
        updated = patient.model_copy(update={"tags": patient.tags + [tag]})
        self._patients.update_patient(updated)
        patient.tags = updated.tags
