"""Tests for referral attribution tiers."""

from unittest.mock import Mock

import pytest

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.models import AttributionResult, AttributionTier, Patient
from intake_gateway.domain.services.attribution import ReferralAttributor


@pytest.fixture
def patient():
    return Patient(
        id=5,
        tenant_id=1,
        patient_number="PT-000005",
        first_name="x",
        last_name="x",
        email="x",
        phone="x",
        dob="x",
        tags=["wellmedr", "complete-intake"],
    )


@pytest.fixture
def patients():
    repo = Mock()
    repo.update_patient.side_effect = lambda p: p
    return repo


def intake(promo_code=None, referrer=None):
    return CanonicalIntake(submission_id="s-1", source="wellmedr", promo_code=promo_code, referrer=referrer)


class TestReferralAttributor:

    def test_explicit_match(self, patient, patients):
        engine = Mock()
        engine.attribute.return_value = AttributionResult(code="JANE10", affiliate_id=7, tier=AttributionTier.EXPLICIT_MATCH)

        result = ReferralAttributor(engine, patients).attribute(patient, intake(promo_code="jane10"))

        assert result.tier == AttributionTier.EXPLICIT_MATCH
        assert result.affiliate_id == 7
        engine.attribute.assert_called_once_with(5, "JANE10", 1)
        assert "affiliate:JANE10" in patient.tags
        patients.update_patient.assert_called_once()

    def test_unknown_code_is_tag_only(self, patient, patients):
        engine = Mock()
        engine.attribute.return_value = None

        result = ReferralAttributor(engine, patients).attribute(patient, intake(promo_code="nobody"))

        assert result.tier == AttributionTier.TAG_ONLY
        assert result.code == "NOBODY"
        assert result.affiliate_id is None
        assert "referral:NOBODY" in patient.tags
        engine.attribute_by_recent_touch.assert_not_called()

    def test_no_code_uses_recent_touch(self, patient, patients):
        engine = Mock()
        engine.attribute_by_recent_touch.return_value = AttributionResult(
            code="GYM5", affiliate_id=9, tier=AttributionTier.INFERRED
        )

        result = ReferralAttributor(engine, patients).attribute(patient, intake(referrer="https://instagram.com/gym"))

        assert result.tier == AttributionTier.INFERRED
        engine.attribute.assert_not_called()
        engine.attribute_by_recent_touch.assert_called_once_with(5, "https://instagram.com/gym", 1)
        assert "affiliate:GYM5" in patient.tags

    def test_nothing_to_attribute(self, patient, patients):
        engine = Mock()
        engine.attribute_by_recent_touch.return_value = None

        assert ReferralAttributor(engine, patients).attribute(patient, intake()) is None
        patients.update_patient.assert_not_called()

    def test_already_attributed_patient_is_skipped(self, patient, patients):
        patient.tags = patient.tags + ["affiliate:OLD1"]
        engine = Mock()

        assert ReferralAttributor(engine, patients).attribute(patient, intake(promo_code="NEW2")) is None
        engine.attribute.assert_not_called()
        patients.update_patient.assert_not_called()
