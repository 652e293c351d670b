"""Tests for the per-source payload normalizers."""

import json

import pytest

from intake_gateway.adapters.normalizers import (
    HeyflowNormalizer,
    OvertimeNormalizer,
    WellmedrNormalizer,
    available_normalizers,
    get_normalizer,
)
from intake_gateway.domain.canonical import PLACEHOLDER_PHONE, TreatmentType
from intake_gateway.domain.ports import NormalizationFault, PayloadFault


@pytest.fixture
def wellmedr_payload():
    """A completed Wellmedr weight-loss submission."""
    return {
        "submission-id": "wm-jane-1",
        "first-name": "jane",
        "last-name": "DOE",
        "email": "Jane@X.com",
        "phone": "(555) 123-4567",
        "dob": "03/04/1990",
        "sex": "Female",
        "address1": "1 Main St",
        "city": "Austin",
        "state": "tx",
        "zip": "78701",
        "current-weight": "210",
        "goal-weight": "170",
        "Checkout Completed": "Yes",
        "promo-code": "jane10",
    }


class TestRegistry:
    """Normalizer lookup by source identifier."""

    def test_available_normalizers(self):
        assert available_normalizers() == ["heyflow", "overtime", "wellmedr"]

    def test_lookup_is_case_insensitive(self):
        assert isinstance(get_normalizer(" WellMedr "), WellmedrNormalizer)

    def test_unknown_strategy(self):
        with pytest.raises(PayloadFault) as exc_info:
            get_normalizer("typeform")
        assert "typeform" in str(exc_info.value)


class TestWellmedrNormalizer:
    """Flat kebab-case Wellmedr payloads."""

    def test_identity_extraction(self, wellmedr_payload):
        """Identity fields are normalized to canonical form."""
        intake = WellmedrNormalizer().normalize(wellmedr_payload)
        identity = intake.identity

        assert identity.first_name == "Jane"
        assert identity.last_name == "Doe"
        assert identity.email == "jane@x.com"
        assert identity.phone == "5551234567"
        assert identity.dob == "1990-03-04"
        assert identity.gender == "f"
        assert identity.address1 == "1 Main St"
        assert identity.city == "Austin"
        assert identity.state == "TX"
        assert identity.zip == "78701"

    def test_submission_metadata(self, wellmedr_payload):
        intake = WellmedrNormalizer().normalize(wellmedr_payload)

        assert intake.submission_id == "wm-jane-1"
        assert intake.source == "wellmedr"
        assert intake.is_complete
        assert intake.treatment_type == TreatmentType.WEIGHT_LOSS
        assert intake.promo_code == "JANE10"

    def test_sections_group_answers(self, wellmedr_payload):
        """Identity answers come first, then the configured section layout."""
        intake = WellmedrNormalizer().normalize(wellmedr_payload)
        titles = [section.title for section in intake.sections]

        assert titles == ["Personal Information", "Body Metrics", "Checkout"]
        body_metrics = intake.sections[1]
        assert [answer.label for answer in body_metrics.answers] == ["Current Weight", "Goal Weight"]
        assert all(answer.id != "submission-id" for answer in intake.answers)

    def test_partial_without_completion_signal(self, wellmedr_payload):
        del wellmedr_payload["Checkout Completed"]
        assert not WellmedrNormalizer().normalize(wellmedr_payload).is_complete

    def test_false_completion_flag_is_partial(self, wellmedr_payload):
        wellmedr_payload["Checkout Completed"] = "false"
        assert not WellmedrNormalizer().normalize(wellmedr_payload).is_complete

    def test_checkout_marker_means_complete(self, wellmedr_payload):
        del wellmedr_payload["Checkout Completed"]
        wellmedr_payload["checkout-sequence"] = "3"
        assert WellmedrNormalizer().normalize(wellmedr_payload).is_complete

    def test_plain_id_is_last_submission_id_alias(self, wellmedr_payload):
        wellmedr_payload["id"] = "row-77"
        assert WellmedrNormalizer().normalize(wellmedr_payload).submission_id == "wm-jane-1"

        del wellmedr_payload["submission-id"]
        intake = WellmedrNormalizer().normalize(wellmedr_payload)
        assert intake.submission_id == "row-77"
        assert all(answer.id != "id" for answer in intake.answers)

    def test_submission_id_derived_from_body(self, wellmedr_payload):
        """Without an id the submission id is stable for identical bytes."""
        del wellmedr_payload["submission-id"]
        raw = json.dumps(wellmedr_payload).encode("utf-8")

        first = WellmedrNormalizer().normalize(wellmedr_payload, raw)
        second = WellmedrNormalizer().normalize(wellmedr_payload, raw)

        assert first.submission_id == second.submission_id
        assert first.submission_id.startswith("wellmedr-")

    def test_missing_identity_uses_placeholders(self):
        intake = WellmedrNormalizer().normalize({"submission-id": "s-1", "goals": "energy"})

        assert intake.identity.phone == PLACEHOLDER_PHONE
        assert not intake.identity.has_real_email()
        assert not intake.is_complete

    def test_full_name_is_split(self):
        intake = WellmedrNormalizer().normalize({"name": "ada lovelace byron"})
        assert intake.identity.first_name == "Ada"
        assert intake.identity.last_name == "Lovelace Byron"

    def test_address_object(self):
        payload = {"address": {"street": "9 Elm", "city": "Reno", "state": "nv", "zip": "89501"}}
        identity = WellmedrNormalizer().normalize(payload).identity

        assert identity.address1 == "9 Elm"
        assert identity.city == "Reno"
        assert identity.state == "NV"

    def test_address_object_as_json_string(self):
        payload = {"address": json.dumps({"address1": "4 Pine", "city": "Dover"})}
        identity = WellmedrNormalizer().normalize(payload).identity

        assert identity.address1 == "4 Pine"
        assert identity.city == "Dover"

    def test_bracket_address_keys(self):
        payload = {"Address [Street]": "5 Oak", "Address [City]": "Boise", "Address [Zip]": "83702"}
        identity = WellmedrNormalizer().normalize(payload).identity

        assert identity.address1 == "5 Oak"
        assert identity.city == "Boise"
        assert identity.zip == "83702"

    def test_non_object_payload(self):
        with pytest.raises(NormalizationFault):
            WellmedrNormalizer().normalize(["not", "an", "object"])


class TestOvertimeNormalizer:
    """Multi-treatment Overtime funnels."""

    @pytest.mark.parametrize("treatment,expected", [
        ("Peptide Therapy", TreatmentType.PEPTIDES),
        ("NAD+ Injections", TreatmentType.NAD_PLUS),
        ("Better Sex", TreatmentType.BETTER_SEX),
        ("TRT", TreatmentType.TESTOSTERONE),
        ("Baseline Bloodwork", TreatmentType.BASELINE_BLOODWORK),
        ("Weight Loss", TreatmentType.WEIGHT_LOSS),
    ])
    def test_treatment_field(self, treatment, expected):
        intake = OvertimeNormalizer().normalize({"treatmentType": treatment, "email": "a@b.com"})
        assert intake.treatment_type == expected

    def test_treatment_inferred_from_question_keys(self):
        intake = OvertimeNormalizer().normalize({"email": "a@b.com", "trt-history": "none"})
        assert intake.treatment_type == TreatmentType.TESTOSTERONE

    @pytest.mark.parametrize("answer", ["none", "n/a", "-"])
    def test_placeholder_answers_still_identify_the_programme(self, answer):
        intake = OvertimeNormalizer().normalize({"email": "a@b.com", "libido-concerns": answer})
        assert intake.treatment_type == TreatmentType.BETTER_SEX

    def test_blank_answers_are_ignored(self):
        intake = OvertimeNormalizer().normalize({"email": "a@b.com", "trt-history": "  "})
        assert intake.treatment_type == TreatmentType.WEIGHT_LOSS

    @pytest.mark.parametrize("payload", [
        {"medications-used-before": "metformin", "glp1-history": "yes"},
        {"prescribed-medications": "none", "current-weight": "210"},
        {"country": "canada", "goal-weight": "180"},
    ])
    def test_hints_match_whole_key_tokens(self, payload):
        intake = OvertimeNormalizer().normalize(dict(payload, email="a@b.com"))
        assert intake.treatment_type == TreatmentType.WEIGHT_LOSS

    def test_hint_prefix_match(self):
        intake = OvertimeNormalizer().normalize({"email": "a@b.com", "ED History": "yes"})
        assert intake.treatment_type == TreatmentType.BETTER_SEX

    def test_default_treatment(self):
        intake = OvertimeNormalizer().normalize({"email": "a@b.com", "first-name": "Al"})
        assert intake.treatment_type == TreatmentType.WEIGHT_LOSS

    def test_influencer_code_is_promo_code(self):
        intake = OvertimeNormalizer().normalize({"influencer-code": "gymbro"})
        assert intake.promo_code == "GYMBRO"


class TestHeyflowNormalizer:
    """Nested Heyflow form payloads."""

    def test_field_list_is_flattened_by_label(self):
        payload = {
            "data": {
                "clinic-subdomain": "eonmeds",
                "responseId": "hf-9",
                "fields": [
                    {"id": "f1", "label": "First Name", "value": "sam"},
                    {"id": "f2", "label": "Last Name", "value": "lee"},
                    {"id": "f3", "label": "Email", "value": "Sam@Lee.io"},
                    {"id": "f4", "label": "Phone Number", "value": "555-000-1111"},
                    {"id": "f5", "label": "Date of Birth", "value": "1985-07-20"},
                    {"id": "f6", "label": "Goals", "value": "More energy"},
                ],
            }
        }
        intake = HeyflowNormalizer().normalize(payload)

        assert intake.submission_id == "hf-9"
        assert intake.identity.first_name == "Sam"
        assert intake.identity.email == "sam@lee.io"
        assert intake.identity.phone == "5550001111"
        assert intake.identity.dob == "1985-07-20"
        assert intake.treatment_type == TreatmentType.GENERAL
        assert [section.title for section in intake.sections] == ["Personal Information", "Additional Information"]
        assert [answer.id for answer in intake.sections[1].answers] == ["Goals"]

    def test_field_mapping(self):
        payload = {"fields": {"email": {"value": "al@b.com"}, "first-name": "al"}}
        intake = HeyflowNormalizer().normalize(payload)

        assert intake.identity.email == "al@b.com"
        assert intake.identity.first_name == "Al"

    def test_unsupported_fields_shape(self):
        with pytest.raises(NormalizationFault):
            HeyflowNormalizer().normalize({"fields": "nope"})

    def test_non_object_field(self):
        with pytest.raises(NormalizationFault):
            HeyflowNormalizer().normalize({"fields": [1]})
