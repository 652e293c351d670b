"""Unit tests for field normalization rules and the canonical intake model."""

import pytest
from pydantic import ValidationError

from intake_gateway.domain.canonical import (
    PLACEHOLDER_DOB,
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_NAME,
    PLACEHOLDER_PHONE,
    CanonicalIntake,
    IntakeIdentity,
    TreatmentType,
    is_placeholder_email,
    is_placeholder_phone,
    placeholder_email_for,
)
from intake_gateway.domain.services.normalization import (
    capitalize_name,
    fallback_intake,
    first_key,
    first_value,
    is_empty,
    is_truthy_flag,
    normalize_code,
    normalize_date,
    normalize_email,
    normalize_gender,
    sanitize_phone,
    stringify,
)


class TestNormalizeDate:
    """Date of birth normalization."""

    @pytest.mark.parametrize("raw", ["03/04/1990", "3/4/1990", "1990-03-04", "1990-03-04T00:00:00Z", "03041990", "03-04-1990"])
    def test_accepted_forms(self, raw):
        """Every supported input form yields the same ISO date."""
        assert normalize_date(raw) == "1990-03-04"

    def test_year_first_digits(self):
        """YYYYMMDD is used when the MMDDYYYY reading is impossible."""
        assert normalize_date("19900304") == "1990-03-04"

    @pytest.mark.parametrize("raw", ["", None, "not a date", "02/30/1990", "1990-13-01", "12345"])
    def test_unusable_values_become_placeholder(self, raw):
        """Unparseable or impossible dates degrade to the placeholder."""
        assert normalize_date(raw) == PLACEHOLDER_DOB


class TestIdentityFields:
    """Email, phone, name, gender and code normalization."""

    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_email("  Jane@X.com ") == "jane@x.com"

    def test_email_without_at_sign_is_placeholder(self):
        assert normalize_email("jane") == PLACEHOLDER_EMAIL
        assert normalize_email(None) == PLACEHOLDER_EMAIL

    def test_phone_strips_formatting_and_country_code(self):
        assert sanitize_phone("+1 (555) 123-4567") == "5551234567"
        assert sanitize_phone("555.123.4567") == "5551234567"

    def test_phone_without_digits_is_placeholder(self):
        assert sanitize_phone("") == PLACEHOLDER_PHONE
        assert sanitize_phone("n/a") == PLACEHOLDER_PHONE

    def test_names_are_title_cased(self):
        assert capitalize_name("  jane ") == "Jane"
        assert capitalize_name("mary-jane SMITH") == "Mary-Jane Smith"

    def test_empty_names_are_placeholder(self):
        assert capitalize_name("") == PLACEHOLDER_NAME
        assert capitalize_name("null") == PLACEHOLDER_NAME

    @pytest.mark.parametrize("raw,expected", [
        ("Female", "f"),
        ("woman", "f"),
        ("F", "f"),
        ("Male", "m"),
        ("", "m"),
        ("prefer not to say", "m"),
    ])
    def test_gender_codes(self, raw, expected):
        assert normalize_gender(raw) == expected

    def test_promo_code_is_uppercased(self):
        assert normalize_code(" jane10 ") == "JANE10"

    def test_empty_promo_code_is_none(self):
        assert normalize_code("n/a") is None
        assert normalize_code(None) is None


class TestAliasLookup:
    """First-non-empty alias resolution."""

    def test_exact_alias_priority(self):
        payload = {"firstName": "Second", "first-name": "First"}
        assert first_value(payload, ["first-name", "firstName"]) == "First"

    def test_empty_values_are_skipped(self):
        payload = {"email": "", "Email": "jane@x.com"}
        assert first_value(payload, ["email", "Email"]) == "jane@x.com"

    def test_separator_and_case_insensitive_fallback(self):
        payload = {"First Name": "Jane"}
        assert first_value(payload, ["first-name"]) == "Jane"
        assert first_key(payload, ["first_name"]) == "First Name"

    def test_missing_alias_returns_none(self):
        assert first_value({"other": "x"}, ["email"]) is None
        assert first_key({}, ["email"]) is None

    def test_truthy_flags(self):
        assert is_truthy_flag("Yes")
        assert is_truthy_flag(True)
        assert is_truthy_flag(1)
        assert not is_truthy_flag("no")
        assert not is_truthy_flag("0")
        assert not is_truthy_flag(None)

    def test_stringify_and_empty(self):
        assert stringify(True) == "Yes"
        assert stringify([1, 2]) == "[1, 2]"
        assert is_empty("N/A")
        assert is_empty([])
        assert not is_empty("0")


class TestFallbackIntake:
    """Fallback record built after a normalizer failure."""

    def test_fallback_carries_no_real_identity(self):
        intake = fallback_intake("wellmedr", "req-1")

        assert intake.submission_id == "fallback-req-1"
        assert intake.is_fallback
        assert not intake.is_complete
        assert not intake.identity.has_real_email()
        assert not intake.identity.has_real_phone()
        assert not intake.identity.has_real_name_and_dob()
        assert intake.identity.email.endswith("@intake.wellmedr.invalid")


class TestCanonicalModel:
    """CanonicalIntake and IntakeIdentity validation."""

    def test_identity_defaults_are_placeholders(self):
        identity = IntakeIdentity()
        assert identity.email == PLACEHOLDER_EMAIL
        assert identity.dob == PLACEHOLDER_DOB
        assert identity.gender == "m"

    def test_gender_must_be_canonical(self):
        with pytest.raises(ValidationError):
            IntakeIdentity(gender="female")

    def test_dob_must_be_iso(self):
        with pytest.raises(ValidationError):
            IntakeIdentity(dob="03/04/1990")

    def test_promo_code_is_normalized(self):
        intake = CanonicalIntake(submission_id="s-1", source="wellmedr", promo_code=" jane10 ")
        assert intake.promo_code == "JANE10"

    def test_treatment_tags(self):
        intake = CanonicalIntake(submission_id="s-1", source="overtime", treatment_type=TreatmentType.TESTOSTERONE)
        assert intake.treatment_tags == ["testosterone", "trt"]

    def test_placeholder_detection(self):
        assert is_placeholder_email("unknown@example.com")
        assert is_placeholder_email("unknown-123-req@intake.heyflow.invalid")
        assert not is_placeholder_email("jane@x.com")
        assert is_placeholder_phone("0000000000")
        assert not is_placeholder_phone("5551234567")

    @pytest.mark.parametrize("email", ["unknown@gmail.com", "unknown-fan@yahoo.com", "unknown@intake.heyflow.invalid.com"])
    def test_real_unknown_mailboxes_are_not_placeholders(self, email):
        assert not is_placeholder_email(email)

    def test_generated_fallback_email_is_placeholder(self):
        assert is_placeholder_email(placeholder_email_for("wellmedr", "1712345678-Vendor.ABC"))
