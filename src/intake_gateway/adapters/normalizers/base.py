"""Alias-Driven Normalizer Base.

Shared implementation of the NormalizerPort contract. Concrete strategies
declare their alias lists, section layout and treatment rules as class
attributes and override hooks only where their platform genuinely differs.

Security Impact:
    - Raw payload values are never logged, only key counts and ids
    - Any unexpected error is wrapped in NormalizationFault so the pipeline
      can degrade to a fallback record instead of failing the request

Architecture:
    - Implements NormalizerPort (Hexagonal Architecture)
    - Depends only on domain models and normalization rules
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from intake_gateway.domain.canonical import (
    CanonicalIntake,
    IntakeAnswer,
    IntakeIdentity,
    IntakeSection,
    TreatmentType,
)
from intake_gateway.domain.ports import NormalizationFault, NormalizerPort
from intake_gateway.domain.services.normalization import (
    capitalize_name,
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

logger = logging.getLogger(__name__)

FIRST_NAME_ALIASES = ["first-name", "firstName", "first_name", "fname", "First Name", "firstname"]
LAST_NAME_ALIASES = ["last-name", "lastName", "last_name", "lname", "Last Name", "lastname"]
FULL_NAME_ALIASES = ["full-name", "fullName", "full_name", "name", "Name"]
EMAIL_ALIASES = ["email", "Email", "email-address", "emailAddress", "email_address", "Email Address"]
PHONE_ALIASES = [
    "phone", "phone-number", "phoneNumber", "phone_number", "mobile", "mobile-number",
    "cell", "cell-phone", "telephone", "Phone Number", "Phone",
]
DOB_ALIASES = [
    "dob", "DOB", "dateOfBirth", "date_of_birth", "date-of-birth", "birthday",
    "birthdate", "birth-date", "Date of Birth",
]
GENDER_ALIASES = ["sex", "gender", "Sex", "Gender", "biological-sex"]

ADDRESS_OBJECT_ALIASES = ["address", "Address", "shipping-address", "shippingAddress"]
ADDRESS1_ALIASES = ["address1", "address-1", "address_line1", "address-line-1", "street-address", "street", "streetAddress"]
ADDRESS2_ALIASES = ["address2", "address-2", "address_line2", "address-line-2", "apartment", "apt", "unit", "suite"]
CITY_ALIASES = ["city", "City", "town"]
STATE_ALIASES = ["state", "State", "province", "region", "state-code"]
ZIP_ALIASES = ["zip", "zipCode", "zip-code", "zip_code", "zipcode", "postal-code", "postalCode", "postal_code"]

ADDRESS_BRACKET_KEYS = {
    "address1": ["Address [Street]", "Address [Address]", "Address [Line 1]"],
    "address2": ["Address [Apartment]", "Address [Apt]", "Address [Line 2]"],
    "city": ["Address [City]"],
    "state": ["Address [State]", "Address [Region]"],
    "zip": ["Address [Zip]", "Address [Zip Code]", "Address [Postal Code]"],
}

SUBMISSION_ID_ALIASES = ["submission-id", "submissionId", "submission_id", "responseId", "response-id", "id"]
COMPLETION_ALIASES = [
    "Checkout Completed", "Checkout Completed 2", "checkout-completed", "checkoutCompleted",
    "checkout_completed", "isComplete", "is-complete", "completed",
]
CHECKOUT_MARKER_ALIASES = ["checkout-sequence", "checkoutSequence", "Checkout Sequence", "checkout_sequence", "order-id", "orderId"]
PROMO_CODE_ALIASES = [
    "promo-code", "promoCode", "promo_code", "PROMO CODE", "Promo Code",
    "influencer-code", "influencerCode", "influencer_code",
    "referral-code", "referralCode", "referral_code",
    "affiliate-code", "affiliateCode", "affiliate_code",
    "partner-code", "partnerCode", "partner_code",
]
REFERRER_ALIASES = ["referrer", "referrer-url", "referrerUrl", "referrer_url", "utm_source", "utm-source", "landing-page"]
TREATMENT_ALIASES = ["treatmentType", "treatment-type", "treatment_type", "treatment", "program"]
CLINIC_ALIASES = ["clinic-subdomain", "clinicSubdomain", "clinic_subdomain", "clinic", "subdomain"]

# Keys that carry transport metadata rather than answers
INTERNAL_KEYS = set(SUBMISSION_ID_ALIASES + CLINIC_ALIASES + ["timestamp", "created-at", "createdAt", "submittedAt"])

PERSONAL_INFORMATION = "Personal Information"
ADDITIONAL_INFORMATION = "Additional Information"

TREATMENT_KEYWORDS: List[Tuple[TreatmentType, Tuple[str, ...]]] = [
    (TreatmentType.PEPTIDES, ("peptide", "bpc", "sermorelin")),
    (TreatmentType.NAD_PLUS, ("nad",)),
    (TreatmentType.TESTOSTERONE, ("testosterone", "trt")),
    (TreatmentType.BETTER_SEX, ("better sex", "better-sex", "better_sex", "libido", "erectile", "sildenafil", "tadalafil")),
    (TreatmentType.BASELINE_BLOODWORK, ("bloodwork", "blood work", "labs", "lab panel")),
    (TreatmentType.WEIGHT_LOSS, ("weight", "glp", "semaglutide", "tirzepatide")),
]


def classify_treatment_text(text: str) -> Optional[TreatmentType]:
    """Map a free-text treatment name onto a TreatmentType, if recognizable."""
    lowered = text.lower()
    for treatment, keywords in TREATMENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return treatment
    return None


def humanize_key(key: str) -> str:
    """'current-weight' -> 'Current Weight'."""
    return " ".join(part.capitalize() for part in key.replace("_", "-").replace("-", " ").split())


class AliasNormalizer(NormalizerPort):
    """Base normalizer driven by alias lists.

    Subclasses configure:
        source_name: Source identifier this strategy is registered under
        default_treatment: Treatment used when the payload names none
        section_layout: Ordered (title, keys) groups for the document
        field_labels: Display labels for known keys
    """

    source_name = "generic"
    default_treatment = TreatmentType.GENERAL
    section_layout: Sequence[Tuple[str, Sequence[str]]] = ()
    field_labels: Dict[str, str] = {}

    def normalize(self, payload: Dict[str, Any], raw_body: bytes = b"") -> CanonicalIntake:
        """Normalize a decoded payload into a CanonicalIntake.

        Parameters:
            payload: Decoded JSON object
            raw_body: Raw request bytes (stable submission id fallback)

        Returns:
            CanonicalIntake: Normalized record

        Raises:
            NormalizationFault: If the payload cannot be normalized
        """
        if not isinstance(payload, dict):
            raise NormalizationFault(
                f"Expected JSON object, got {type(payload).__name__}",
                source=self.source_name
            )
        try:
            flat = self.flatten(payload)
            identity, identity_keys = self.extract_identity(flat)
            intake = CanonicalIntake(
                submission_id=self.extract_submission_id(flat, raw_body),
                source=self.source_name,
                identity=identity,
                sections=self.build_sections(flat, identity_keys),
                treatment_type=self.classify_treatment(flat),
                is_complete=self.is_checkout_complete(flat),
                promo_code=normalize_code(first_value(flat, PROMO_CODE_ALIASES)),
                referrer=self._optional_text(first_value(flat, REFERRER_ALIASES)),
            )
        except NormalizationFault:
            raise
        except (PydanticValidationError, TypeError, ValueError, AttributeError, KeyError) as e:
            raise NormalizationFault(
                f"Failed to normalize {self.source_name} payload: {type(e).__name__}",
                source=self.source_name,
                details={"key_count": len(payload)}
            ) from e

        logger.debug(
            f"Normalized {self.source_name} submission {intake.submission_id}: "
            f"{len(flat)} keys, complete={intake.is_complete}, treatment={intake.treatment_type.value}"
        )
        return intake

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def flatten(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Return a flat key/value view of the payload. Identity by default."""
        return dict(payload)

    def classify_treatment(self, flat: Dict[str, Any]) -> TreatmentType:
        value = first_value(flat, TREATMENT_ALIASES)
        if value is not None:
            treatment = classify_treatment_text(stringify(value))
            if treatment is not None:
                return treatment
        return self.default_treatment

    def is_checkout_complete(self, flat: Dict[str, Any]) -> bool:
        """Complete only on an explicit completion signal or a checkout marker."""
        for alias in COMPLETION_ALIASES:
            key = first_key(flat, [alias])
            if key is not None and is_truthy_flag(flat[key]):
                return True
        return first_value(flat, CHECKOUT_MARKER_ALIASES) is not None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_submission_id(self, flat: Dict[str, Any], raw_body: bytes) -> str:
        value = first_value(flat, SUBMISSION_ID_ALIASES)
        if value is not None:
            return stringify(value)
        digest_source = raw_body or json.dumps(flat, sort_keys=True, default=str).encode("utf-8")
        return f"{self.source_name}-{hashlib.sha256(digest_source).hexdigest()[:16]}"

    def extract_identity(self, flat: Dict[str, Any]) -> Tuple[IntakeIdentity, Set[str]]:
        """Build the identity block and report which raw keys it consumed."""
        used: Set[str] = set()

        def take(aliases: Sequence[str]) -> Optional[Any]:
            key = first_key(flat, aliases)
            if key is None:
                return None
            used.add(key)
            return flat[key]

        first_name = take(FIRST_NAME_ALIASES)
        last_name = take(LAST_NAME_ALIASES)
        if first_name is None and last_name is None:
            full_name = take(FULL_NAME_ALIASES)
            if full_name is not None:
                parts = stringify(full_name).split()
                first_name = parts[0] if parts else None
                last_name = " ".join(parts[1:]) or None

        phone = take(PHONE_ALIASES)
        if phone is None:
            phone_key = next(
                (k for k in flat if "phone" in k.lower() and not is_empty(flat[k])),
                None
            )
            if phone_key is not None:
                used.add(phone_key)
                phone = flat[phone_key]

        address = self.extract_address(flat, used)

        identity = IntakeIdentity(
            first_name=capitalize_name(first_name),
            last_name=capitalize_name(last_name),
            email=normalize_email(take(EMAIL_ALIASES)),
            phone=sanitize_phone(phone),
            dob=normalize_date(take(DOB_ALIASES)),
            gender=normalize_gender(take(GENDER_ALIASES)),
            **address,
        )
        return identity, used

    def extract_address(self, flat: Dict[str, Any], used: Set[str]) -> Dict[str, str]:
        """Read the address from a JSON object, bracket keys, or flat aliases."""
        address = {"address1": "", "address2": "", "city": "", "state": "", "zip": ""}

        object_key = first_key(flat, ADDRESS_OBJECT_ALIASES)
        if object_key is not None:
            raw = flat[object_key]
            if isinstance(raw, str) and raw.strip().startswith("{"):
                try:
                    raw = json.loads(raw)
                except json.JSONDecodeError:
                    pass
            if isinstance(raw, dict):
                used.add(object_key)
                address["address1"] = stringify(first_value(raw, ["address1", "street", "line1"] + ADDRESS1_ALIASES))
                address["address2"] = stringify(first_value(raw, ["line2"] + ADDRESS2_ALIASES))
                address["city"] = stringify(first_value(raw, CITY_ALIASES))
                address["state"] = stringify(first_value(raw, STATE_ALIASES)).upper()
                address["zip"] = stringify(first_value(raw, ZIP_ALIASES))
                return address
            if isinstance(raw, str):
                used.add(object_key)
                address["address1"] = raw.strip()

        for field, keys in ADDRESS_BRACKET_KEYS.items():
            key = first_key(flat, keys)
            if key is not None and not address[field]:
                used.add(key)
                address[field] = stringify(flat[key])

        flat_aliases = {
            "address1": ADDRESS1_ALIASES,
            "address2": ADDRESS2_ALIASES,
            "city": CITY_ALIASES,
            "state": STATE_ALIASES,
            "zip": ZIP_ALIASES,
        }
        for field, aliases in flat_aliases.items():
            if address[field]:
                continue
            key = first_key(flat, aliases)
            if key is not None:
                used.add(key)
                address[field] = stringify(flat[key])

        address["state"] = address["state"].upper()
        return address

    def build_sections(self, flat: Dict[str, Any], identity_keys: Set[str]) -> List[IntakeSection]:
        """Group answers into titled sections plus an Additional Information bucket."""
        consumed: Set[str] = set()
        sections: List[IntakeSection] = []

        personal = [self._answer(key, flat[key]) for key in flat if key in identity_keys]
        consumed.update(identity_keys)
        if personal:
            sections.append(IntakeSection(title=PERSONAL_INFORMATION, answers=personal))

        for title, keys in self.section_layout:
            answers = []
            for key in keys:
                if key in flat and key not in consumed and not is_empty(flat[key]):
                    answers.append(self._answer(key, flat[key]))
                    consumed.add(key)
            if answers:
                sections.append(IntakeSection(title=title, answers=answers))

        remaining = [
            self._answer(key, value)
            for key, value in flat.items()
            if key not in consumed
            and key not in INTERNAL_KEYS
            and not key.startswith("_")
            and not is_empty(value)
        ]
        if remaining:
            sections.append(IntakeSection(title=ADDITIONAL_INFORMATION, answers=remaining))
        return sections

    def _answer(self, key: str, value: Any) -> IntakeAnswer:
        return IntakeAnswer(id=key, label=self.field_labels.get(key, humanize_key(key)), value=stringify(value))

    @staticmethod
    def _optional_text(value: Any) -> Optional[str]:
        text = stringify(value)
        return text or None
