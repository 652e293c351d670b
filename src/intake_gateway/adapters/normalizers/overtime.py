"""Overtime intake normalizer.

Overtime runs one funnel per treatment programme and posts them all to the
same clinic. The programme is taken from the treatment field when present,
otherwise inferred from programme-specific question keys.
"""

import re
from typing import Any, Dict, List, Tuple

from intake_gateway.adapters.normalizers.base import AliasNormalizer, TREATMENT_ALIASES, classify_treatment_text
from intake_gateway.domain.canonical import TreatmentType
from intake_gateway.domain.services.normalization import first_value, stringify

# Leading question-key tokens unique to one programme's funnel
TREATMENT_KEY_HINTS: Tuple[Tuple[TreatmentType, Tuple[str, ...]], ...] = (
    (TreatmentType.PEPTIDES, ("peptide", "peptides")),
    (TreatmentType.NAD_PLUS, ("nad",)),
    (TreatmentType.TESTOSTERONE, ("trt", "testosterone")),
    (TreatmentType.BETTER_SEX, ("libido", "erectile", "ed")),
    (TreatmentType.BASELINE_BLOODWORK, ("bloodwork", "lab", "labs")),
    (TreatmentType.WEIGHT_LOSS, ("glp1", "goal-weight", "current-weight")),
)

_KEY_SEPARATORS = re.compile(r"[^a-z0-9]+")


def key_tokens(key: str) -> List[str]:
    """Split a question key into lower-case word tokens ("TRT History" -> ["trt", "history"])."""
    return [token for token in _KEY_SEPARATORS.split(key.lower()) if token]


def _answered(value: Any) -> bool:
    # "none" and "n/a" are real answers to a programme question
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list)):
        return len(value) > 0
    return True


def _starts_with(tokens: List[str], hint: str) -> bool:
    hint_tokens = key_tokens(hint)
    return tokens[:len(hint_tokens)] == hint_tokens


class OvertimeNormalizer(AliasNormalizer):
    """Normalizer for Overtime's multi-treatment funnels."""

    source_name = "overtime"
    default_treatment = TreatmentType.WEIGHT_LOSS

    section_layout = (
        ("Treatment", ("treatmentType", "treatment-type", "goals", "preferred-medication")),
        ("Medical History", (
            "conditions", "medical-conditions", "medications", "allergies",
            "surgeries", "blood-pressure", "heart-condition", "prostate-history",
        )),
        ("Programme Details", (
            "current-weight", "goal-weight", "peptide-goals", "nad-experience",
            "libido-concerns", "trt-history", "testosterone-symptoms", "bloodwork-recent",
        )),
        ("Checkout", ("plan", "Checkout Completed", "Checkout Completed 2", "promo-code", "influencer-code")),
    )

    def classify_treatment(self, flat: Dict[str, Any]) -> TreatmentType:
        """Classify from the treatment field, then from programme-specific keys."""
        value = first_value(flat, TREATMENT_ALIASES)
        if value is not None:
            treatment = classify_treatment_text(stringify(value))
            if treatment is not None:
                return treatment

        keys = [key_tokens(key) for key, value in flat.items() if _answered(value)]
        for treatment, hints in TREATMENT_KEY_HINTS:
            if any(_starts_with(tokens, hint) for tokens in keys for hint in hints):
                return treatment
        return self.default_treatment
