"""Wellmedr intake normalizer.

Wellmedr posts flat kebab-case payloads for a single GLP-1 weight-loss
programme. Partial submissions arrive while the patient is still in the
funnel; the final delivery carries "Checkout Completed".
"""

from intake_gateway.adapters.normalizers.base import AliasNormalizer
from intake_gateway.domain.canonical import TreatmentType


class WellmedrNormalizer(AliasNormalizer):
    """Normalizer for the Wellmedr weight-loss funnel."""

    source_name = "wellmedr"
    default_treatment = TreatmentType.WEIGHT_LOSS

    section_layout = (
        ("Body Metrics", ("feet", "inches", "height", "weight", "current-weight", "goal-weight", "bmi")),
        ("Medical History", (
            "conditions", "medical-conditions", "medications", "current-medications",
            "allergies", "surgeries", "pregnant", "breastfeeding", "thyroid-cancer",
            "pancreatitis", "gallbladder", "kidney-disease", "diabetes",
        )),
        ("GLP-1 History", (
            "glp1-history", "glp1-type", "glp1-dose", "glp1-last-dose",
            "glp1-side-effects", "preferred-medication", "medication-preference",
        )),
        ("Goals & Lifestyle", ("goals", "activity-level", "diet", "alcohol", "sleep", "motivation")),
        ("Checkout", ("plan", "product", "Checkout Completed", "Checkout Completed 2", "promo-code")),
    )

    field_labels = {
        "bmi": "BMI",
        "glp1-history": "GLP-1 History",
        "glp1-type": "GLP-1 Medication",
        "glp1-dose": "GLP-1 Dose",
        "glp1-last-dose": "Last GLP-1 Dose",
        "glp1-side-effects": "GLP-1 Side Effects",
    }
