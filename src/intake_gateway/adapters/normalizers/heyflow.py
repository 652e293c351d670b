"""Heyflow intake normalizer.

Heyflow is a form builder shared by several clinics. Payloads nest answers
under `fields` (optionally inside `data`), either as a list of
{id, label, value} objects or as a mapping. Answers are flattened keyed by
label, falling back to the field id, before alias lookup.
"""

import logging
from typing import Any, Dict

from intake_gateway.adapters.normalizers.base import AliasNormalizer
from intake_gateway.domain.canonical import TreatmentType
from intake_gateway.domain.ports import NormalizationFault

logger = logging.getLogger(__name__)


class HeyflowNormalizer(AliasNormalizer):
    """Normalizer for nested Heyflow form payloads."""

    source_name = "heyflow"
    default_treatment = TreatmentType.GENERAL

    def flatten(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Merge top-level scalars with the nested field answers.

        Raises:
            NormalizationFault: If `fields` has an unsupported shape
        """
        flat: Dict[str, Any] = {
            key: value for key, value in payload.items()
            if key not in ("data", "fields") and not isinstance(value, (dict, list))
        }

        container = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        for key, value in container.items():
            if key != "fields" and not isinstance(value, (dict, list)):
                flat.setdefault(key, value)

        fields = container.get("fields", {})
        if isinstance(fields, dict):
            for key, value in fields.items():
                flat[key] = value.get("value") if isinstance(value, dict) and "value" in value else value
        elif isinstance(fields, list):
            for index, field in enumerate(fields):
                if not isinstance(field, dict):
                    raise NormalizationFault(
                        f"Heyflow field #{index} is not an object",
                        source=self.source_name
                    )
                key = field.get("label") or field.get("id") or f"field-{index}"
                flat[str(key)] = field.get("value")
        else:
            raise NormalizationFault(
                f"Unsupported Heyflow fields type: {type(fields).__name__}",
                source=self.source_name
            )

        logger.debug(f"Flattened Heyflow payload into {len(flat)} keys")
        return flat
