"""Payload normalizers for Intake-Gateway.

This module contains one normalizer strategy per intake platform, each
implementing the NormalizerPort interface, and the registry that maps a
source identifier to its strategy.
"""

from typing import Dict, List, Type

from intake_gateway.adapters.normalizers.base import AliasNormalizer
from intake_gateway.adapters.normalizers.heyflow import HeyflowNormalizer
from intake_gateway.adapters.normalizers.overtime import OvertimeNormalizer
from intake_gateway.adapters.normalizers.wellmedr import WellmedrNormalizer
from intake_gateway.domain.ports import NormalizerPort, PayloadFault

__all__ = [
    "AliasNormalizer",
    "HeyflowNormalizer",
    "OvertimeNormalizer",
    "WellmedrNormalizer",
    "get_normalizer",
    "available_normalizers",
]

_REGISTRY: Dict[str, Type[NormalizerPort]] = {
    "wellmedr": WellmedrNormalizer,
    "overtime": OvertimeNormalizer,
    "heyflow": HeyflowNormalizer,
}


def available_normalizers() -> List[str]:
    return sorted(_REGISTRY)


def get_normalizer(strategy: str) -> NormalizerPort:
    """Factory function returning the normalizer registered for a strategy.

    Parameters:
        strategy: Normalizer strategy name (usually the source name)

    Returns:
        NormalizerPort: Normalizer instance

    Raises:
        PayloadFault: If no normalizer is registered for the strategy

    Example Usage:
        ```python
        normalizer = get_normalizer("wellmedr")
        intake = normalizer.normalize(payload, raw_body)
        ```
    """
    normalizer_class = _REGISTRY.get(strategy.strip().lower())
    if normalizer_class is None:
        raise PayloadFault(
            f"No normalizer registered for source '{strategy}'. "
            f"Available: {', '.join(available_normalizers())}",
            source=strategy
        )
    return normalizer_class()
