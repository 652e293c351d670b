"""Configured Affiliate Engine.

Reference AffiliateEnginePort backed by an in-memory table of affiliates,
their referral codes and recorded landing-page touches. The table can be
loaded from a JSON file (IG_AFFILIATES_FILE):

    {
        "affiliates": [
            {"id": 7, "tenant_id": 1, "codes": ["JANE10"], "status": "ACTIVE"}
        ],
        "touches": [
            {"tenant_id": 1, "code": "JANE10", "referrer": "instagram.com/jane",
             "touched_at": "2026-01-05T10:00:00+00:00"}
        ]
    }

Codes are matched case-insensitively within the patient's tenant; inactive
affiliates never receive attribution.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from intake_gateway.domain.models import AttributionResult, AttributionTier
from intake_gateway.domain.ports import AffiliateEnginePort

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "ACTIVE"
DEFAULT_TOUCH_WINDOW_DAYS = 30


@dataclass
class Affiliate:
    id: int
    tenant_id: int
    codes: List[str]
    status: str = ACTIVE_STATUS


@dataclass
class Touch:
    """A recorded visit through an affiliate link, not yet converted."""
    tenant_id: int
    code: str
    referrer: str
    touched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    converted_patient_id: Optional[int] = None


class ConfiguredAffiliateEngine(AffiliateEnginePort):
    """In-memory affiliate lookup and touch attribution.

    Parameters:
        affiliates: Known affiliates
        touches: Recorded touches
        touch_window_days: Maximum age of a touch used for inferred attribution
    """

    def __init__(
        self,
        affiliates: Optional[List[Affiliate]] = None,
        touches: Optional[List[Touch]] = None,
        touch_window_days: int = DEFAULT_TOUCH_WINDOW_DAYS
    ):
        self._lock = threading.Lock()
        self._codes: Dict[Tuple[int, str], Affiliate] = {}
        self._touches: List[Touch] = list(touches or [])
        self._attributed: Set[int] = set()
        self._window = timedelta(days=touch_window_days)
        for affiliate in affiliates or []:
            self.add_affiliate(affiliate)

    @classmethod
    def from_file(cls, path: str) -> 'ConfiguredAffiliateEngine':
        """Load affiliates and touches from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        affiliates = [Affiliate(**raw) for raw in data.get("affiliates", [])]
        touches = [
            Touch(
                tenant_id=raw["tenant_id"],
                code=raw["code"],
                referrer=raw.get("referrer", ""),
                touched_at=datetime.fromisoformat(raw["touched_at"]) if raw.get("touched_at") else datetime.now(timezone.utc),
            )
            for raw in data.get("touches", [])
        ]
        logger.info(f"Loaded {len(affiliates)} affiliates and {len(touches)} touches from {path}")
        return cls(affiliates=affiliates, touches=touches)

    def add_affiliate(self, affiliate: Affiliate) -> None:
        with self._lock:
            for code in affiliate.codes:
                self._codes[(affiliate.tenant_id, code.strip().upper())] = affiliate

    def record_touch(self, touch: Touch) -> None:
        with self._lock:
            self._touches.append(touch)

    def attribute(self, patient_id: int, code: str, tenant_id: int) -> Optional[AttributionResult]:
        normalized = code.strip().upper()
        with self._lock:
            affiliate = self._codes.get((tenant_id, normalized))
            if affiliate is None:
                logger.info(f"No affiliate ref code {normalized} for tenant {tenant_id}")
                return None
            if affiliate.status != ACTIVE_STATUS:
                logger.warning(f"Affiliate {affiliate.id} is {affiliate.status}; skipping attribution")
                return None
            self._attributed.add(patient_id)

        return AttributionResult(code=normalized, affiliate_id=affiliate.id, tier=AttributionTier.EXPLICIT_MATCH)

    def attribute_by_recent_touch(
        self,
        patient_id: int,
        referrer: Optional[str],
        tenant_id: int
    ) -> Optional[AttributionResult]:
        """Attribute to the newest unconverted touch whose referrer matches."""
        if not referrer:
            return None
        needle = referrer.strip().lower()
        cutoff = datetime.now(timezone.utc) - self._window

        with self._lock:
            if patient_id in self._attributed:
                return None
            candidates = [
                touch for touch in self._touches
                if touch.tenant_id == tenant_id
                and touch.converted_patient_id is None
                and touch.touched_at >= cutoff
                and touch.referrer
                and (touch.referrer.lower() in needle or needle in touch.referrer.lower())
            ]
            for touch in sorted(candidates, key=lambda t: t.touched_at, reverse=True):
                affiliate = self._codes.get((tenant_id, touch.code.strip().upper()))
                if affiliate is None or affiliate.status != ACTIVE_STATUS:
                    continue
                touch.converted_patient_id = patient_id
                self._attributed.add(patient_id)
                return AttributionResult(
                    code=touch.code.strip().upper(),
                    affiliate_id=affiliate.id,
                    tier=AttributionTier.INFERRED
                )
        return None
