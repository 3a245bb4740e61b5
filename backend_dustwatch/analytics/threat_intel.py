"""
Third-party threat intelligence (Chainalysis, TRM Labs).

Each provider is queried only when its API key is configured. Scores are
expected in [0, 1]; the combined risk is the mean of the providers that
answered, 0 when none did. Provider failures are logged, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

CHAINALYSIS_URL_TEMPLATE = "https://api.chainalysis.com/api/risk/v1/addresses/{address}"
TRM_LABS_SCREENING_URL = "https://api.trmlabs.com/public/v1/screening"
DEFAULT_TIMEOUT_SEC = 10.0


@dataclass
class ThreatIntelResult:
    combined_risk: float = 0.0
    chainalysis_risk: float | None = None
    trm_labs_risk: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "combined_risk": self.combined_risk,
            "chainalysis_risk": self.chainalysis_risk,
            "trm_labs_risk": self.trm_labs_risk,
        }


def _as_score(value: Any) -> float | None:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, score))


class ThreatIntelClient:
    def __init__(
        self,
        chainalysis_api_key: str | None = None,
        trm_labs_api_key: str | None = None,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        client: httpx.Client | None = None,
    ) -> None:
        self._chainalysis_key = (chainalysis_api_key or "").strip() or None
        self._trm_key = (trm_labs_api_key or "").strip() or None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_sec))

    @property
    def enabled(self) -> bool:
        return bool(self._chainalysis_key or self._trm_key)

    def _chainalysis(self, address: str) -> float | None:
        resp = self._client.get(
            CHAINALYSIS_URL_TEMPLATE.format(address=address),
            headers={"X-API-Key": self._chainalysis_key or ""},
        )
        resp.raise_for_status()
        return _as_score(resp.json().get("risk"))

    def _trm_labs(self, address: str) -> float | None:
        resp = self._client.post(
            TRM_LABS_SCREENING_URL,
            json={"address": address},
            headers={"X-API-Key": self._trm_key or ""},
        )
        resp.raise_for_status()
        return _as_score(resp.json().get("riskScore"))

    def check_address(self, address: str) -> ThreatIntelResult:
        result = ThreatIntelResult()
        if self._chainalysis_key:
            try:
                result.chainalysis_risk = self._chainalysis(address)
            except (httpx.HTTPError, ValueError, AttributeError) as e:
                logger.warning("threat_intel_chainalysis_failed", address=address, error=str(e))
        if self._trm_key:
            try:
                result.trm_labs_risk = self._trm_labs(address)
            except (httpx.HTTPError, ValueError, AttributeError) as e:
                logger.warning("threat_intel_trm_failed", address=address, error=str(e))
        scores = [s for s in (result.chainalysis_risk, result.trm_labs_risk) if s is not None]
        result.combined_risk = sum(scores) / len(scores) if scores else 0.0
        return result
