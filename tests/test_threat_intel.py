"""
Tests for the external threat intelligence client (analytics.threat_intel).
"""

from __future__ import annotations

import httpx
import pytest

from backend_dustwatch.analytics.threat_intel import ThreatIntelClient

ADDRESS = "DustSender1111111111111111111111111111111111"


def _client(handler, **keys) -> ThreatIntelClient:
    return ThreatIntelClient(client=httpx.Client(transport=httpx.MockTransport(handler)), **keys)


def test_disabled_without_keys():
    def handler(request):
        raise AssertionError("no request expected")

    intel = _client(handler)
    assert not intel.enabled
    result = intel.check_address(ADDRESS)
    assert result.combined_risk == 0.0
    assert result.chainalysis_risk is None and result.trm_labs_risk is None


def test_combined_risk_is_mean_of_providers():
    def handler(request):
        assert request.headers["X-API-Key"]
        if request.url.host == "api.chainalysis.com":
            assert ADDRESS in request.url.path
            return httpx.Response(200, json={"risk": 0.8})
        return httpx.Response(200, json={"riskScore": 0.4})

    result = _client(handler, chainalysis_api_key="ck", trm_labs_api_key="tk").check_address(ADDRESS)
    assert result.chainalysis_risk == 0.8
    assert result.trm_labs_risk == 0.4
    assert result.combined_risk == pytest.approx(0.6)


def test_provider_failure_is_swallowed():
    def handler(request):
        if request.url.host == "api.chainalysis.com":
            return httpx.Response(500)
        return httpx.Response(200, json={"riskScore": 7})

    result = _client(handler, chainalysis_api_key="ck", trm_labs_api_key="tk").check_address(ADDRESS)
    assert result.chainalysis_risk is None
    assert result.trm_labs_risk == 1.0
    assert result.combined_risk == 1.0
    assert result.to_dict()["trm_labs_risk"] == 1.0
