"""
Tests for composite risk scoring (analytics.risk_engine).
"""

from __future__ import annotations

import random

import pytest

from backend_dustwatch.analytics.risk_engine import (
    RiskSignals,
    RiskWeights,
    calculate_risk,
    dust_ratio,
    transfer_pattern_signal,
)
from backend_dustwatch.core.exceptions import ConfigurationError


def test_default_weights_sum_to_one():
    assert sum(RiskWeights().to_dict().values()) == pytest.approx(1.0)


def test_weights_not_summing_to_one_rejected():
    with pytest.raises(ConfigurationError):
        RiskWeights(dust_amount=0.5)


def test_signals_are_clamped():
    s = RiskSignals(dust_amount=3.0, transfer_pattern=-1.0)
    assert s.dust_amount == 1.0
    assert s.transfer_pattern == 0.0


def test_calculate_risk_weighted_sum():
    s = RiskSignals(dust_amount=1.0, transfer_pattern=0.5, address_similarity=0.0, temporal_pattern=1.0, third_party_risk=0.0)
    assert calculate_risk(s) == pytest.approx(0.3 + 0.1 + 0.15)
    everything = RiskSignals(1.0, 1.0, 1.0, 1.0, 1.0)
    assert calculate_risk(everything) == pytest.approx(1.0)
    assert calculate_risk(RiskSignals()) == 0.0


def test_signal_helpers():
    assert transfer_pattern_signal(5) == 0.5
    assert transfer_pattern_signal(25) == 1.0
    assert dust_ratio(3, 4) == 0.75
    assert dust_ratio(1, 0) == 0.0


@pytest.mark.parametrize("seed", range(25))
def test_calculate_risk_stays_in_unit_range(seed):
    rng = random.Random(seed)
    raw = [rng.uniform(0.01, 1.0) for _ in range(5)]
    weights = RiskWeights(*(r / sum(raw) for r in raw))
    signals = RiskSignals(*(rng.uniform(-2.0, 3.0) for _ in range(5)))

    score = calculate_risk(signals, weights)

    assert 0.0 <= score <= 1.0
    assert calculate_risk(RiskSignals(1, 1, 1, 1, 1), weights) == pytest.approx(1.0)
    assert calculate_risk(RiskSignals(), weights) == 0.0
