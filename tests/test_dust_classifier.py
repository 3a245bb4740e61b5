"""
Tests for dust classification (analytics.dust_classifier).
"""

from __future__ import annotations

from backend_dustwatch.analytics.dust_classifier import classify, is_dust
from backend_dustwatch.analytics.thresholds import Thresholds


SENDER = "DustSender1111111111111111111111111111111111"
RECIPIENT = "Victim11111111111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def test_below_threshold_native_transfer_is_dust(make_transfer):
    t = make_transfer("sig1", SENDER, RECIPIENT, 0.0005)
    assert is_dust(t, 0.001) is True


def test_threshold_is_exclusive(make_transfer):
    """An amount equal to the threshold is not dust."""
    t = make_transfer("sig1", SENDER, RECIPIENT, 0.001)
    assert is_dust(t, 0.001) is False


def test_zero_amount_is_not_dust(make_transfer):
    t = make_transfer("sig1", SENDER, RECIPIENT, 0.0)
    assert is_dust(t, 0.001) is False


def test_spl_token_transfer_is_never_dust(make_transfer):
    t = make_transfer("sig1", SENDER, RECIPIENT, 0.0000001, token_type=USDC_MINT)
    assert is_dust(t, 0.001) is False


def test_classify_records_threshold_and_is_idempotent(make_transfer):
    """Same transfer, same thresholds: same verdict, threshold kept on the result."""
    thresholds = Thresholds(dust_amount_threshold=0.001)
    t = make_transfer("sig1", SENDER, RECIPIENT, 0.0005)
    first = classify(t, thresholds)
    second = classify(t, thresholds)
    assert first.is_dust is True
    assert first == second
    assert first.dust_threshold == 0.001
    assert first.signature == "sig1"
    assert first.is_potential_poisoning is False
    out = first.to_dict()
    assert out["is_dust"] is True
    assert out["sender"] == SENDER
