"""
Tests for attacker / victim tracking (analytics.candidate_tracker).

Includes the four-recipient dusting scenario, monotonicity of attacker risk
and a seeded fuzz over counts for score bounds.
"""

from __future__ import annotations

import random

import pytest

from backend_dustwatch.analytics.candidate_tracker import (
    CandidateTracker,
    analyze_temporal,
    attacker_risk,
    victim_risk,
)

FIXED_NOW = 1_717_243_200

ATTACKER = "DustSender1111111111111111111111111111111111"
VICTIMS = [f"Victim{i}" + "1" * 38 for i in range(4)]


def test_four_recipient_scenario_confirms_attacker():
    """0.0005 SOL to 4 recipients within 10 minutes: confirmed attacker with risk 0.42."""
    tracker = CandidateTracker(min_transfers=3)
    updates = [
        tracker.observe(ATTACKER, victim, FIXED_NOW + i * 150, True)
        for i, victim in enumerate(VICTIMS)
    ]
    last = updates[-1]
    assert last.attacker_confirmed is True
    assert last.attacker["small_transfers_count"] == 4
    assert last.attacker["unique_victims_count"] == 4
    assert last.attacker["risk_score"] == pytest.approx(0.42)
    # confirmation happens exactly once, on the third distinct victim
    assert [u.newly_confirmed for u in updates] == [False, False, True, False]
    assert [a["address"] for a in tracker.confirmed_attackers()] == [ATTACKER]


def test_non_dust_leaves_state_untouched():
    tracker = CandidateTracker()
    assert tracker.observe(ATTACKER, VICTIMS[0], FIXED_NOW, False) is None
    assert len(tracker) == 0
    assert tracker.attacker(ATTACKER) is None


def test_victim_tracked_after_two_dust_transfers():
    tracker = CandidateTracker()
    first = tracker.observe("A1", VICTIMS[0], FIXED_NOW, True)
    second = tracker.observe("A2", VICTIMS[0], FIXED_NOW + 60, True)
    assert first.victim_tracked is False
    assert second.victim_tracked is True
    # 0.2 + 2/20 + 2/10
    assert second.victim["risk_score"] == pytest.approx(0.5)
    assert tracker.dust_counts(VICTIMS[0]) == (0, 2)


def test_repeated_victim_does_not_confirm():
    """Many transfers to one victim never reach the unique-victim floor."""
    tracker = CandidateTracker(min_transfers=3)
    for i in range(5):
        update = tracker.observe(ATTACKER, VICTIMS[0], FIXED_NOW + i, True)
    assert update.attacker_confirmed is False
    assert update.attacker["risk_score"] > 0
    assert tracker.confirmed_attackers() == []


def test_risk_zero_below_floors():
    assert attacker_risk(2, 10) == 0.0
    assert victim_risk(1, 5) == 0.0


def test_risk_caps_at_one():
    assert attacker_risk(500, 500) == 1.0
    assert victim_risk(500, 500) == 1.0


@pytest.mark.parametrize("seed", [3, 5, 8])
def test_attacker_risk_monotone(seed):
    """Raising either input with the other fixed never lowers attacker risk."""
    rng = random.Random(seed)
    for _ in range(200):
        count = rng.randint(0, 200)
        victims = rng.randint(0, 200)
        base = attacker_risk(count, victims)
        assert attacker_risk(count + rng.randint(1, 20), victims) >= base
        assert attacker_risk(count, victims + rng.randint(1, 20)) >= base


@pytest.mark.parametrize("seed", [13, 21])
def test_scores_stay_in_bounds(seed):
    rng = random.Random(seed)
    tracker = CandidateTracker(min_transfers=rng.randint(1, 5))
    senders = [f"S{i}" for i in range(6)]
    recipients = [f"R{i}" for i in range(10)]
    for i in range(300):
        update = tracker.observe(rng.choice(senders), rng.choice(recipients), FIXED_NOW + rng.randint(0, 86400), True)
        assert 0.0 <= update.attacker["risk_score"] <= 1.0
        assert 0.0 <= update.victim["risk_score"] <= 1.0


def test_analyze_temporal_bursts_and_average():
    """Gaps under five minutes are bursts; the average gap is over sorted timestamps."""
    pattern = analyze_temporal([FIXED_NOW + 600, FIXED_NOW, FIXED_NOW + 60], time_window=3600)
    assert pattern.burst_count == 1
    assert pattern.average_time_between_transfers == pytest.approx(300.0)
    assert pattern.is_suspicious is True
    assert pattern.regularity_score == 1.0
    assert sum(pattern.hourly_distribution) == 3
    assert sum(pattern.weekday_distribution) == 3


def test_analyze_temporal_slow_cadence_not_suspicious():
    pattern = analyze_temporal([FIXED_NOW, FIXED_NOW + 7200], time_window=3600)
    assert pattern.burst_count == 0
    assert pattern.is_suspicious is False
    assert analyze_temporal([], 3600).average_time_between_transfers == 0.0


def test_suspicious_patterns_only_for_confirmed_attackers():
    tracker = CandidateTracker(min_transfers=3)
    for i, victim in enumerate(VICTIMS):
        tracker.observe(ATTACKER, victim, FIXED_NOW + i * 30, True)
    tracker.observe("Lonely", VICTIMS[0], FIXED_NOW, True)
    tracker.observe("Lonely", VICTIMS[0], FIXED_NOW + 10, True)
    patterns = tracker.suspicious_patterns(time_window=86400)
    assert list(patterns) == [ATTACKER]


def test_timestamps_are_capped():
    tracker = CandidateTracker(max_timestamps=5)
    for i in range(20):
        tracker.observe(ATTACKER, VICTIMS[i % 4], FIXED_NOW + i, True)
    assert len(tracker.attacker_timestamps(ATTACKER)) == 5
    assert tracker.attacker(ATTACKER)["small_transfers_count"] == 20
