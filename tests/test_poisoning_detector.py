"""
Tests for address-poisoning detection (analytics.poisoning_detector).

A labeled, long-lived, high-volume address is imitated by a fresh look-alike
that only ever received dust; the detector must flag the look-alike.
"""

from __future__ import annotations

import json
import random

import pytest

from backend_dustwatch.analytics.poisoning_detector import (
    GROUP_LIKELIHOOD_THRESHOLD,
    LEGITIMACY_THRESHOLD,
    AddressBook,
    AddressInfo,
    PoisoningDetector,
    SuggestedAction,
    WarningLevel,
    is_address_likely_legitimate,
    load_address_labels,
)

NOW = 1_717_243_200
DAY = 86_400

LEGIT = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
# Q -> 0 homoglyph swap of LEGIT
LOOKALIKE = "90CfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
FRIEND = "7F1WzVNQ1Qpurqxxdyv3UrFQR3uoNepULVW9A4bAJ5nZ"
DUSTER = "DustSender1111111111111111111111111111111111"
UNRELATED = "So11111111111111111111111111111111111111112"


@pytest.fixture
def book(clock, make_transfer):
    """LEGIT: labeled, 60 days old, bidirectional, 7 SOL volume. LOOKALIKE: one dust receipt today."""
    clock.now = NOW
    b = AddressBook(labels={LEGIT: "Exchange hot wallet"}, clock=clock)
    b.record_transfer(make_transfer("s1", LEGIT, FRIEND, 5.0, timestamp=NOW - 60 * DAY))
    b.record_transfer(make_transfer("s2", FRIEND, LEGIT, 2.0, timestamp=NOW - 59 * DAY))
    b.record_transfer(make_transfer("s3", LEGIT, FRIEND, 0.5, timestamp=NOW - 58 * DAY))
    b.record_transfer(make_transfer("s4", DUSTER, LOOKALIKE, 0.0001, timestamp=NOW))
    return b


def test_address_book_tracks_facts(book):
    info = book.get(LEGIT)
    assert info.is_labeled
    assert info.is_bidirectional
    assert info.transaction_count == 3
    assert info.total_transaction_volume == pytest.approx(7.5)
    assert is_address_likely_legitimate(info)
    assert not is_address_likely_legitimate(book.get(LOOKALIKE))


def test_unknown_address_first_seen_now(book, clock):
    info = book.get("Unknown11111111111111111111111111111111111")
    assert info.first_seen == clock.now
    assert info.transaction_count == 0


def test_similar_addresses_excludes_self_and_sorts(book):
    detector = PoisoningDetector(book)
    results = detector.similar_addresses(LOOKALIKE, [LOOKALIKE, UNRELATED, LEGIT])
    assert [r.address_b for r in results] == [LEGIT]
    assert results[0].address_a == LOOKALIKE
    assert results[0].similarity_score >= 0.8


def test_homoglyph_lookalike_is_poisoned(book):
    """Fresh, incoming-only, tiny-volume look-alike of a labeled address: warn or block."""
    detector = PoisoningDetector(book)
    result = detector.classify(LOOKALIKE, [LEGIT, FRIEND])
    assert result.is_potentially_poisoned is True
    # 0.5 - 0.15 (60 days newer) - 0.05 (incoming only) - 0.10 (dust volume)
    assert result.legitimacy_score == pytest.approx(0.2)
    assert result.suggested_action in (SuggestedAction.BLOCK, SuggestedAction.WARN)
    assert 0.0 <= result.confidence <= 1.0
    assert [s.address for s in result.similar_addresses] == [LEGIT]
    assert result.similar_addresses[0].is_likely_legitimate is True


def test_high_confidence_lookalike_is_blocked(book, make_transfer):
    """With ten dust receipts the verdict is sharp and well supported: block."""
    for i in range(9):
        book.record_transfer(make_transfer(f"d{i}", DUSTER, LOOKALIKE, 0.00001, timestamp=NOW))
    result = PoisoningDetector(book).classify(LOOKALIKE, [LEGIT])
    # 0.2 + 0.05 for at least three transactions
    assert result.legitimacy_score == pytest.approx(0.25)
    assert result.confidence > 0.7
    assert result.suggested_action == SuggestedAction.BLOCK


def test_legitimate_address_is_not_poisoned(book):
    """The older, labeled address scores well even though it has a look-alike."""
    result = PoisoningDetector(book).classify(LEGIT, [LOOKALIKE])
    assert result.is_potentially_poisoned is False
    assert result.suggested_action == SuggestedAction.SAFE


def test_no_lookalikes_is_safe(book):
    result = PoisoningDetector(book).classify(FRIEND, [UNRELATED])
    assert result.is_potentially_poisoned is False
    assert result.legitimacy_score == 1.0
    assert result.suggested_action == SuggestedAction.SAFE


def test_validate_transaction_address_suggests_known_address(book):
    validation = PoisoningDetector(book).validate_transaction_address(LOOKALIKE, [LEGIT, FRIEND])
    assert validation.is_valid is False
    assert validation.warning_level == WarningLevel.HIGH
    assert validation.suggested_address == LEGIT
    assert validation.message


def test_validate_transaction_address_clean_history(book):
    validation = PoisoningDetector(book).validate_transaction_address(FRIEND, [UNRELATED])
    assert validation.is_valid is True
    assert validation.warning_level == WarningLevel.NONE


def test_group_similar_addresses(book):
    groups = PoisoningDetector(book).group_similar_addresses([LEGIT, LOOKALIKE, UNRELATED])
    assert len(groups) == 1
    group = groups[0]
    assert set(group.addresses) == {LEGIT, LOOKALIKE}
    assert group.oldest_address == LEGIT
    assert group.newest_address == LOOKALIKE
    assert group.is_potential_poisoning_group is True
    assert group.poisoning_likelihood == pytest.approx(1.0)
    assert 0.0 <= group.confidence <= 1.0


def test_check_recipient_uses_known_pool(book):
    detector = PoisoningDetector(book)
    results = detector.check_recipient(LOOKALIKE)
    assert [r.address_b for r in results] == [LEGIT]


def test_load_address_labels_dict_and_list(tmp_path):
    as_dict = tmp_path / "labels.json"
    as_dict.write_text(json.dumps({LEGIT: "Exchange"}), encoding="utf-8")
    assert load_address_labels(as_dict) == {LEGIT: "Exchange"}

    as_list = tmp_path / "known.json"
    as_list.write_text(json.dumps([LEGIT, FRIEND]), encoding="utf-8")
    assert load_address_labels(as_list) == {LEGIT: "known", FRIEND: "known"}


def test_load_address_labels_missing_or_broken(tmp_path):
    assert load_address_labels(tmp_path / "nope.json") == {}
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_address_labels(broken) == {}


def _random_history(rng, book, make_transfer, address, counterpart, prefix):
    """Random dust-to-whale transfers in both directions, spread over ~90 days."""
    for i in range(rng.randint(0, 25)):
        amount = rng.choice([0.00001, 0.0005, rng.uniform(0.0, 5000.0)])
        ts = NOW - rng.randint(0, 90 * DAY)
        if rng.random() < 0.5:
            book.record_transfer(make_transfer(f"{prefix}{i}", address, counterpart, amount, timestamp=ts))
        else:
            book.record_transfer(make_transfer(f"{prefix}{i}", counterpart, address, amount, timestamp=ts))


@pytest.mark.parametrize("seed", range(25))
def test_classify_scores_stay_in_unit_range(seed, clock, make_transfer):
    rng = random.Random(seed)
    clock.now = NOW
    labels = {a: "known" for a in (LEGIT, LOOKALIKE) if rng.random() < 0.3}
    book = AddressBook(labels=labels, clock=clock)
    _random_history(rng, book, make_transfer, LEGIT, FRIEND, "a")
    _random_history(rng, book, make_transfer, LOOKALIKE, DUSTER, "b")

    detector = PoisoningDetector(book)
    for target, other in ((LOOKALIKE, LEGIT), (LEGIT, LOOKALIKE)):
        result = detector.classify(target, [other, UNRELATED])
        assert 0.0 <= result.legitimacy_score <= 1.0
        assert 0.0 <= result.confidence <= 1.0
        assert result.is_potentially_poisoned == (result.legitimacy_score < LEGITIMACY_THRESHOLD)


@pytest.mark.parametrize("seed", range(25))
def test_assess_group_values_stay_in_unit_range(seed):
    rng = random.Random(seed)
    infos = []
    for i in range(rng.randint(1, 6)):
        first_seen = NOW - rng.randint(0, 120 * DAY)
        infos.append(
            AddressInfo(
                address=f"member{i}",
                first_seen=first_seen,
                last_seen=first_seen + rng.randint(0, 30 * DAY),
                incoming_transaction_count=rng.randint(0, 500),
                outgoing_transaction_count=rng.choice([0, rng.randint(0, 500)]),
                total_transaction_volume=rng.choice([0.0, rng.uniform(0.0, 1e6)]),
                is_labeled=rng.random() < 0.3,
            )
        )

    flagged, confidence, likelihood = PoisoningDetector().assess_group(infos)
    assert 0.0 <= confidence <= 1.0
    assert 0.0 <= likelihood <= 1.0
    assert flagged == (likelihood > GROUP_LIKELIHOOD_THRESHOLD)
