"""
Address string similarity.

Pure, deterministic functions comparing two address strings. Every component
is symmetric, so similarity(a, b) and similarity(b, a) agree exactly.

Composite score weights (SIMILARITY_WEIGHTS, sum 1.0):
    visual 0.4, edit 0.3, prefix/suffix 0.2, keyboard 0.1

Visual and keyboard similarity are positional and return 0 for strings of
different length; insertions/deletions are only seen by edit similarity.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

EXACT_MATCH_WEIGHT = 1.0
HOMOGLYPH_WEIGHT = 0.8
VISUAL_KEYBOARD_WEIGHT = 0.4
KEYBOARD_WEIGHT = 0.7
HOMOGLYPH_VARIANT_PREFIX = 8
SIMILARITY_CACHE_SIZE = 65_536

SIMILARITY_WEIGHTS: dict[str, float] = {
    "visual": 0.4,
    "edit": 0.3,
    "prefix": 0.2,
    "keyboard": 0.1,
}

# Characters that render alike in common fonts. Z/2 is deliberately absent.
CONFUSABLE_GROUPS: tuple[frozenset[str], ...] = (
    frozenset("0OoQD"),
    frozenset("lI1|i"),
    frozenset("5Ss"),
    frozenset("8Bb"),
    frozenset("mn"),
    frozenset("nr"),
    frozenset("mw"),
    frozenset("vw"),
    frozenset("wW"),
    frozenset("gq9"),
    frozenset("pq"),
    frozenset("oa"),
)

_QWERTY_NEIGHBOURS: dict[str, str] = {
    "1": "2qw",
    "2": "13qwe",
    "3": "24wer",
    "4": "35ert",
    "5": "46rty",
    "6": "57tyu",
    "7": "68yui",
    "8": "79uio",
    "9": "80iop",
    "0": "9op",
    "q": "12was",
    "w": "123qeasd",
    "e": "234wrsdf",
    "r": "345etdfg",
    "t": "456ryfgh",
    "y": "567tughj",
    "u": "678yihjk",
    "i": "789uojkl",
    "o": "890ipkl",
    "p": "90ol",
    "a": "qwszx",
    "s": "qweadzxc",
    "d": "wersfxcv",
    "f": "ertdgcvb",
    "g": "rtyfhvbn",
    "h": "tyugjbnm",
    "j": "yuihknm",
    "k": "uiojlm",
    "l": "iopk",
    "z": "asx",
    "x": "zasdc",
    "c": "xsdfv",
    "v": "cdfgb",
    "b": "vfghn",
    "n": "bghjm",
    "m": "nhjk",
}


def _symmetric_adjacency(neighbours: dict[str, str]) -> dict[str, frozenset[str]]:
    adjacency: dict[str, set[str]] = {}
    for key, chars in neighbours.items():
        for ch in chars:
            adjacency.setdefault(key, set()).add(ch)
            adjacency.setdefault(ch, set()).add(key)
    return {k: frozenset(v) for k, v in adjacency.items()}


KEYBOARD_ADJACENCY: dict[str, frozenset[str]] = _symmetric_adjacency(_QWERTY_NEIGHBOURS)


def _homoglyph_table(groups: tuple[frozenset[str], ...]) -> dict[str, frozenset[str]]:
    table: dict[str, set[str]] = {}
    for group in groups:
        for ch in group:
            table.setdefault(ch, set()).update(group - {ch})
    return {k: frozenset(v) for k, v in table.items()}


_HOMOGLYPHS: dict[str, frozenset[str]] = _homoglyph_table(CONFUSABLE_GROUPS)


@dataclass(frozen=True)
class SimilarityResult:
    """Similarity between two addresses; every score in [0, 1]."""

    address_a: str
    address_b: str
    similarity_score: float
    visual_similarity: float
    edit_similarity: float
    prefix_similarity: float
    keyboard_similarity: float

    def swapped(self) -> SimilarityResult:
        return SimilarityResult(
            address_a=self.address_b,
            address_b=self.address_a,
            similarity_score=self.similarity_score,
            visual_similarity=self.visual_similarity,
            edit_similarity=self.edit_similarity,
            prefix_similarity=self.prefix_similarity,
            keyboard_similarity=self.keyboard_similarity,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address_a": self.address_a,
            "address_b": self.address_b,
            "similarity_score": self.similarity_score,
            "visual_similarity": self.visual_similarity,
            "edit_similarity": self.edit_similarity,
            "prefix_similarity": self.prefix_similarity,
            "keyboard_similarity": self.keyboard_similarity,
        }


def is_homoglyph(a: str, b: str) -> bool:
    return b in _HOMOGLYPHS.get(a, ())


def is_keyboard_adjacent(a: str, b: str) -> bool:
    return b.lower() in KEYBOARD_ADJACENCY.get(a.lower(), ())


def levenshtein_distance(a: str, b: str) -> int:
    """Classic Levenshtein edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float:
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein_distance(a, b) / longest


def visual_similarity(a: str, b: str) -> float:
    """
    Positional look-alike score: exact 1.0, homoglyph 0.8, QWERTY neighbour 0.4.
    0 for unequal lengths.
    """
    if a == b:
        return 1.0
    if len(a) != len(b):
        return 0.0
    total = 0.0
    for ca, cb in zip(a, b):
        if ca == cb:
            total += EXACT_MATCH_WEIGHT
        elif is_homoglyph(ca, cb):
            total += HOMOGLYPH_WEIGHT
        elif is_keyboard_adjacent(ca, cb):
            total += VISUAL_KEYBOARD_WEIGHT
    return total / len(a)


def keyboard_similarity(a: str, b: str) -> float:
    """Case-insensitive positional typo score: equal 1.0, QWERTY neighbour 0.7."""
    if a == b:
        return 1.0
    if len(a) != len(b):
        return 0.0
    total = 0.0
    for ca, cb in zip(a.lower(), b.lower()):
        if ca == cb:
            total += 1.0
        elif cb in KEYBOARD_ADJACENCY.get(ca, ()):
            total += KEYBOARD_WEIGHT
    return total / len(a)


def prefix_similarity(a: str, b: str) -> float:
    """Mean of common-prefix and common-suffix length, each over the shorter length."""
    if a == b:
        return 1.0
    shortest = min(len(a), len(b))
    if shortest == 0:
        return 0.0
    prefix = 0
    while prefix < shortest and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while suffix < shortest and a[-1 - suffix] == b[-1 - suffix]:
        suffix += 1
    return (prefix / shortest + suffix / shortest) / 2


def pair_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent cache key for an address pair."""
    return (a, b) if a <= b else (b, a)


@lru_cache(maxsize=SIMILARITY_CACHE_SIZE)
def _similarity_ordered(a: str, b: str) -> SimilarityResult:
    visual = visual_similarity(a, b)
    edit = edit_similarity(a, b) if (a or b) else 1.0
    prefix = prefix_similarity(a, b)
    keyboard = keyboard_similarity(a, b)
    if a == b:
        score = 1.0
    elif not a or not b:
        visual = edit = prefix = keyboard = score = 0.0
    else:
        score = (
            SIMILARITY_WEIGHTS["visual"] * visual
            + SIMILARITY_WEIGHTS["edit"] * edit
            + SIMILARITY_WEIGHTS["prefix"] * prefix
            + SIMILARITY_WEIGHTS["keyboard"] * keyboard
        )
        score = min(1.0, max(0.0, score))
    return SimilarityResult(
        address_a=a,
        address_b=b,
        similarity_score=score,
        visual_similarity=visual,
        edit_similarity=edit,
        prefix_similarity=prefix,
        keyboard_similarity=keyboard,
    )


def similarity(a: str, b: str) -> SimilarityResult:
    """
    Composite similarity of two addresses.

    Identical strings score exactly 1.0; an empty string against a non-empty
    one scores 0. Results are cached by unordered pair; the returned result is
    oriented so address_a is the first argument.
    """
    first, second = pair_key(a, b)
    result = _similarity_ordered(first, second)
    return result if result.address_a == a else result.swapped()


def clear_similarity_cache() -> None:
    _similarity_ordered.cache_clear()


def homoglyph_variants(address: str) -> set[str]:
    """
    Single-character look-alike variants of address: every homoglyph substitution,
    plus keyboard-neighbour substitutions within the first 8 characters.
    """
    variants: set[str] = set()
    for i, ch in enumerate(address):
        for replacement in _HOMOGLYPHS.get(ch, ()):
            variants.add(address[:i] + replacement + address[i + 1:])
        if i < HOMOGLYPH_VARIANT_PREFIX:
            for replacement in KEYBOARD_ADJACENCY.get(ch.lower(), ()):
                variants.add(address[:i] + replacement + address[i + 1:])
    variants.discard(address)
    return variants


def bounded_levenshtein(a: str, b: str, limit: int) -> int:
    """
    Levenshtein distance when it is <= limit; otherwise any value > limit.
    Stops as soon as a whole DP row exceeds limit.
    """
    if abs(len(a) - len(b)) > limit:
        return limit + 1
    if a == b:
        return 0
    if not a or not b:
        return max(len(a), len(b))
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        if min(current) > limit:
            return limit + 1
        previous = current
    return previous[-1]


def similarity_upper_bound(a: str, b: str) -> float:
    """
    Cheap O(n) upper bound of similarity(a, b).similarity_score, assuming a
    perfect edit similarity. Lets callers skip the quadratic edit distance.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return min(
        1.0,
        SIMILARITY_WEIGHTS["visual"] * visual_similarity(a, b)
        + SIMILARITY_WEIGHTS["edit"]
        + SIMILARITY_WEIGHTS["prefix"] * prefix_similarity(a, b)
        + SIMILARITY_WEIGHTS["keyboard"] * keyboard_similarity(a, b),
    )
