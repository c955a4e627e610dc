"""
Team-name similarity.

similarity() returns a score in [0, 1]. It is commutative, equals 1.0 for
names that normalise identically, and rewards abbreviations and containment
("Man United" / "Manchester United") on top of the plain edit ratio.
A name that contains another plus a qualifier ("Chelsea U21" / "Chelsea")
scores at most QUALIFIED_CONTAINMENT_CAP, which lands it in the review band.
"""
from __future__ import annotations

import re
import unicodedata

from rapidfuzz.distance import Levenshtein

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

CONTAINMENT_BASE = 0.80
CONTAINMENT_MIN_LEN = 3
QUALIFIED_CONTAINMENT_CAP = 0.75
CLUB_AFFIXES = frozenset({"fc", "afc", "cf", "sc", "ac", "cd", "sv", "bc", "club"})


def normalize_name(value: str) -> str:
    """Fold accents, lower-case, and reduce everything but [a-z0-9] to single spaces."""
    decomposed = unicodedata.normalize("NFKD", value)
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", folded.lower()).strip()


def compact(value: str) -> str:
    return normalize_name(value).replace(" ", "")


def _tokens_prefix_in_order(short_tokens: list[str], long_tokens: list[str]) -> bool:
    """Every short token is a prefix of a distinct long token, in order."""
    if not short_tokens or len(short_tokens) > len(long_tokens):
        return False
    pos = 0
    for token in short_tokens:
        while pos < len(long_tokens) and not long_tokens[pos].startswith(token):
            pos += 1
        if pos == len(long_tokens):
            return False
        pos += 1
    return True


def _qualifier_tokens(short_tokens: list[str], long_tokens: list[str]) -> list[str]:
    """Tokens of the longer name that no short token abbreviates, ignoring club affixes."""
    return [
        token
        for token in long_tokens
        if token not in CLUB_AFFIXES and not any(token.startswith(s) for s in short_tokens)
    ]


def _containment_score(norm_a: str, norm_b: str) -> float:
    flat_a, flat_b = norm_a.replace(" ", ""), norm_b.replace(" ", "")
    tokens_a, tokens_b = norm_a.split(), norm_b.split()
    (short, short_tokens), (long_, long_tokens) = sorted(
        ((flat_a, tokens_a), (flat_b, tokens_b)), key=lambda item: len(item[0])
    )
    if len(short) < CONTAINMENT_MIN_LEN:
        return 0.0

    contained = (
        short in long_
        or _tokens_prefix_in_order(tokens_a, tokens_b)
        or _tokens_prefix_in_order(tokens_b, tokens_a)
    )
    if not contained:
        return 0.0
    score = CONTAINMENT_BASE + (1.0 - CONTAINMENT_BASE) * len(short) / len(long_)
    if _qualifier_tokens(short_tokens, long_tokens):
        return min(score, QUALIFIED_CONTAINMENT_CAP)
    return score


def similarity(a: str, b: str) -> float:
    norm_a, norm_b = normalize_name(a), normalize_name(b)
    flat_a, flat_b = norm_a.replace(" ", ""), norm_b.replace(" ", "")

    if flat_a == flat_b:
        return 1.0
    if not flat_a or not flat_b:
        return 0.0

    edit = Levenshtein.normalized_similarity(flat_a, flat_b)
    score = max(edit, _containment_score(norm_a, norm_b))
    return min(max(score, 0.0), 1.0)
