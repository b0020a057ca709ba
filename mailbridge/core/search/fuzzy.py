"""
String-matching helpers for the fuzzy search passes.

levenshtein() and the word-level matcher back the edit-distance pass.
trigram_similarity() reproduces pg_trgm's similarity() so the trigram pass
behaves the same on databases without the extension (SQLite in tests).
"""
import re
from typing import Iterable, List, Optional, Set

TOKEN_SPLIT = re.compile(r'[\W_]+', re.UNICODE)
TRIGRAM_WORD = re.compile(r'[^\W_]+', re.UNICODE)


def levenshtein(a: str, b: str, max_distance: Optional[int] = None) -> int:
    """
    Edit distance between two strings (insert, delete, substitute).

    With max_distance, returns max_distance + 1 as soon as the distance is
    known to exceed it.
    """
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if max_distance is not None and len(a) - len(b) > max_distance:
        return max_distance + 1
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        if max_distance is not None and min(current) > max_distance:
            return max_distance + 1
        previous = current
    return previous[-1]


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercased words split on whitespace and punctuation."""
    if not text:
        return []
    return [token for token in TOKEN_SPLIT.split(text.lower()) if token]


def edit_distance_threshold(query: str) -> int:
    return 2 if len(query) <= 3 else 3


def edit_distance_match(query: str, fields: Iterable[Optional[str]]) -> bool:
    """
    True when the query is a literal substring of any field, or any word of
    any field is within the length-scaled edit distance of the query.
    """
    needle = query.strip().lower()
    if not needle:
        return False
    threshold = edit_distance_threshold(needle)
    for value in fields:
        if not value:
            continue
        haystack = value.lower()
        if needle in haystack:
            return True
        for token in set(tokenize(haystack)):
            if levenshtein(needle, token, threshold) <= threshold:
                return True
    return False


def trigrams(text: Optional[str]) -> Set[str]:
    """pg_trgm trigram set: each word padded with two leading and one trailing blank."""
    result: Set[str] = set()
    if not text:
        return result
    for word in TRIGRAM_WORD.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            result.add(padded[i:i + 3])
    return result


def trigram_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Shared trigrams over all distinct trigrams of both strings, like pg_trgm similarity()."""
    left, right = trigrams(a), trigrams(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def best_trigram_similarity(query: str, fields: Iterable[Optional[str]]) -> float:
    query_trigrams = trigrams(query)
    best = 0.0
    if not query_trigrams:
        return best
    for value in fields:
        field_trigrams = trigrams(value)
        if not field_trigrams:
            continue
        score = len(query_trigrams & field_trigrams) / len(query_trigrams | field_trigrams)
        best = max(best, score)
    return best
