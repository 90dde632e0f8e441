"""
String similarity helpers shared by the TM store (fuzzy matching) and the
review engine (modification degree).
"""
import re

from rapidfuzz.distance import Levenshtein

_TAG = re.compile(r"<[^>]+>")
_PLACEHOLDER = re.compile(r"\{\d+\}")


def normalize(text: str) -> str:
    """
    Normalize text for TM matching: drop inline tags and {n} placeholders,
    collapse whitespace, lowercase. Punctuation and diacritics are kept.
    """
    text = _TAG.sub("", text or "")
    text = _PLACEHOLDER.sub("", text)
    return " ".join(text.split()).lower()


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic edit distance (insert/delete/substitute, all cost 1)."""
    return Levenshtein.distance(s1, s2)


def calculate_modification_degree(original: str, modified: str) -> float:
    """
    Normalized edit distance between two versions of a translation, 0..1.

    Identical strings (including two empty ones) give 0; an empty string
    against a non-empty one gives 1.
    """
    original = original or ""
    modified = modified or ""
    if original == modified:
        return 0.0
    return Levenshtein.normalized_distance(original, modified)
