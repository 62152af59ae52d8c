"""
String similarity and normalization primitives for duplicate detection.
"""
import re
from typing import Optional

from rapidfuzz.distance import Levenshtein


def levenshtein(a: str, b: str) -> int:
    """
    Edit distance between two strings (insert/delete/substitute cost 1).

    Operates on Unicode code points.

    Examples:
        >>> levenshtein("kitten", "sitting")
        3
        >>> levenshtein("", "world")
        5
    """
    return Levenshtein.distance(a, b)


def name_similarity(name_a: str, name_b: str) -> float:
    """
    Compute name similarity (0-1) from Levenshtein distance.

    Names are lower-cased and trimmed first. Identical names score 1.0
    (this includes two empty names); a single empty name scores 0.0.

    Examples:
        >>> name_similarity("Jane Smith", "jane smith")
        1.0
        >>> name_similarity("Jon", "John")
        0.75
    """
    a = (name_a or "").lower().strip()
    b = (name_b or "").lower().strip()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    max_len = max(len(a), len(b))
    return 1 - levenshtein(a, b) / max_len


def email_domain(email: str) -> Optional[str]:
    """
    Extract the lower-cased domain from an email address.

    Returns None unless the address contains exactly one '@'.
    """
    if not email:
        return None
    parts = email.split("@")
    if len(parts) != 2:
        return None
    return parts[1].lower()


def phone_digits(raw: str) -> str:
    """Strip every non-digit character from a phone number."""
    if not raw:
        return ""
    return re.sub(r'\D', '', raw)


def full_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    """Join first and last name, treating missing parts as empty."""
    return f"{first_name or ''} {last_name or ''}".strip()
