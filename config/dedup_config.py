"""
Duplicate detection and merge configuration.

Confidence tiers are ordered so fuzzy matches never outrank verified
(email/phone) matches: email 0.95 > phone 0.90 > similar name <= 0.85
> company domain 0.70.
"""


class DedupConfig:
    """Thresholds and confidences for the duplicate scanner."""

    # Deterministic matches
    EMAIL_MATCH_CONFIDENCE: float = 0.95
    PHONE_MATCH_CONFIDENCE: float = 0.90

    # Fuzzy full-name match
    NAME_SIMILARITY_THRESHOLD: float = 0.85
    NAME_MATCH_CONFIDENCE_CAP: float = 0.85

    # Same company domain + similar first name
    FIRST_NAME_SIMILARITY_THRESHOLD: float = 0.80
    DOMAIN_MATCH_CONFIDENCE: float = 0.70

    # Shared by unrelated people, so a matching domain says nothing
    PUBLIC_EMAIL_DOMAINS: frozenset[str] = frozenset({
        "gmail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
    })


class MergeConfig:
    """Configuration for merging two person records."""

    # Scalar fields copied from the absorbed person only where keep is empty.
    # Order matters for logging and plan output.
    FILLABLE_FIELDS: tuple[str, ...] = (
        "email",
        "phone",
        "first_name",
        "last_name",
        "display_name",
        "bio",
        "location",
        "avatar_url",
    )
