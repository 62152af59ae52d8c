"""
Duplicate Scanner for contact deduplication.

Produces scored duplicate-pair candidates for a workspace using two
independent strategies:
1. Deterministic matching - same email (case-insensitive) or same phone
   (digits only)
2. Fuzzy matching - similar full names, or same company email domain
   with a similar first name

Fuzzy comparison is exhaustive over all pairs (O(n^2)), which is fine for
a single workspace's contact list. Larger workspaces would need blocking
by name prefix or email domain before comparison.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from api.services.person_store import Person, PersonStore
from api.services.resilience import RetryConfig, retry_sync
from api.services.similarity import email_domain, full_name, name_similarity, phone_digits
from config.dedup_config import DedupConfig
from config.settings import settings

logger = logging.getLogger(__name__)

# Namespace for pair-derived candidate ids
CANDIDATE_NAMESPACE = uuid.UUID("6f1c1a52-8d3e-4b8e-9a51-3c2f5e7d9b10")


class MatchRule(str, Enum):
    """Which rule produced a candidate."""
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    COMPANY_DOMAIN = "company_domain"


def pair_key(id_a: str, id_b: str) -> str:
    """Order-independent key for a pair of person ids."""
    return ":".join(sorted((id_a, id_b)))


@dataclass
class DuplicateCandidate:
    """An unconfirmed, scored suggestion that two people are the same individual."""

    person_a: Person
    person_b: Person
    confidence: float  # 0.0-1.0
    reason: str  # Human-readable, e.g. "Same email: jane@example.com"
    rule: str  # MatchRule value

    @property
    def pair_key(self) -> str:
        return pair_key(self.person_a.id, self.person_b.id)

    @property
    def id(self) -> str:
        """
        Stable id for the pair.

        (A, B) and (B, A) share an id, so review actions keyed on it are
        idempotent regardless of list order or which rule found the pair.
        """
        return str(uuid.uuid5(CANDIDATE_NAMESPACE, self.pair_key))

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "person_a": self.person_a.summary(),
            "person_b": self.person_b.summary(),
            "confidence": self.confidence,
            "reason": self.reason,
            "rule": self.rule,
        }


def _pairs(group: Sequence[Person]):
    """Every unordered pair within a group, in group order."""
    for i in range(len(group)):
        for j in range(i + 1, len(group)):
            yield group[i], group[j]


def find_deterministic_matches(people: Sequence[Person]) -> list[DuplicateCandidate]:
    """
    Find people sharing an email or phone number.

    Email pairs come first. A phone pair is skipped when the email rule
    already produced the same unordered pair.
    """
    candidates: list[DuplicateCandidate] = []
    if len(people) < 2:
        return candidates

    by_email: dict[str, list[Person]] = defaultdict(list)
    for p in people:
        if not p.email:
            continue
        by_email[p.email.lower()].append(p)

    seen_pairs: set[str] = set()
    for email, group in by_email.items():
        for a, b in _pairs(group):
            candidates.append(DuplicateCandidate(
                person_a=a,
                person_b=b,
                confidence=DedupConfig.EMAIL_MATCH_CONFIDENCE,
                reason=f"Same email: {email}",
                rule=MatchRule.EMAIL.value,
            ))
            seen_pairs.add(pair_key(a.id, b.id))

    by_phone: dict[str, list[Person]] = defaultdict(list)
    for p in people:
        # "N/A", "unknown" and the like carry no number to compare
        digits = phone_digits(p.phone)
        if not digits:
            continue
        by_phone[digits].append(p)

    for group in by_phone.values():
        for a, b in _pairs(group):
            key = pair_key(a.id, b.id)
            if key in seen_pairs:
                continue
            candidates.append(DuplicateCandidate(
                person_a=a,
                person_b=b,
                confidence=DedupConfig.PHONE_MATCH_CONFIDENCE,
                reason=f"Same phone: {a.phone}",
                rule=MatchRule.PHONE.value,
            ))
            seen_pairs.add(key)

    return candidates


def _fuzzy_match(a: Person, b: Person):
    """First applicable fuzzy rule for a pair, or None."""
    name_a = full_name(a.first_name, a.last_name)
    name_b = full_name(b.first_name, b.last_name)
    if not name_a or not name_b:
        return None

    similarity = name_similarity(name_a, name_b)
    if similarity >= DedupConfig.NAME_SIMILARITY_THRESHOLD:
        return DuplicateCandidate(
            person_a=a,
            person_b=b,
            confidence=min(similarity, DedupConfig.NAME_MATCH_CONFIDENCE_CAP),
            reason=f'Similar names: "{name_a}" ~ "{name_b}"',
            rule=MatchRule.NAME.value,
        )

    if a.email and b.email:
        domain_a = email_domain(a.email)
        domain_b = email_domain(b.email)
        if (
            domain_a
            and domain_a == domain_b
            and domain_a not in DedupConfig.PUBLIC_EMAIL_DOMAINS
        ):
            first_similarity = name_similarity(a.first_name or "", b.first_name or "")
            if first_similarity >= DedupConfig.FIRST_NAME_SIMILARITY_THRESHOLD:
                return DuplicateCandidate(
                    person_a=a,
                    person_b=b,
                    confidence=DedupConfig.DOMAIN_MATCH_CONFIDENCE,
                    reason=f"Same company domain ({domain_a}) + similar first name",
                    rule=MatchRule.COMPANY_DOMAIN.value,
                )

    return None


def find_fuzzy_matches(people: Sequence[Person]) -> list[DuplicateCandidate]:
    """
    Compare every pair of people for approximate matches.

    At most one candidate per pair, from the first rule that applies:
    similar full names (confidence capped at 0.85), then same non-public
    email domain with a similar first name (confidence 0.70).
    """
    candidates: list[DuplicateCandidate] = []
    if len(people) < 2:
        return candidates

    for a, b in _pairs(people):
        candidate = _fuzzy_match(a, b)
        if candidate:
            candidates.append(candidate)

    return candidates


def collapse_candidates(candidates: Sequence[DuplicateCandidate]) -> list[DuplicateCandidate]:
    """
    Keep one candidate per unordered pair and rank by confidence.

    The first occurrence of a pair wins, so with scan output (deterministic
    first) a verified match is kept over a fuzzy one for the same pair.
    Ties keep scan order.
    """
    seen: set[str] = set()
    unique: list[DuplicateCandidate] = []
    for c in candidates:
        if c.pair_key in seen:
            continue
        seen.add(c.pair_key)
        unique.append(c)
    return sorted(unique, key=lambda c: c.confidence, reverse=True)


def _scan_retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=settings.store_max_retries,
        base_delay=settings.store_retry_delay,
    )


class DuplicateScanner:
    """
    Finds duplicate candidates in a workspace.

    Stateless between calls and read-only: a scan can be abandoned at any
    point without side effects.
    """

    def __init__(self, store: PersonStore, retry_config: Optional[RetryConfig] = None):
        self.store = store
        self.retry_config = retry_config

    def scan(self, workspace_id: str) -> list[DuplicateCandidate]:
        """
        Scan a workspace for duplicate candidates.

        Returns deterministic candidates followed by fuzzy ones. A pair may
        appear once from each strategy; use find_duplicates() for one
        candidate per pair.

        Raises:
            StoreUnavailableError: If the snapshot read keeps failing after retries
        """
        people = self._load_people(workspace_id)
        if len(people) < 2:
            logger.info(f"Duplicate scan for workspace {workspace_id}: {len(people)} people, nothing to compare")
            return []

        deterministic = find_deterministic_matches(people)
        fuzzy = find_fuzzy_matches(people)

        logger.info(
            f"Duplicate scan for workspace {workspace_id}: {len(people)} people, "
            f"{len(deterministic)} deterministic, {len(fuzzy)} fuzzy candidates"
        )
        return deterministic + fuzzy

    def find_duplicates(self, workspace_id: str) -> list[DuplicateCandidate]:
        """Scan and collapse to one ranked candidate per pair (the review list)."""
        return collapse_candidates(self.scan(workspace_id))

    def _load_people(self, workspace_id: str) -> list[Person]:
        @retry_sync(config=self.retry_config or _scan_retry_config())
        def load() -> list[Person]:
            return list(self.store.list_persons(workspace_id))

        return load()
