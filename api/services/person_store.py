"""
Person model and the store interface consumed by duplicate detection and merge.

Store rows are validated into explicit value types at this boundary so
the scanner and merge executor never handle loosely-typed rows.
"""
import json
from contextlib import AbstractContextManager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from api.utils.datetime_utils import parse_timestamp


class DependentTable(str, Enum):
    """Tables holding a foreign key to a person that merge relinks in bulk."""
    INTERACTIONS = "interactions"  # interaction participation links
    NOTES = "notes"
    COMPANIES = "companies"  # company affiliation links


@dataclass
class Person:
    """
    One real individual within one workspace.

    Email is matched case-insensitively and phone after stripping
    non-digits; both are stored as entered.
    """

    id: str
    workspace_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None

    # Which external systems contributed this record, and their ids for it
    sources: list[str] = field(default_factory=list)
    source_ids: dict[str, str] = field(default_factory=dict)
    custom_data: dict[str, Any] = field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def summary(self) -> dict:
        """Compact representation used in duplicate candidates."""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "avatar_url": self.avatar_url,
        }

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Person":
        """
        Create a Person from a store row, validating column types.

        JSON columns (sources, source_ids, custom_data) may arrive either
        encoded or already decoded.

        Raises:
            ValueError: If a column holds a value of the wrong shape
        """
        sources = _decode_json(row["sources"], list, "sources")
        source_ids = _decode_json(row["source_ids"], dict, "source_ids")
        custom_data = _decode_json(row["custom_data"], dict, "custom_data")

        if not all(isinstance(s, str) for s in sources):
            raise ValueError("sources must be a list of strings")
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in source_ids.items()):
            raise ValueError("source_ids must map source names to string ids")

        text_fields = {}
        for name in ("first_name", "last_name", "email", "phone", "display_name",
                     "bio", "location", "avatar_url"):
            value = row[name]
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be text, got {type(value).__name__}")
            text_fields[name] = value

        return cls(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            sources=sources,
            source_ids=source_ids,
            custom_data=custom_data,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            **text_fields,
        )


@dataclass
class SocialProfile:
    """A social-network profile attached to a person (one per platform after merge)."""
    platform: str
    profile_url: Optional[str] = None
    username: Optional[str] = None


@dataclass
class CompanyLink:
    """A person's affiliation with a company."""
    company_id: str
    role: Optional[str] = None


@dataclass
class PersonWithAssociations:
    """A person plus the dependent associations merge needs to union."""
    person: Person
    tag_ids: list[str] = field(default_factory=list)
    social_profiles: list[SocialProfile] = field(default_factory=list)
    companies: list[CompanyLink] = field(default_factory=list)


class PersonStore(Protocol):
    """
    Read/write interface over people and their dependent records.

    Every operation is scoped by workspace_id; ids from another workspace
    behave as not found. Writes made through the object yielded by
    ``transaction()`` apply atomically: all of them on clean exit, none
    on exception.
    """

    def list_persons(self, workspace_id: str) -> Sequence[Person]:
        ...

    def get_person_with_associations(
        self, person_id: str, workspace_id: str
    ) -> Optional[PersonWithAssociations]:
        ...

    def update_person(self, person_id: str, workspace_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def relink_dependents(
        self,
        from_id: str,
        to_id: str,
        workspace_id: str,
        tables: Sequence[DependentTable],
    ) -> dict[str, int]:
        ...

    def upsert_tag_associations(self, person_id: str, workspace_id: str, tag_ids: Sequence[str]) -> int:
        ...

    def upsert_social_profiles(
        self, person_id: str, workspace_id: str, profiles: Sequence[SocialProfile]
    ) -> int:
        ...

    def delete_person(self, person_id: str, workspace_id: str) -> bool:
        ...

    def transaction(self) -> AbstractContextManager["PersonStore"]:
        ...


def _decode_json(value: Any, expected: type, name: str):
    """Decode a JSON column, defaulting NULL to an empty container."""
    if value is None or value == "":
        return expected()
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"{name} is not valid JSON: {e}") from e
    if value is None:
        return expected()
    if not isinstance(value, expected):
        raise ValueError(f"{name} must be a {expected.__name__}, got {type(value).__name__}")
    return value
