"""
Merge Executor for contact deduplication.

Folds one person (absorb) into another (keep) and deletes the absorbed
record. The whole procedure runs in a single store transaction:

1. Load both people with their tags, social profiles and companies
2. Fill keep's empty scalar fields from absorb (never overwrite)
3. Union sources; merge source_ids and custom_data (keep wins collisions)
4. Relink interaction participation and notes to keep
5. Add absorb's tags that keep does not hold
6. Add absorb's social profiles for platforms keep lacks
7. Relink company affiliations keep does not already have
8. Delete absorb

Either every step applies or none does. There is no undo once committed.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from api.services.person_store import (
    CompanyLink,
    DependentTable,
    PersonStore,
    PersonWithAssociations,
    SocialProfile,
)
from api.services.resilience import InvalidPairError, PartialMergeFailure, PersonNotFoundError
from api.utils.datetime_utils import utc_now_iso
from config.dedup_config import MergeConfig

logger = logging.getLogger(__name__)


@dataclass
class MergePlan:
    """Changes a merge will make to the kept person, computed before any write."""

    keep_id: str
    absorb_id: str
    field_updates: dict[str, Any] = field(default_factory=dict)
    filled_fields: list[str] = field(default_factory=list)
    sources_added: list[str] = field(default_factory=list)
    tag_ids_to_add: list[str] = field(default_factory=list)
    profiles_to_add: list[SocialProfile] = field(default_factory=list)
    profiles_dropped: list[str] = field(default_factory=list)  # platforms keep already has
    companies_to_relink: list[CompanyLink] = field(default_factory=list)
    companies_dropped: list[str] = field(default_factory=list)  # company ids keep already has

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "keep_id": self.keep_id,
            "absorb_id": self.absorb_id,
            "field_updates": self.field_updates,
            "filled_fields": self.filled_fields,
            "sources_added": self.sources_added,
            "tag_ids_to_add": self.tag_ids_to_add,
            "profiles_to_add": [p.platform for p in self.profiles_to_add],
            "profiles_dropped": self.profiles_dropped,
            "companies_to_relink": [c.company_id for c in self.companies_to_relink],
            "companies_dropped": self.companies_dropped,
        }


@dataclass
class MergeResult:
    """Outcome of a committed merge."""
    success: bool
    keep_id: str
    merged_id: str
    stats: dict = field(default_factory=dict)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def plan_merge(keep: PersonWithAssociations, absorb: PersonWithAssociations) -> MergePlan:
    """
    Compute how absorb folds into keep.

    Pure function: reads both records, writes nothing. keep's values are
    never overwritten; absorb only fills gaps.
    """
    kp, ap = keep.person, absorb.person
    plan = MergePlan(keep_id=kp.id, absorb_id=ap.id)

    for name in MergeConfig.FILLABLE_FIELDS:
        keep_value = getattr(kp, name)
        absorb_value = getattr(ap, name)
        if _is_empty(keep_value) and not _is_empty(absorb_value):
            plan.field_updates[name] = absorb_value
            plan.filled_fields.append(name)

    # Sources: union, keep's order first
    # Written only when absorb brings a source keep lacks
    combined_sources = list(dict.fromkeys([*kp.sources, *ap.sources]))
    plan.sources_added = [s for s in combined_sources if s not in kp.sources]
    if plan.sources_added:
        plan.field_updates["sources"] = combined_sources

    # Mappings: absorb entries only for keys keep lacks
    combined_source_ids = {**ap.source_ids, **kp.source_ids}
    if len(combined_source_ids) > len(kp.source_ids):
        plan.field_updates["source_ids"] = combined_source_ids

    combined_custom = {**ap.custom_data, **kp.custom_data}
    if len(combined_custom) > len(kp.custom_data):
        plan.field_updates["custom_data"] = combined_custom

    keep_tags = set(keep.tag_ids)
    plan.tag_ids_to_add = [t for t in dict.fromkeys(absorb.tag_ids) if t not in keep_tags]

    keep_platforms = {sp.platform for sp in keep.social_profiles}
    for profile in absorb.social_profiles:
        if profile.platform in keep_platforms:
            plan.profiles_dropped.append(profile.platform)
        else:
            plan.profiles_to_add.append(profile)
            keep_platforms.add(profile.platform)

    keep_companies = {c.company_id for c in keep.companies}
    for link in absorb.companies:
        if link.company_id in keep_companies:
            plan.companies_dropped.append(link.company_id)
        else:
            plan.companies_to_relink.append(link)

    return plan


class MergeExecutor:
    """Merges a confirmed duplicate pair within one workspace."""

    def __init__(self, store: PersonStore):
        self.store = store

    def preview(self, keep_id: str, absorb_id: str, workspace_id: str) -> MergePlan:
        """
        Compute the merge plan without writing anything (dry run).

        Raises:
            InvalidPairError: If keep_id == absorb_id
            PersonNotFoundError: If either person is missing from the workspace
        """
        if keep_id == absorb_id:
            raise InvalidPairError(keep_id)
        keep, absorb = self._load_pair(self.store, keep_id, absorb_id, workspace_id)
        return plan_merge(keep, absorb)

    def merge(self, keep_id: str, absorb_id: str, workspace_id: str) -> MergeResult:
        """
        Merge absorb into keep and delete absorb.

        Raises:
            InvalidPairError: If keep_id == absorb_id (nothing read or written)
            PersonNotFoundError: If either person is missing (nothing written);
                also what a repeated merge of an already-absorbed id gets
            InvalidRecordError: If a stored person row fails validation (nothing written)
            StoreUnavailableError: If the store fails before any write
            PartialMergeFailure: If a write step or the commit fails; the
                transaction has been rolled back
        """
        if keep_id == absorb_id:
            raise InvalidPairError(keep_id)

        step: Optional[str] = None
        try:
            with self.store.transaction() as tx:
                keep, absorb = self._load_pair(tx, keep_id, absorb_id, workspace_id)
                plan = plan_merge(keep, absorb)

                step = "update fields"
                if plan.field_updates:
                    tx.update_person(keep_id, workspace_id, {**plan.field_updates, "updated_at": utc_now_iso()})

                step = "relink interactions and notes"
                moved = tx.relink_dependents(
                    absorb_id, keep_id, workspace_id,
                    [DependentTable.INTERACTIONS, DependentTable.NOTES],
                )

                step = "union tags"
                tags_added = tx.upsert_tag_associations(keep_id, workspace_id, plan.tag_ids_to_add)

                step = "union social profiles"
                profiles_added = tx.upsert_social_profiles(keep_id, workspace_id, plan.profiles_to_add)

                step = "relink companies"
                moved.update(tx.relink_dependents(absorb_id, keep_id, workspace_id, [DependentTable.COMPANIES]))

                step = "delete absorbed person"
                if not tx.delete_person(absorb_id, workspace_id):
                    raise PersonNotFoundError([absorb_id], workspace_id)

                step = "commit"
        except Exception as e:
            if step is None:
                # Nothing written yet: surface not-found / store errors as they are
                raise
            logger.error(f"Failed to merge {absorb_id} into {keep_id} at '{step}', rolled back: {e}")
            raise PartialMergeFailure(step, e) from e

        stats = {
            "fields_filled": plan.filled_fields,
            "sources_added": len(plan.sources_added),
            "interactions_relinked": moved.get(DependentTable.INTERACTIONS.value, 0),
            "notes_relinked": moved.get(DependentTable.NOTES.value, 0),
            "companies_relinked": moved.get(DependentTable.COMPANIES.value, 0),
            "companies_dropped": len(plan.companies_dropped),
            "tags_added": tags_added,
            "social_profiles_added": profiles_added,
            "social_profiles_dropped": len(plan.profiles_dropped),
        }
        logger.info(f"Merged {absorb_id} into {keep_id} (workspace {workspace_id}): {stats}")

        return MergeResult(success=True, keep_id=keep_id, merged_id=absorb_id, stats=stats)

    @staticmethod
    def _load_pair(store: PersonStore, keep_id: str, absorb_id: str, workspace_id: str):
        keep = store.get_person_with_associations(keep_id, workspace_id)
        absorb = store.get_person_with_associations(absorb_id, workspace_id)
        missing = [pid for pid, rec in ((keep_id, keep), (absorb_id, absorb)) if rec is None]
        if missing:
            raise PersonNotFoundError(missing, workspace_id)
        return keep, absorb
