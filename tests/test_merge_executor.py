"""
Tests for the merge executor.

Tests cover:
- Field fill-in (never overwrite keep)
- Sources, source_ids and custom_data merging
- Tag, social profile and company unions
- Relinking notes and interactions, deleting the absorbed person
- Preconditions (InvalidPair, NotFound) and repeated merges
- Rollback on mid-merge failure and cancellation
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from api.services.merge_executor import MergeExecutor, plan_merge
from api.services.person_store import CompanyLink, PersonWithAssociations, SocialProfile
from api.services.resilience import (
    InvalidPairError,
    InvalidRecordError,
    PartialMergeFailure,
    PersonNotFoundError,
    StoreUnavailableError,
)
from api.services.sqlite_person_store import SQLitePersonStore


WORKSPACE_ID = "ws-test"


class TestPlanMerge:
    """Tests for the pure merge plan."""

    def test_never_overwrites_keep_values(self, make_person):
        keep = PersonWithAssociations(make_person("k", email="a@x.com", first_name="Jane"))
        absorb = PersonWithAssociations(make_person("m", email="b@y.com", first_name="Janet"))

        plan = plan_merge(keep, absorb)

        assert "email" not in plan.field_updates
        assert "first_name" not in plan.field_updates

    def test_fills_empty_and_blank_fields(self, make_person):
        keep = PersonWithAssociations(make_person("k", email="", phone="   ", location=None))
        absorb = PersonWithAssociations(make_person(
            "m", email="b@y.com", phone="555-1234", location="Berlin", avatar_url="https://img/m.png",
        ))

        plan = plan_merge(keep, absorb)

        assert plan.field_updates == {
            "email": "b@y.com",
            "phone": "555-1234",
            "location": "Berlin",
            "avatar_url": "https://img/m.png",
        }
        assert plan.filled_fields == ["email", "phone", "location", "avatar_url"]

    def test_blank_absorb_value_does_not_fill(self, make_person):
        keep = PersonWithAssociations(make_person("k"))
        absorb = PersonWithAssociations(make_person("m", bio="  "))

        assert plan_merge(keep, absorb).field_updates == {}

    def test_sources_union_keeps_order(self, make_person):
        keep = PersonWithAssociations(make_person("k", sources=["gmail", "csv"]))
        absorb = PersonWithAssociations(make_person("m", sources=["csv", "linkedin", "linkedin"]))

        plan = plan_merge(keep, absorb)

        assert plan.field_updates["sources"] == ["gmail", "csv", "linkedin"]
        assert plan.sources_added == ["linkedin"]

    def test_sources_untouched_when_absorb_adds_nothing(self, make_person):
        keep = PersonWithAssociations(make_person("k", sources=["gmail", "gmail"]))
        absorb = PersonWithAssociations(make_person("m", sources=["gmail"]))

        plan = plan_merge(keep, absorb)

        assert plan.field_updates == {}
        assert plan.sources_added == []

    def test_sources_added_despite_repeated_keep_sources(self, make_person):
        keep = PersonWithAssociations(make_person("k", sources=["gmail", "gmail"]))
        absorb = PersonWithAssociations(make_person("m", sources=["csv"]))

        plan = plan_merge(keep, absorb)

        assert plan.field_updates["sources"] == ["gmail", "csv"]
        assert plan.sources_added == ["csv"]

    def test_keep_wins_mapping_collisions(self, make_person):
        keep = PersonWithAssociations(make_person(
            "k", source_ids={"gmail": "g-1"}, custom_data={"tier": "gold"},
        ))
        absorb = PersonWithAssociations(make_person(
            "m", source_ids={"gmail": "g-2", "slack": "s-9"}, custom_data={"tier": "silver", "team": "infra"},
        ))

        plan = plan_merge(keep, absorb)

        assert plan.field_updates["source_ids"] == {"gmail": "g-1", "slack": "s-9"}
        assert plan.field_updates["custom_data"] == {"tier": "gold", "team": "infra"}

    def test_mappings_unchanged_when_absorb_adds_no_keys(self, make_person):
        keep = PersonWithAssociations(make_person("k", source_ids={"gmail": "g-1"}, custom_data={"a": 1}))
        absorb = PersonWithAssociations(make_person("m", source_ids={"gmail": "g-2"}, custom_data={"a": 2}))

        plan = plan_merge(keep, absorb)

        assert "source_ids" not in plan.field_updates
        assert "custom_data" not in plan.field_updates

    def test_association_unions(self, make_person):
        keep = PersonWithAssociations(
            make_person("k"),
            tag_ids=["t1", "t2"],
            social_profiles=[SocialProfile("linkedin", "https://linkedin.com/in/k")],
            companies=[CompanyLink("c1", "Engineer")],
        )
        absorb = PersonWithAssociations(
            make_person("m"),
            tag_ids=["t2", "t3"],
            social_profiles=[
                SocialProfile("linkedin", "https://linkedin.com/in/m"),
                SocialProfile("github", "https://github.com/m"),
            ],
            companies=[CompanyLink("c1", "Manager"), CompanyLink("c2")],
        )

        plan = plan_merge(keep, absorb)

        assert plan.tag_ids_to_add == ["t3"]
        assert [p.platform for p in plan.profiles_to_add] == ["github"]
        assert plan.profiles_dropped == ["linkedin"]
        assert [c.company_id for c in plan.companies_to_relink] == ["c2"]
        assert plan.companies_dropped == ["c1"]

    def test_to_dict(self, make_person):
        keep = PersonWithAssociations(make_person("k"))
        absorb = PersonWithAssociations(
            make_person("m", phone="555"),
            social_profiles=[SocialProfile("github")],
        )

        data = plan_merge(keep, absorb).to_dict()

        assert data["keep_id"] == "k"
        assert data["absorb_id"] == "m"
        assert data["filled_fields"] == ["phone"]
        assert data["profiles_to_add"] == ["github"]


class TestMerge:
    """Tests for merging through the SQLite store."""

    def test_merge_populated_pair(self, populated_store):
        note_id = populated_store.add_note("p-jane2", WORKSPACE_ID, "Prefers email")

        result = MergeExecutor(populated_store).merge("p-jane", "p-jane2", WORKSPACE_ID)

        assert result.success is True
        assert result.keep_id == "p-jane"
        assert result.merged_id == "p-jane2"
        assert result.stats == {
            "fields_filled": ["phone", "bio"],
            "sources_added": 1,
            "interactions_relinked": 1,
            "notes_relinked": 1,
            "companies_relinked": 1,
            "companies_dropped": 1,
            "tags_added": 1,
            "social_profiles_added": 1,
            "social_profiles_dropped": 1,
        }

        kept = populated_store.get_person_with_associations("p-jane", WORKSPACE_ID)
        assert kept.person.email == "jane@example.com"
        assert kept.person.first_name == "Jane"
        assert kept.person.phone == "+1 (555) 010-0000"
        assert kept.person.bio == "Met at PyCon"
        assert kept.person.sources == ["gmail", "apple_contacts"]
        assert kept.person.source_ids == {"gmail": "g-1", "apple_contacts": "ac-9"}
        assert kept.person.custom_data == {"tier": "gold", "birthday": "05-01"}

        assert kept.tag_ids == ["t1", "t2", "t3"]
        assert [(p.platform, p.profile_url) for p in kept.social_profiles] == [
            ("linkedin", "https://linkedin.com/in/jane"),
            ("twitter", "https://twitter.com/jane"),
        ]
        assert [(c.company_id, c.role) for c in kept.companies] == [("c1", "Engineer"), ("c2", None)]

        assert populated_store.get_note_person_id(note_id, WORKSPACE_ID) == "p-jane"
        assert populated_store.interaction_person_ids("i-1", WORKSPACE_ID) == ["p-jane"]
        assert populated_store.interaction_person_ids("i-2", WORKSPACE_ID) == ["p-jane"]

        assert populated_store.get_person("p-jane2", WORKSPACE_ID) is None
        assert populated_store.count_persons(WORKSPACE_ID) == 2

    def test_note_and_tag_move_to_keep(self, store, make_person):
        """id2's note points at id1 afterwards, id1 holds id2's tag, id2 is gone."""
        store.add_person(make_person("id1", email="x@y.com"))
        store.add_person(make_person("id2", email="x@y.com"))
        note_id = store.add_note("id2", WORKSPACE_ID, "Call back")
        store.add_tag_association("id2", WORKSPACE_ID, "vip")

        MergeExecutor(store).merge("id1", "id2", WORKSPACE_ID)

        assert store.get_note_person_id(note_id, WORKSPACE_ID) == "id1"
        assert store.get_person_with_associations("id1", WORKSPACE_ID).tag_ids == ["vip"]
        assert store.get_person("id2", WORKSPACE_ID) is None

    def test_shared_tag_held_once(self, store, make_person):
        store.add_person(make_person("id1"))
        store.add_person(make_person("id2"))
        store.add_tag_association("id1", WORKSPACE_ID, "T")
        store.add_tag_association("id2", WORKSPACE_ID, "T")

        result = MergeExecutor(store).merge("id1", "id2", WORKSPACE_ID)

        assert result.stats["tags_added"] == 0
        assert store.get_person_with_associations("id1", WORKSPACE_ID).tag_ids == ["T"]

    def test_keep_email_not_overwritten(self, store, make_person):
        store.add_person(make_person("id1", email="a@x.com"))
        store.add_person(make_person("id2", email="b@y.com"))

        MergeExecutor(store).merge("id1", "id2", WORKSPACE_ID)

        assert store.get_person("id1", WORKSPACE_ID).email == "a@x.com"

    def test_updated_at_refreshed_when_fields_change(self, store, make_person):
        original = store.add_person(make_person("id1"))
        store.add_person(make_person("id2", phone="555-1234"))

        MergeExecutor(store).merge("id1", "id2", WORKSPACE_ID)

        assert store.get_person("id1", WORKSPACE_ID).updated_at > original.updated_at

    def test_second_merge_is_not_found(self, populated_store):
        executor = MergeExecutor(populated_store)
        executor.merge("p-jane", "p-jane2", WORKSPACE_ID)

        with pytest.raises(PersonNotFoundError) as exc_info:
            executor.merge("p-jane", "p-jane2", WORKSPACE_ID)

        assert exc_info.value.person_ids == ["p-jane2"]
        assert populated_store.get_person("p-jane", WORKSPACE_ID) is not None

    def test_chain_into_absorbed_person_fails(self, populated_store):
        """Once B is absorbed into A, merging B into C fails instead of resurrecting it."""
        executor = MergeExecutor(populated_store)
        executor.merge("p-jane", "p-jane2", WORKSPACE_ID)

        with pytest.raises(PersonNotFoundError):
            executor.merge("p-bob", "p-jane2", WORKSPACE_ID)

    def test_cross_workspace_is_not_found(self, populated_store):
        before = populated_store.get_person_with_associations("p-jane", WORKSPACE_ID)

        with pytest.raises(PersonNotFoundError) as exc_info:
            MergeExecutor(populated_store).merge("p-jane", "p-jane-other", WORKSPACE_ID)

        assert exc_info.value.person_ids == ["p-jane-other"]
        assert populated_store.get_person_with_associations("p-jane", WORKSPACE_ID) == before
        assert populated_store.get_person("p-jane-other", "ws-other") is not None

    def test_both_missing(self, store):
        with pytest.raises(PersonNotFoundError) as exc_info:
            MergeExecutor(store).merge("nope-1", "nope-2", WORKSPACE_ID)

        assert exc_info.value.person_ids == ["nope-1", "nope-2"]

    def test_invalid_pair_touches_nothing(self):
        store = MagicMock()

        with pytest.raises(InvalidPairError):
            MergeExecutor(store).merge("p-1", "p-1", WORKSPACE_ID)

        store.transaction.assert_not_called()
        store.get_person_with_associations.assert_not_called()

    def test_concurrent_merges_of_same_absorb(self, populated_store):
        """Two merges absorbing the same person: exactly one succeeds."""
        executor = MergeExecutor(populated_store)

        def attempt(keep_id):
            try:
                return executor.merge(keep_id, "p-jane2", WORKSPACE_ID)
            except PersonNotFoundError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, ["p-jane", "p-bob"]))

        assert sum(isinstance(o, PersonNotFoundError) for o in outcomes) == 1
        assert sum(not isinstance(o, PersonNotFoundError) for o in outcomes) == 1
        assert populated_store.get_person("p-jane2", WORKSPACE_ID) is None


class TestMergeRollback:
    """Tests for all-or-nothing behavior."""

    def _assert_untouched(self, store, note_id):
        keep = store.get_person_with_associations("p-jane", WORKSPACE_ID)
        assert keep.person.phone is None
        assert keep.person.sources == ["gmail"]
        assert keep.tag_ids == ["t1", "t2"]
        assert [p.platform for p in keep.social_profiles] == ["linkedin"]
        assert store.get_person("p-jane2", WORKSPACE_ID) is not None
        assert store.get_note_person_id(note_id, WORKSPACE_ID) == "p-jane2"
        assert store.interaction_person_ids("i-1", WORKSPACE_ID) == ["p-jane2"]

    def test_step_failure_rolls_back(self, populated_store):
        note_id = populated_store.add_note("p-jane2", WORKSPACE_ID, "Prefers email")

        with patch.object(SQLitePersonStore, "upsert_social_profiles", side_effect=RuntimeError("boom")):
            with pytest.raises(PartialMergeFailure) as exc_info:
                MergeExecutor(populated_store).merge("p-jane", "p-jane2", WORKSPACE_ID)

        assert exc_info.value.step == "union social profiles"
        assert isinstance(exc_info.value.cause, RuntimeError)
        self._assert_untouched(populated_store, note_id)

    def test_delete_failure_rolls_back(self, populated_store):
        note_id = populated_store.add_note("p-jane2", WORKSPACE_ID, "Prefers email")

        with patch.object(SQLitePersonStore, "delete_person", return_value=False):
            with pytest.raises(PartialMergeFailure) as exc_info:
                MergeExecutor(populated_store).merge("p-jane", "p-jane2", WORKSPACE_ID)

        assert exc_info.value.step == "delete absorbed person"
        self._assert_untouched(populated_store, note_id)

    def test_cancellation_rolls_back(self, populated_store):
        note_id = populated_store.add_note("p-jane2", WORKSPACE_ID, "Prefers email")

        with patch.object(SQLitePersonStore, "upsert_tag_associations", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                MergeExecutor(populated_store).merge("p-jane", "p-jane2", WORKSPACE_ID)

        self._assert_untouched(populated_store, note_id)

    def test_commit_failure_is_partial_merge_failure(self, make_person):
        tx = MagicMock()
        tx.get_person_with_associations.side_effect = (
            lambda person_id, workspace_id: PersonWithAssociations(make_person(person_id))
        )
        tx.relink_dependents.return_value = {}
        tx.upsert_tag_associations.return_value = 0
        tx.upsert_social_profiles.return_value = 0
        tx.delete_person.return_value = True

        @contextmanager
        def failing_commit():
            yield tx
            raise StoreUnavailableError("commit", "disk I/O error")

        store = MagicMock()
        store.transaction = failing_commit

        with pytest.raises(PartialMergeFailure) as exc_info:
            MergeExecutor(store).merge("k", "m", WORKSPACE_ID)

        assert exc_info.value.step == "commit"

    def test_store_unavailable_before_writes_propagates(self):
        store = MagicMock()
        store.transaction.side_effect = StoreUnavailableError("begin transaction", "database is locked")

        with pytest.raises(StoreUnavailableError):
            MergeExecutor(store).merge("k", "m", WORKSPACE_ID)

    def test_invalid_record_propagates_before_writes(self, populated_store, corrupt_person):
        with pytest.raises(InvalidRecordError) as exc_info:
            MergeExecutor(populated_store).merge("p-jane", corrupt_person, WORKSPACE_ID)

        assert exc_info.value.person_id == corrupt_person
        keep = populated_store.get_person("p-jane", WORKSPACE_ID)
        assert keep.phone is None
        assert keep.sources == ["gmail"]


class TestPreview:
    """Tests for dry-run merges."""

    def test_preview_writes_nothing(self, populated_store):
        plan = MergeExecutor(populated_store).preview("p-jane", "p-jane2", WORKSPACE_ID)

        assert plan.filled_fields == ["phone", "bio"]
        assert plan.tag_ids_to_add == ["t3"]
        assert populated_store.get_person("p-jane2", WORKSPACE_ID) is not None
        assert populated_store.get_person("p-jane", WORKSPACE_ID).phone is None

    def test_preview_preconditions(self, populated_store):
        executor = MergeExecutor(populated_store)

        with pytest.raises(InvalidPairError):
            executor.preview("p-jane", "p-jane", WORKSPACE_ID)
        with pytest.raises(PersonNotFoundError):
            executor.preview("p-jane", "missing", WORKSPACE_ID)
