"""
Pytest configuration and shared fixtures for contact dedup tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- integration: Tests that go through the HTTP layer or the CLI

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
from datetime import datetime, timedelta, timezone

import pytest


WORKSPACE_ID = "ws-test"
OTHER_WORKSPACE_ID = "ws-other"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (HTTP layer, CLI)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-mark tests based on file name.

    Tests in test_*_api.py and the CLI tests get the 'integration' marker,
    everything else is 'unit'.
    """
    for item in items:
        path = str(item.path)
        if path.endswith("_api.py") or "merge_people" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def make_person():
    """
    Factory for Person records with increasing created_at.

    Keeps list order (and so candidate order) deterministic.
    """
    from api.services.person_store import Person

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(person_id: str, workspace_id: str = WORKSPACE_ID, **fields) -> Person:
        counter["n"] += 1
        fields.setdefault("created_at", base + timedelta(minutes=counter["n"]))
        fields.setdefault("updated_at", fields["created_at"])
        return Person(id=person_id, workspace_id=workspace_id, **fields)

    return _make


@pytest.fixture
def store(tmp_path):
    """A SQLitePersonStore on a fresh temporary database file."""
    from api.services.sqlite_person_store import SQLitePersonStore

    return SQLitePersonStore(str(tmp_path / "crm.db"), timeout=1.0)


@pytest.fixture
def populated_store(store, make_person):
    """
    A workspace with two obvious duplicates and their dependent records.

    - p-jane: Jane Smith, email only, tags t1/t2, linkedin, company c1
    - p-jane2: jane smith (same email, different case), phone + bio,
      tags t2/t3, linkedin + twitter, companies c1/c2, interactions i-1/i-2
    - p-bob: unrelated person
    - p-jane-other: same email but in another workspace
    """
    from api.services.person_store import SocialProfile

    store.add_person(make_person(
        "p-jane", first_name="Jane", last_name="Smith", email="jane@example.com",
        sources=["gmail"], source_ids={"gmail": "g-1"}, custom_data={"tier": "gold"},
    ))
    store.add_person(make_person(
        "p-jane2", first_name="jane", last_name="smith", email="JANE@example.com",
        phone="+1 (555) 010-0000", bio="Met at PyCon",
        sources=["apple_contacts", "gmail"], source_ids={"gmail": "g-2", "apple_contacts": "ac-9"},
        custom_data={"tier": "silver", "birthday": "05-01"},
    ))
    store.add_person(make_person(
        "p-bob", first_name="Bob", last_name="Jones", email="bob@other.org",
    ))
    store.add_person(make_person(
        "p-jane-other", workspace_id=OTHER_WORKSPACE_ID,
        first_name="Jane", last_name="Smith", email="jane@example.com",
    ))

    store.add_tag_association("p-jane", WORKSPACE_ID, "t1")
    store.add_tag_association("p-jane", WORKSPACE_ID, "t2")
    store.add_tag_association("p-jane2", WORKSPACE_ID, "t2")
    store.add_tag_association("p-jane2", WORKSPACE_ID, "t3")

    store.add_social_profile("p-jane", WORKSPACE_ID, SocialProfile("linkedin", "https://linkedin.com/in/jane"))
    store.add_social_profile("p-jane2", WORKSPACE_ID, SocialProfile("linkedin", "https://linkedin.com/in/jane-s"))
    store.add_social_profile("p-jane2", WORKSPACE_ID, SocialProfile("twitter", "https://twitter.com/jane", "jane"))

    store.add_company_link("p-jane", WORKSPACE_ID, "c1", role="Engineer")
    store.add_company_link("p-jane2", WORKSPACE_ID, "c1", role="Manager")
    store.add_company_link("p-jane2", WORKSPACE_ID, "c2")

    store.add_interaction_participant("i-1", "p-jane2", WORKSPACE_ID)
    store.add_interaction_participant("i-2", "p-jane", WORKSPACE_ID)
    store.add_interaction_participant("i-2", "p-jane2", WORKSPACE_ID)

    return store


@pytest.fixture
def corrupt_person(populated_store):
    """Overwrite p-jane2's custom_data with text that is not JSON, bypassing the store."""
    import sqlite3

    conn = sqlite3.connect(str(populated_store.db_path))
    conn.execute("UPDATE people SET custom_data = '{not json' WHERE id = 'p-jane2'")
    conn.commit()
    conn.close()
    return "p-jane2"
