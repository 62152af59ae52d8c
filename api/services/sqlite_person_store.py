"""
SQLite-backed PersonStore.

Holds people and the dependent records that reference them (tag
associations, social profiles, company affiliations, interaction
participation, notes). Every query is filtered by workspace_id, so an
id from another workspace behaves exactly like a missing one.

Transactions use BEGIN IMMEDIATE: the write lock is taken before the
merge reads either person, so two merges touching the same rows are
serialized and the second one sees the first one's deletion.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence

from api.services.person_store import (
    CompanyLink,
    DependentTable,
    Person,
    PersonWithAssociations,
    SocialProfile,
)
from api.services.resilience import InvalidRecordError, PersonNotFoundError, StoreUnavailableError
from api.utils.datetime_utils import utc_now_iso
from api.utils.db_paths import get_crm_db_path
from config.settings import settings

logger = logging.getLogger(__name__)

# Columns update_person may write
UPDATABLE_COLUMNS = {
    "email", "phone", "first_name", "last_name", "display_name", "bio",
    "location", "avatar_url", "sources", "source_ids", "custom_data", "updated_at",
}
JSON_COLUMNS = {"sources", "source_ids", "custom_data"}


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Convert transient SQLite failures (locked, I/O, missing file) to StoreUnavailableError."""
    try:
        yield
    except sqlite3.OperationalError as e:
        raise StoreUnavailableError(operation, str(e)) from e


def _person_from_row(row: sqlite3.Row) -> Person:
    """Validate a people row, reporting a bad one as InvalidRecordError."""
    try:
        return Person.from_row(row)
    except ValueError as e:
        logger.error(f"Invalid person record {row['id']}: {e}")
        raise InvalidRecordError(str(row["id"]), str(e)) from e


class SQLitePersonStore:
    """SQLite implementation of the PersonStore interface."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        timeout: Optional[float] = None,
        _connection: Optional[sqlite3.Connection] = None,
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database (default from settings)
            timeout: Seconds to wait for a locked database (default from settings)
        """
        self.db_path = Path(db_path or get_crm_db_path())
        self.timeout = timeout if timeout is not None else settings.db_timeout
        # Set only on views handed out by transaction()
        self._conn = _connection
        if _connection is None:
            self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are begun explicitly."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with _store_errors("connect"):
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        conn = self._get_conn()
        try:
            with _store_errors("ensure schema"):
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS people (
                        id TEXT PRIMARY KEY,
                        workspace_id TEXT NOT NULL,
                        email TEXT,
                        phone TEXT,
                        first_name TEXT,
                        last_name TEXT,
                        display_name TEXT,
                        bio TEXT,
                        location TEXT,
                        avatar_url TEXT,
                        sources TEXT DEFAULT '[]',
                        source_ids TEXT DEFAULT '{}',
                        custom_data TEXT DEFAULT '{}',
                        created_at TIMESTAMP,
                        updated_at TIMESTAMP
                    );
                    CREATE INDEX IF NOT EXISTS idx_people_workspace ON people(workspace_id);

                    CREATE TABLE IF NOT EXISTS person_tags (
                        person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
                        tag_id TEXT NOT NULL,
                        workspace_id TEXT NOT NULL,
                        PRIMARY KEY (person_id, tag_id)
                    );

                    CREATE TABLE IF NOT EXISTS social_profiles (
                        id TEXT PRIMARY KEY,
                        person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
                        workspace_id TEXT NOT NULL,
                        platform TEXT NOT NULL,
                        profile_url TEXT,
                        username TEXT,
                        created_at TIMESTAMP
                    );
                    CREATE INDEX IF NOT EXISTS idx_social_profiles_person ON social_profiles(person_id);

                    CREATE TABLE IF NOT EXISTS person_companies (
                        id TEXT PRIMARY KEY,
                        person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
                        company_id TEXT NOT NULL,
                        workspace_id TEXT NOT NULL,
                        role TEXT,
                        UNIQUE(person_id, company_id, role)
                    );
                    CREATE INDEX IF NOT EXISTS idx_person_companies_person ON person_companies(person_id);

                    CREATE TABLE IF NOT EXISTS interaction_people (
                        id TEXT PRIMARY KEY,
                        interaction_id TEXT NOT NULL,
                        person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
                        workspace_id TEXT NOT NULL,
                        role TEXT DEFAULT 'participant',
                        UNIQUE(interaction_id, person_id, role)
                    );
                    CREATE INDEX IF NOT EXISTS idx_interaction_people_person ON interaction_people(person_id);

                    CREATE TABLE IF NOT EXISTS notes (
                        id TEXT PRIMARY KEY,
                        workspace_id TEXT NOT NULL,
                        person_id TEXT REFERENCES people(id) ON DELETE CASCADE,
                        content TEXT NOT NULL,
                        created_at TIMESTAMP,
                        updated_at TIMESTAMP
                    );
                    CREATE INDEX IF NOT EXISTS idx_notes_person ON notes(person_id);
                """)
        finally:
            conn.close()

    @contextmanager
    def _connect(self, operation: str, write: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection for one store operation.

        Inside a transaction the transaction's connection is reused. Outside
        one, writes get their own short transaction so multi-statement
        operations still apply atomically.
        """
        if self._conn is not None:
            with _store_errors(operation):
                yield self._conn
            return

        if write:
            with self.transaction() as view:
                with _store_errors(operation):
                    yield view._conn
            return

        conn = self._get_conn()
        try:
            with _store_errors(operation):
                yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator["SQLitePersonStore"]:
        """
        Run a block of store operations atomically.

        Yields a store view bound to one connection holding the write lock.
        Commits when the block exits cleanly; rolls back on any exception,
        including cancellation.
        """
        if self._conn is not None:
            # Already inside a transaction
            yield self
            return

        conn = self._get_conn()
        try:
            with _store_errors("begin transaction"):
                conn.execute("BEGIN IMMEDIATE")
        except StoreUnavailableError:
            conn.close()
            raise

        view = SQLitePersonStore(self.db_path, self.timeout, _connection=conn)
        try:
            yield view
        except BaseException:
            conn.rollback()
            logger.warning(f"Transaction on {self.db_path.name} rolled back")
            raise
        else:
            with _store_errors("commit"):
                conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # PersonStore interface
    # ------------------------------------------------------------------

    def list_persons(self, workspace_id: str) -> list[Person]:
        """Snapshot of every person in the workspace, oldest first."""
        with self._connect("list persons") as conn:
            rows = conn.execute(
                "SELECT * FROM people WHERE workspace_id = ? ORDER BY created_at, rowid",
                (workspace_id,)
            ).fetchall()
        return [_person_from_row(row) for row in rows]

    def get_person(self, person_id: str, workspace_id: str) -> Optional[Person]:
        """Get a single person, or None if it does not exist in the workspace."""
        with self._connect("get person") as conn:
            row = conn.execute(
                "SELECT * FROM people WHERE id = ? AND workspace_id = ?",
                (person_id, workspace_id)
            ).fetchone()
        return _person_from_row(row) if row else None

    def get_person_with_associations(
        self, person_id: str, workspace_id: str
    ) -> Optional[PersonWithAssociations]:
        """Get a person with tag ids, social profiles and company links."""
        with self._connect("get person with associations") as conn:
            row = conn.execute(
                "SELECT * FROM people WHERE id = ? AND workspace_id = ?",
                (person_id, workspace_id)
            ).fetchone()
            if row is None:
                return None

            tag_rows = conn.execute(
                "SELECT tag_id FROM person_tags WHERE person_id = ? AND workspace_id = ? ORDER BY rowid",
                (person_id, workspace_id)
            ).fetchall()
            profile_rows = conn.execute(
                """
                SELECT platform, profile_url, username FROM social_profiles
                WHERE person_id = ? AND workspace_id = ?
                ORDER BY created_at, rowid
                """,
                (person_id, workspace_id)
            ).fetchall()
            company_rows = conn.execute(
                "SELECT company_id, role FROM person_companies WHERE person_id = ? AND workspace_id = ? ORDER BY rowid",
                (person_id, workspace_id)
            ).fetchall()

        return PersonWithAssociations(
            person=_person_from_row(row),
            tag_ids=[r["tag_id"] for r in tag_rows],
            social_profiles=[
                SocialProfile(platform=r["platform"], profile_url=r["profile_url"], username=r["username"])
                for r in profile_rows
            ],
            companies=[CompanyLink(company_id=r["company_id"], role=r["role"]) for r in company_rows],
        )

    def update_person(self, person_id: str, workspace_id: str, fields: Mapping[str, Any]) -> None:
        """
        Partially update a person.

        Raises:
            ValueError: If a field is not an updatable column
            PersonNotFoundError: If the person does not exist in the workspace
        """
        if not fields:
            return
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update unknown person fields: {sorted(unknown)}")

        columns = sorted(fields)
        values = [
            json.dumps(fields[c]) if c in JSON_COLUMNS else fields[c]
            for c in columns
        ]
        assignments = ", ".join(f"{c} = ?" for c in columns)

        with self._connect("update person", write=True) as conn:
            cursor = conn.execute(
                f"UPDATE people SET {assignments} WHERE id = ? AND workspace_id = ?",
                (*values, person_id, workspace_id)
            )
            if cursor.rowcount == 0:
                raise PersonNotFoundError([person_id], workspace_id)

    def relink_dependents(
        self,
        from_id: str,
        to_id: str,
        workspace_id: str,
        tables: Sequence[DependentTable],
    ) -> dict[str, int]:
        """
        Rewrite foreign keys from one person to another.

        Interaction participation and company links that the target already
        holds are dropped instead of duplicated.

        Returns:
            Number of rows moved, keyed by table name
        """
        moved: dict[str, int] = {}
        with self._connect("relink dependents", write=True) as conn:
            for table in tables:
                table = DependentTable(table)
                if table is DependentTable.NOTES:
                    cursor = conn.execute(
                        "UPDATE notes SET person_id = ?, updated_at = ? WHERE person_id = ? AND workspace_id = ?",
                        (to_id, utc_now_iso(), from_id, workspace_id)
                    )
                    moved[table.value] = cursor.rowcount

                elif table is DependentTable.INTERACTIONS:
                    cursor = conn.execute(
                        """
                        UPDATE interaction_people SET person_id = ?
                        WHERE person_id = ? AND workspace_id = ?
                          AND NOT EXISTS (
                              SELECT 1 FROM interaction_people AS kept
                              WHERE kept.person_id = ?
                                AND kept.interaction_id = interaction_people.interaction_id
                                AND kept.role IS interaction_people.role
                          )
                        """,
                        (to_id, from_id, workspace_id, to_id)
                    )
                    moved[table.value] = cursor.rowcount
                    conn.execute(
                        "DELETE FROM interaction_people WHERE person_id = ? AND workspace_id = ?",
                        (from_id, workspace_id)
                    )

                elif table is DependentTable.COMPANIES:
                    cursor = conn.execute(
                        """
                        UPDATE person_companies SET person_id = ?
                        WHERE person_id = ? AND workspace_id = ?
                          AND company_id NOT IN (
                              SELECT company_id FROM person_companies WHERE person_id = ?
                          )
                        """,
                        (to_id, from_id, workspace_id, to_id)
                    )
                    moved[table.value] = cursor.rowcount
                    conn.execute(
                        "DELETE FROM person_companies WHERE person_id = ? AND workspace_id = ?",
                        (from_id, workspace_id)
                    )
        return moved

    def upsert_tag_associations(self, person_id: str, workspace_id: str, tag_ids: Sequence[str]) -> int:
        """Add tag associations the person does not already hold. Returns number added."""
        added = 0
        with self._connect("upsert tag associations", write=True) as conn:
            for tag_id in tag_ids:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO person_tags (person_id, tag_id, workspace_id) VALUES (?, ?, ?)",
                    (person_id, tag_id, workspace_id)
                )
                added += cursor.rowcount
        return added

    def upsert_social_profiles(
        self, person_id: str, workspace_id: str, profiles: Sequence[SocialProfile]
    ) -> int:
        """Add profiles for platforms the person has no profile on yet. Returns number added."""
        added = 0
        with self._connect("upsert social profiles", write=True) as conn:
            for profile in profiles:
                cursor = conn.execute(
                    """
                    INSERT INTO social_profiles (id, person_id, workspace_id, platform, profile_url, username, created_at)
                    SELECT ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM social_profiles WHERE person_id = ? AND platform = ?
                    )
                    """,
                    (
                        str(uuid.uuid4()), person_id, workspace_id, profile.platform,
                        profile.profile_url, profile.username, utc_now_iso(),
                        person_id, profile.platform,
                    )
                )
                added += cursor.rowcount
        return added

    def delete_person(self, person_id: str, workspace_id: str) -> bool:
        """Hard-delete a person; remaining dependent rows cascade. Returns True if a row was deleted."""
        with self._connect("delete person", write=True) as conn:
            cursor = conn.execute(
                "DELETE FROM people WHERE id = ? AND workspace_id = ?",
                (person_id, workspace_id)
            )
            return cursor.rowcount > 0

    def ping(self) -> bool:
        """Check that the database can be opened and queried."""
        with self._connect("ping") as conn:
            conn.execute("SELECT 1 FROM people LIMIT 1").fetchall()
        return True

    # ------------------------------------------------------------------
    # Ingestion helpers (used by import flows, scripts and tests)
    # ------------------------------------------------------------------

    def add_person(self, person: Person) -> Person:
        """Insert a person record."""
        now = utc_now_iso()
        created_at = person.created_at.isoformat() if person.created_at else now
        updated_at = person.updated_at.isoformat() if person.updated_at else now
        with self._connect("add person", write=True) as conn:
            conn.execute(
                """
                INSERT INTO people (
                    id, workspace_id, email, phone, first_name, last_name, display_name,
                    bio, location, avatar_url, sources, source_ids, custom_data,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    person.id, person.workspace_id, person.email, person.phone,
                    person.first_name, person.last_name, person.display_name,
                    person.bio, person.location, person.avatar_url,
                    json.dumps(person.sources), json.dumps(person.source_ids),
                    json.dumps(person.custom_data), created_at, updated_at,
                )
            )
        return person

    def add_tag_association(self, person_id: str, workspace_id: str, tag_id: str) -> None:
        """Associate a tag with a person."""
        self.upsert_tag_associations(person_id, workspace_id, [tag_id])

    def add_social_profile(self, person_id: str, workspace_id: str, profile: SocialProfile) -> None:
        """Attach a social profile to a person."""
        with self._connect("add social profile", write=True) as conn:
            conn.execute(
                """
                INSERT INTO social_profiles (id, person_id, workspace_id, platform, profile_url, username, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), person_id, workspace_id, profile.platform,
                 profile.profile_url, profile.username, utc_now_iso())
            )

    def add_company_link(
        self, person_id: str, workspace_id: str, company_id: str, role: Optional[str] = None
    ) -> None:
        """Affiliate a person with a company."""
        with self._connect("add company link", write=True) as conn:
            conn.execute(
                "INSERT INTO person_companies (id, person_id, company_id, workspace_id, role) VALUES (?, ?, ?, ?, ?)",
                (str(uuid.uuid4()), person_id, company_id, workspace_id, role)
            )

    def add_note(self, person_id: str, workspace_id: str, content: str) -> str:
        """Attach a note to a person. Returns the note id."""
        note_id = str(uuid.uuid4())
        now = utc_now_iso()
        with self._connect("add note", write=True) as conn:
            conn.execute(
                "INSERT INTO notes (id, workspace_id, person_id, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (note_id, workspace_id, person_id, content, now, now)
            )
        return note_id

    def add_interaction_participant(
        self, interaction_id: str, person_id: str, workspace_id: str, role: str = "participant"
    ) -> None:
        """Record a person's participation in an interaction."""
        with self._connect("add interaction participant", write=True) as conn:
            conn.execute(
                "INSERT INTO interaction_people (id, interaction_id, person_id, workspace_id, role) VALUES (?, ?, ?, ?, ?)",
                (str(uuid.uuid4()), interaction_id, person_id, workspace_id, role)
            )

    def get_note_person_id(self, note_id: str, workspace_id: str) -> Optional[str]:
        """Get the person a note is attached to."""
        with self._connect("get note") as conn:
            row = conn.execute(
                "SELECT person_id FROM notes WHERE id = ? AND workspace_id = ?",
                (note_id, workspace_id)
            ).fetchone()
        return row["person_id"] if row else None

    def interaction_person_ids(self, interaction_id: str, workspace_id: str) -> list[str]:
        """Person ids participating in an interaction."""
        with self._connect("get interaction participants") as conn:
            rows = conn.execute(
                "SELECT person_id FROM interaction_people WHERE interaction_id = ? AND workspace_id = ? ORDER BY rowid",
                (interaction_id, workspace_id)
            ).fetchall()
        return [r["person_id"] for r in rows]

    def count_persons(self, workspace_id: str) -> int:
        """Number of people in the workspace."""
        with self._connect("count persons") as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM people WHERE workspace_id = ?",
                (workspace_id,)
            ).fetchone()
        return row[0]


# Singleton instance
_person_store: Optional[SQLitePersonStore] = None


def get_person_store(db_path: Optional[str] = None) -> SQLitePersonStore:
    """
    Get or create the singleton SQLitePersonStore.

    Args:
        db_path: Path to SQLite database (default from settings)

    Returns:
        SQLitePersonStore instance
    """
    global _person_store
    if _person_store is None:
        _person_store = SQLitePersonStore(db_path)
    return _person_store


def reset_person_store() -> None:
    """Drop the singleton (tests switch databases between runs)."""
    global _person_store
    _person_store = None
