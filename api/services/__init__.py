"""
Contact Dedup Services Package.

This package contains duplicate detection, merge and data access services.
Use this module to import commonly-used services.

Example:
    from api.services import (
        DuplicateScanner,
        MergeExecutor,
        get_person_store,
    )
"""

from api.services.duplicate_scanner import DuplicateCandidate, DuplicateScanner
from api.services.merge_executor import MergeExecutor, MergePlan, MergeResult
from api.services.person_store import Person, PersonStore, PersonWithAssociations
from api.services.sqlite_person_store import SQLitePersonStore, get_person_store

__all__ = [
    "DuplicateCandidate",
    "DuplicateScanner",
    "MergeExecutor",
    "MergePlan",
    "MergeResult",
    "Person",
    "PersonStore",
    "PersonWithAssociations",
    "SQLitePersonStore",
    "get_person_store",
]
