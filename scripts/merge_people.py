#!/usr/bin/env python3
"""
Merge duplicate person records.

Lists the duplicate candidates of a workspace, or merges one person
(absorb) into another (keep). Interactions, notes, tags, social profiles
and company affiliations move to the kept record and the absorbed record
is deleted.

Without --execute the merge is a dry run that prints what would change.

Usage:
    python scripts/merge_people.py --workspace <id> --list-duplicates
    python scripts/merge_people.py --workspace <id> --keep <id> --absorb <id> [--execute]
"""
import sys
import json
import logging
import argparse
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.duplicate_scanner import DuplicateScanner
from api.services.merge_executor import MergeExecutor
from api.services.resilience import DedupError
from api.services.sqlite_person_store import SQLitePersonStore, get_person_store
from config.settings import settings

logging.basicConfig(level=settings.log_level.upper(), format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def _open_store(db_path: Optional[str] = None) -> SQLitePersonStore:
    """Open the given database, or the configured one."""
    return SQLitePersonStore(db_path) if db_path else get_person_store()


def list_duplicates(workspace_id: str, db_path: Optional[str] = None) -> list:
    """Print one ranked candidate per duplicate pair."""
    scanner = DuplicateScanner(_open_store(db_path))
    candidates = scanner.find_duplicates(workspace_id)

    print(f"\nFound {len(candidates)} potential duplicate pairs:\n")
    for i, c in enumerate(candidates, 1):
        print(f"{i}. {c.reason} (confidence {c.confidence:.2f})")
        for p in (c.person_a, c.person_b):
            name = " ".join(part for part in (p.first_name, p.last_name) if part) or "(no name)"
            print(f"   - {name} (ID: {p.id}, email: {p.email or '-'}, phone: {p.phone or '-'})")
        print()
    return candidates


def merge_people(keep_id: str, absorb_id: str, workspace_id: str, dry_run: bool = True, db_path: Optional[str] = None) -> dict:
    """
    Merge absorb into keep.

    Args:
        keep_id: ID of the person to keep
        absorb_id: ID of the person to fold into keep and delete
        workspace_id: Workspace both people belong to
        dry_run: If True, only print the plan

    Returns:
        The merge plan (dry run) or the merge stats
    """
    executor = MergeExecutor(_open_store(db_path))

    if dry_run:
        plan = executor.preview(keep_id, absorb_id, workspace_id)
        logger.info(f"DRY RUN - merge {absorb_id} into {keep_id}")
        print(json.dumps(plan.to_dict(), indent=2, default=str))
        logger.info("Run with --execute to apply changes")
        return plan.to_dict()

    result = executor.merge(keep_id, absorb_id, workspace_id)
    logger.info(f"Merged {result.merged_id} into {result.keep_id}")
    print(json.dumps(result.stats, indent=2))
    return result.stats


def main(argv=None):
    parser = argparse.ArgumentParser(description='Merge duplicate person records')
    parser.add_argument('--workspace', required=True, help='Workspace ID')
    parser.add_argument('--keep', help='ID of the person to keep')
    parser.add_argument('--absorb', help='ID of the person to merge into keep')
    parser.add_argument('--execute', action='store_true', help='Actually apply changes')
    parser.add_argument('--list-duplicates', action='store_true', help='List potential duplicates')
    parser.add_argument('--db', help='Path to SQLite database (default from CRM_DB_PATH)')
    args = parser.parse_args(argv)

    try:
        if args.list_duplicates:
            list_duplicates(args.workspace, db_path=args.db)
            return 0

        if not args.keep or not args.absorb:
            parser.print_help()
            print("\nExamples:")
            print("  python scripts/merge_people.py --workspace ws1 --list-duplicates")
            print("  python scripts/merge_people.py --workspace ws1 --keep abc123 --absorb def456")
            print("  python scripts/merge_people.py --workspace ws1 --keep abc123 --absorb def456 --execute")
            return 2

        merge_people(args.keep, args.absorb, args.workspace, dry_run=not args.execute, db_path=args.db)
    except DedupError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
