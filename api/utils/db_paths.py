"""
Database path utilities for contact dedup services.
"""
from pathlib import Path

from config.settings import settings


def get_crm_db_path() -> str:
    """
    Get the path to the CRM database.

    Creates the parent directory if it doesn't exist.

    Returns:
        Path to the SQLite database file from settings
    """
    db_path = Path(settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)
