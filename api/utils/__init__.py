# Contact Dedup API Utilities
"""
Shared utility functions for contact dedup services.
"""

from api.utils.datetime_utils import make_aware, parse_timestamp, utc_now_iso
from api.utils.db_paths import get_crm_db_path

__all__ = ["make_aware", "parse_timestamp", "utc_now_iso", "get_crm_db_path"]
