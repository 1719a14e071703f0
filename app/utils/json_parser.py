# app/utils/json_parser.py
"""
Helpers for reading JSON request bodies from device pushes.
"""

import json
from typing import Optional, Any


def safe_parse_json(raw_body: bytes) -> Optional[Any]:
    """Parse JSON bytes safely. Returns None on error or empty body."""
    if not raw_body or not raw_body.strip():
        return None
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None

