# ~/repositories/cx-code/src/cx_code/utils.py
import base64
import json
import os
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict
from uuid import UUID

# --- Centralized Path Constant ---
CX_HOME = Path(os.getenv("CX_HOME", Path.home() / ".cx"))


def safe_serialize(data: Any) -> Any:
    """
    Recursively traverses a data structure and converts common, non-standard
    JSON types into a JSON-serializable format.
    """
    if isinstance(data, dict):
        return {str(key): safe_serialize(value) for key, value in data.items()}

    if isinstance(data, (list, tuple, set, frozenset)):
        return [safe_serialize(item) for item in data]

    # Pydantic models (including the Record model) serialize by alias.
    if hasattr(data, "model_dump") and callable(data.model_dump):
        return safe_serialize(data.model_dump(by_alias=True, exclude_none=True))

    # Handle datetime objects first, as they are a subclass of date.
    if isinstance(data, datetime):
        if data.tzinfo is None:
            # If the datetime is naive, assume it's UTC.
            data = data.replace(tzinfo=timezone.utc)
        return data.isoformat().replace("+00:00", "Z")

    if isinstance(data, (date, time)):
        return data.isoformat()

    if isinstance(data, timedelta):
        return data.total_seconds()

    if isinstance(data, UUID):
        return str(data)

    if isinstance(data, Decimal):
        return float(data)

    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(bytes(data)).decode("ascii")

    if isinstance(data, Path):
        return str(data)

    return data


def standardize_output(output: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalizes the `json` payload of a record so that every nested value is
    plain, JSON-safe data. The mapping is rebuilt, never mutated in place.
    Values with no JSON form fall back to their string representation.
    """
    return json.loads(json.dumps(safe_serialize(output), default=str))


def get_nested_value(data: Dict, key_path: str, default: Any = None) -> Any:
    """
    Safely retrieves a value from a nested dictionary using dot notation.
    e.g., get_nested_value(data, "track.album.name")
    """
    if not isinstance(data, dict) or not isinstance(key_path, str):
        return default

    keys = key_path.split(".")
    value = data

    for key in keys:
        if isinstance(value, dict):
            value = value.get(key)
            if value is None:
                return default  # Key not found at this level
        else:
            return default  # Cannot traverse further into a non-dict

    return value if value is not None else default
