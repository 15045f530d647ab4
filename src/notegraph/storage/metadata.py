"""Serialization of note metadata values to key/value rows.

Values are stored as text with a ``value_type`` tag so they can be
filtered in SQL and read back with their original kind.
"""
import datetime
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from notegraph.models.schema import MetadataEntry, ValueType
from notegraph.utils import looks_like_date

logger = logging.getLogger(__name__)


def serialize_value(value: Any) -> Optional[Tuple[str, ValueType]]:
    """Serialize one metadata value.

    Returns None for values that are not stored at all.
    """
    if value is None:
        return None
    # bool is an int subclass, so it must be checked first
    if isinstance(value, bool):
        return ("true" if value else "false"), ValueType.BOOLEAN
    if isinstance(value, (int, float)):
        return str(value), ValueType.NUMBER
    if isinstance(value, (list, tuple)):
        return (
            json.dumps(list(value), separators=(",", ":"), default=str),
            ValueType.ARRAY,
        )
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat(), ValueType.DATE
    if isinstance(value, str) and looks_like_date(value):
        return value, ValueType.DATE
    return str(value), ValueType.STRING


def serialize_metadata(note_id: str, metadata: Dict[str, Any]) -> List[MetadataEntry]:
    """Turn a metadata mapping into rows, skipping None values."""
    entries = []
    for key, value in metadata.items():
        serialized = serialize_value(value)
        if serialized is None:
            continue
        text_value, value_type = serialized
        entries.append(
            MetadataEntry(
                note_id=note_id, key=key, value=text_value, value_type=value_type
            )
        )
    return entries


def deserialize_value(value: str, value_type: Union[str, ValueType]) -> Any:
    """Invert :func:`serialize_value`. Dates come back as text."""
    kind = ValueType(value_type)
    if kind is ValueType.BOOLEAN:
        return value == "true"
    if kind is ValueType.NUMBER:
        try:
            number = float(value)
        except ValueError:
            logger.warning(f"Non-numeric value stored as number: {value!r}")
            return value
        if number.is_integer() and "." not in value and "e" not in value.lower():
            return int(value)
        return number
    if kind is ValueType.ARRAY:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Malformed array metadata value: {value!r}")
            return []
        return parsed if isinstance(parsed, list) else []
    return value


def deserialize_metadata(
    rows: Iterable[Tuple[str, str, str]],
) -> Dict[str, Any]:
    """Build a metadata dict from ``(key, value, value_type)`` rows."""
    return {key: deserialize_value(value, value_type) for key, value, value_type in rows}
