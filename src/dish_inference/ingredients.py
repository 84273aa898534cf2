"""
Decoder for the `ingredients` metadata field of indexed dishes.

The field arrives in several shapes depending on how the dish was upserted:

- a JSON-encoded string: '["rice", {"name": "egg"}]'
- a list of plain strings: ["rice", "egg"]
- a list of {"name": ...} objects: [{"name": "rice", "grams": 120}]
- a single string or {"name": ...} object

Precedence: JSON string -> parse -> list of objects/scalars -> single value
-> empty. Whatever the input, the result is a flat list of trimmed,
lowercased names. Bad data never raises; it decodes to [].
"""

import json
import logging
from typing import Any, List

logger = logging.getLogger(__name__)

_SCALARS = (str, int, float)


def _name_of(item: Any):
    """Ingredient name of one list item / single value, or None to skip it."""
    if isinstance(item, dict):
        name = item.get("name")
        return None if name is None or isinstance(name, (dict, list)) else str(name)
    if isinstance(item, bool):
        return None
    if isinstance(item, _SCALARS):
        return str(item)
    return None


def _extract_names(field: Any) -> List[str]:
    if field is None:
        return []

    value = field
    if isinstance(field, str):
        stripped = field.strip()
        if stripped[:1] in ("[", "{", '"'):
            try:
                value = json.loads(stripped)
            except ValueError:
                logger.debug("Unparseable ingredients JSON: %.80s", stripped)
                return []
        else:
            value = stripped

    if isinstance(value, (list, tuple)):
        names = [_name_of(item) for item in value]
        return [n for n in names if n is not None]

    name = _name_of(value)
    return [name] if name is not None else []


def decode_ingredients(field: Any) -> List[str]:
    """Normalize any supported ingredients shape into lowercase names."""
    try:
        names = _extract_names(field)
    except Exception as e:  # noqa: BLE001
        logger.debug("Failed to decode ingredients field %r: %s", field, e)
        return []

    out = []
    for name in names:
        cleaned = name.strip().lower()
        if cleaned:
            out.append(cleaned)
    return out


def ingredients_to_text(field: Any) -> str:
    """Comma-separated text form used for ingredient text embeddings."""
    return ", ".join(decode_ingredients(field))
