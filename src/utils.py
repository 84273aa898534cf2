"""Utility functions."""

import json
import re
from typing import Any, Dict, Optional


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of model text output.

    Tries the whole text, then the text with ``` fences unwrapped, then the
    span between the first { and the last }. Raises ValueError if nothing
    parses into an object.
    """
    if not text:
        raise ValueError("Empty model output")

    candidates = [text.strip()]

    # ```json {...} ``` -> {...}
    unfenced = re.sub(r"```(?:json)?", "", text).strip()
    candidates.append(unfenced)

    start = unfenced.find("{")
    end = unfenced.rfind("}")
    if start != -1 and end > start:
        candidates.append(unfenced[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ValueError("No JSON object detected")


def try_extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """extract_json that returns None instead of raising."""
    if not text:
        return None
    try:
        return extract_json(text)
    except ValueError:
        return None
