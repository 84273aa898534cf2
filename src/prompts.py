"""Prompts for the generative summarization step."""

import json
from typing import Any, Dict, List

SYSTEM_PROMPT = (
    "You are a nutritionist estimating a dish and its macros from reference dishes. "
    "Reply with one JSON object only."
)

NEIGHBORS_PROMPT = """
You are given nearest-neighbor dishes for an input food photo.
Using ONLY the context below, produce a best-effort JSON with keys:
  - "estimated_calories": number (kcal)
  - "estimated_fat": number (g)
  - "estimated_protein": number (g)
  - "estimated_carbs": number (g)
  - "dish_title": string
  - "description": string (1-2 sentences)
  - "key_ingredients": array of strings (3-8 items)

When estimating calories, prefer neighbors with similar ingredients and
macronutrients. If conflicting, average reasonable neighbors and round to a
sensible whole number.

Context (top {count} neighbors):
{neighbors_json}

Return ONLY the JSON object, no extra text.
"""

HYBRID_PROMPT = """
You are given a food photo (base64 excerpt below) and reference dishes
retrieved for it, already re-ranked by combined image and ingredient
similarity (higher "fused_score" = closer match).

Image (base64, truncated to {excerpt_chars} chars):
{image_excerpt}

Reference dishes (top {count}, best first):
{neighbors_json}

Identify the dish in the photo and estimate its nutrition. Weight the
estimate towards the highest-ranked references. Return JSON strictly in
this format:

{{
  "dish_title": "...",
  "description": "1-2 sentences",
  "key_ingredients": ["...", "..."],
  "total_calories": 0,
  "total_fat": 0,
  "total_carbs": 0,
  "total_protein": 0
}}

All values as numbers, not strings. No text outside JSON.
"""


def build_neighbors_prompt(neighbors: List[Dict[str, Any]]) -> str:
    return NEIGHBORS_PROMPT.format(
        count=len(neighbors),
        neighbors_json=json.dumps(neighbors, ensure_ascii=False, indent=2),
    ).strip()


def build_hybrid_prompt(image_b64: str, neighbors: List[Dict[str, Any]], excerpt_chars: int) -> str:
    excerpt = image_b64[: max(0, excerpt_chars)]
    return HYBRID_PROMPT.format(
        excerpt_chars=excerpt_chars,
        image_excerpt=excerpt,
        count=len(neighbors),
        neighbors_json=json.dumps(neighbors, ensure_ascii=False, indent=2),
    ).strip()
