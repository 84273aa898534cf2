import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import requests

from src.config import (
    PINECONE_API_KEY,
    PINECONE_INDEX_HOST,
    PINECONE_NAMESPACE,
    VECTOR_INDEX_TIMEOUT_S,
)
from src.errors import RetrievalError
from .ingredients import decode_ingredients

logger = logging.getLogger(__name__)

PINECONE_API_VERSION = "2024-07"


@dataclass(frozen=True)
class Neighbor:
    """A reference dish returned by nearest-neighbor search."""

    id: Optional[str]
    score: Optional[float]
    file_name: Optional[str] = None
    split: Optional[str] = None
    total_calories: Optional[float] = None
    total_mass: Optional[float] = None
    total_fat: Optional[float] = None
    total_carb: Optional[float] = None
    total_protein: Optional[float] = None
    ingredients: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ingredients"] = list(self.ingredients)
        return data


class VectorIndex(Protocol):
    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        include_metadata: bool = True,
        include_values: bool = False,
    ) -> Dict[str, Any]:
        ...


class PineconeIndex:
    """
    Minimal Pinecone data-plane client (REST `POST /query`).

    Blocking; the retriever runs it in a worker thread.
    """

    def __init__(
        self,
        host: str = PINECONE_INDEX_HOST,
        api_key: Optional[str] = PINECONE_API_KEY,
        namespace: str = PINECONE_NAMESPACE,
        timeout: float = VECTOR_INDEX_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        host = (host or "").strip().rstrip("/")
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self.base_url = host
        self.api_key = api_key
        self.namespace = namespace
        self.timeout = timeout or None
        self.session = session or requests.Session()

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        include_metadata: bool = True,
        include_values: bool = False,
    ) -> Dict[str, Any]:
        if not self.base_url or not self.api_key:
            raise RetrievalError("PINECONE_INDEX_HOST / PINECONE_API_KEY are not set")

        payload: Dict[str, Any] = {
            "vector": [float(x) for x in vector],
            "topK": int(top_k),
            "includeMetadata": include_metadata,
            "includeValues": include_values,
        }
        if self.namespace:
            payload["namespace"] = self.namespace

        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": PINECONE_API_VERSION,
        }
        try:
            r = self.session.post(
                f"{self.base_url}/query",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            r.raise_for_status()
            return r.json()
        except requests.RequestException as e:
            raise RetrievalError(f"Vector index query failed: {e}") from e
        except ValueError as e:
            raise RetrievalError(f"Vector index returned non-JSON body: {e}") from e


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def match_to_neighbor(match: Dict[str, Any]) -> Neighbor:
    """Map one raw index match record into a Neighbor."""
    meta = match.get("metadata") or {}
    if not isinstance(meta, dict):
        meta = {}

    return Neighbor(
        id=_as_str(match.get("id")),
        score=_as_float(match.get("score")),
        file_name=_as_str(meta.get("file_name")),
        split=_as_str(meta.get("split")),
        total_calories=_as_float(meta.get("total_calories")),
        total_mass=_as_float(meta.get("total_mass")),
        total_fat=_as_float(meta.get("total_fat")),
        total_carb=_as_float(meta.get("total_carb")),
        total_protein=_as_float(meta.get("total_protein")),
        ingredients=tuple(decode_ingredients(meta.get("ingredients"))),
    )


class NeighborRetriever:
    """Query the vector index and map matches into Neighbor objects."""

    def __init__(self, index: VectorIndex, timeout: float = VECTOR_INDEX_TIMEOUT_S):
        self.index = index
        self.timeout = timeout or None

    async def query_neighbors(self, query_vector: Sequence[float], top_k: int) -> List[Neighbor]:
        if top_k <= 0:
            logger.info("Non-positive top_k=%s, skipping vector index query", top_k)
            return []

        vector = [float(x) for x in query_vector]
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.index.query,
                    vector,
                    top_k,
                    include_metadata=True,
                    include_values=False,
                ),
                timeout=self.timeout,
            )
        except RetrievalError:
            raise
        except asyncio.TimeoutError as e:
            raise RetrievalError(f"Vector index query timed out after {self.timeout}s") from e
        except Exception as e:
            raise RetrievalError(f"Vector index query failed: {e}") from e

        if not isinstance(response, dict):
            raise RetrievalError(f"Malformed vector index response: {type(response).__name__}")

        matches = response.get("matches")
        if matches is None:
            return []
        if not isinstance(matches, list) or not all(isinstance(m, dict) for m in matches):
            raise RetrievalError("Malformed vector index response: 'matches' is not a list of records")

        neighbors = [match_to_neighbor(m) for m in matches]
        logger.info("Vector index returned %d neighbors (top_k=%s)", len(neighbors), top_k)
        return neighbors
