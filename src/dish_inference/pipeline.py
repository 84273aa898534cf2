import asyncio
import base64
import binascii
import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from src.config import (
    DEFAULT_TOP_K,
    GENERATION_TIMEOUT_S,
    IMAGE_EXCERPT_CHARS,
    MAX_CONTEXT_NEIGHBORS,
)
from src.errors import InvalidInputError, SummarizationError
from src.prompts import build_hybrid_prompt, build_neighbors_prompt
from .reranker import RankedNeighbor
from .retriever import Neighbor

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)


class Mode(str, Enum):
    NEIGHBORS_ONLY = "neighbors_only"
    HYBRID = "hybrid"


@dataclass
class DishInferenceResult:
    mode: Mode
    neighbors: List[Union[Neighbor, RankedNeighbor]]
    summary: Optional[str]
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return bool(self.neighbors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "neighbors": [n.to_dict() for n in self.neighbors],
            "summary": self.summary,
        }


def normalize_image_b64(image_b64: Any) -> str:
    """Strip an optional data-URL prefix and whitespace from a base64 payload."""
    if not isinstance(image_b64, str) or not image_b64.strip():
        raise InvalidInputError("image_b64 is required")
    return "".join(_DATA_URL_PREFIX.sub("", image_b64.strip()).split())


def decode_image_b64(image_b64: Any) -> bytes:
    """
    Validate and decode the base64 image payload.

    Accepts plain base64 or a data URL; embedded whitespace is ignored.
    """
    payload = normalize_image_b64(image_b64)
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("image_b64 is not valid base64") from e

    if not data:
        raise InvalidInputError("image_b64 decodes to empty bytes")
    return data


def _check_weight(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInputError(f"{name} must be a number")
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise InvalidInputError(f"{name} must be a finite, non-negative number")
    return value


class DishInferencePipeline:
    """
    Image -> dish/nutrition estimate, via nearest reference dishes.

    Start
      ↓
    validate base64 input (fail fast, before any model work)
      ↓
    CLIP image embedding (mirror TTA in hybrid mode)
      ↓
    vector index top-k  ──(no matches)──> "no result"
      ↓
    hybrid mode only: re-rank by image + ingredient-text similarity
      ↓
    generative summary over the top MAX_CONTEXT_NEIGHBORS neighbors
      ↓
    Return

    Errors from embedding, retrieval and summarization propagate as-is;
    nothing is retried at this layer.
    """

    def __init__(
        self,
        provider,
        retriever,
        reranker,
        generator,
        default_top_k: int = DEFAULT_TOP_K,
        max_context_neighbors: int = MAX_CONTEXT_NEIGHBORS,
        image_excerpt_chars: int = IMAGE_EXCERPT_CHARS,
        generation_timeout: float = GENERATION_TIMEOUT_S,
    ):
        self.provider = provider
        self.retriever = retriever
        self.reranker = reranker
        self.generator = generator
        self.default_top_k = default_top_k
        self.max_context_neighbors = max_context_neighbors
        self.image_excerpt_chars = image_excerpt_chars
        self.generation_timeout = generation_timeout or None

    async def _summarize(self, prompt: str) -> Optional[str]:
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(self.generator.generate, prompt),
                timeout=self.generation_timeout,
            )
        except SummarizationError:
            raise
        except asyncio.TimeoutError as e:
            raise SummarizationError(
                f"Generative service timed out after {self.generation_timeout}s"
            ) from e
        except Exception as e:
            raise SummarizationError(f"Generative service call failed: {e}") from e
        return text or None

    async def run(
        self,
        image_b64: str,
        mode: Mode = Mode.NEIGHBORS_ONLY,
        top_k: Optional[int] = None,
        alpha: Optional[float] = None,
        beta: Optional[float] = None,
    ) -> DishInferenceResult:
        mode = Mode(mode)
        payload = normalize_image_b64(image_b64)
        image_bytes = decode_image_b64(payload)

        top_k = self.default_top_k if top_k is None else top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int):
            raise InvalidInputError("top_k must be an integer")

        if mode is Mode.HYBRID:
            alpha = _check_weight("alpha", self.reranker.alpha if alpha is None else alpha)
            beta = _check_weight("beta", self.reranker.beta if beta is None else beta)
            if not math.isclose(alpha + beta, 1.0, abs_tol=1e-6):
                logger.warning("[DISH] Fusion weights alpha=%s beta=%s do not sum to 1", alpha, beta)

        logger.info(
            "[DISH] Starting %s inference: b64_len=%s, image_bytes=%s, top_k=%s",
            mode.value,
            len(image_b64),
            len(image_bytes),
            top_k,
        )

        t0 = time.perf_counter()
        meta: Dict[str, Any] = {
            "pipeline": mode.value,
            "top_k": top_k,
            "embed_time": 0.0,
            "retrieve_time": 0.0,
            "rerank_time": 0.0,
            "summarize_time": 0.0,
        }

        if top_k <= 0:
            meta["neighbors_found"] = 0
            meta["total_time"] = time.perf_counter() - t0
            logger.info("[DISH] top_k=%s, nothing to retrieve", top_k)
            return DishInferenceResult(mode=mode, neighbors=[], summary=None, meta=meta)

        # 1) Embed
        t_start = time.perf_counter()
        query_vector = await self.provider.embed_image(
            image_bytes, test_time_augment=mode is Mode.HYBRID
        )
        meta["embed_time"] = time.perf_counter() - t_start
        logger.info("[DISH] Embedded query image (dim=%s) in %.3fs", len(query_vector), meta["embed_time"])

        # 2) Retrieve
        t_start = time.perf_counter()
        neighbors = await self.retriever.query_neighbors(query_vector, top_k)
        meta["retrieve_time"] = time.perf_counter() - t_start
        meta["neighbors_found"] = len(neighbors)
        logger.info("[DISH] Retrieved %d neighbors in %.3fs", len(neighbors), meta["retrieve_time"])

        if not neighbors:
            meta["total_time"] = time.perf_counter() - t0
            logger.info("[DISH] No neighbors found, skipping summarization")
            return DishInferenceResult(mode=mode, neighbors=[], summary=None, meta=meta)

        # 3) Re-rank (hybrid only) + prompt
        if mode is Mode.HYBRID:
            t_start = time.perf_counter()
            ranked = await self.reranker.rerank(query_vector, neighbors, alpha=alpha, beta=beta)
            meta["rerank_time"] = time.perf_counter() - t_start
            meta["alpha"] = alpha
            meta["beta"] = beta
            logger.info("[DISH] Re-ranked neighbors in %.3fs", meta["rerank_time"])

            result_neighbors: List[Union[Neighbor, RankedNeighbor]] = list(ranked)
            context = [r.to_dict() for r in ranked[: self.max_context_neighbors]]
            prompt = build_hybrid_prompt(payload, context, self.image_excerpt_chars)
        else:
            result_neighbors = list(neighbors)
            context = [n.to_dict() for n in neighbors[: self.max_context_neighbors]]
            prompt = build_neighbors_prompt(context)

        meta["context_neighbors"] = len(context)

        # 4) Summarize
        t_start = time.perf_counter()
        summary = await self._summarize(prompt)
        meta["summarize_time"] = time.perf_counter() - t_start
        meta["total_time"] = time.perf_counter() - t0

        logger.info(
            "[DISH] Summary received in %.3fs (len=%s); total pipeline time %.3fs",
            meta["summarize_time"],
            len(summary or ""),
            meta["total_time"],
        )
        return DishInferenceResult(mode=mode, neighbors=result_neighbors, summary=summary, meta=meta)

    async def infer_from_neighbors(self, image_b64: str, top_k: Optional[int] = None) -> Dict[str, Any]:
        """Neighbors-only mode: {"neighbors": [...], "summary": str | None}."""
        result = await self.run(image_b64, Mode.NEIGHBORS_ONLY, top_k=top_k)
        return {
            "neighbors": [n.to_dict() for n in result.neighbors],
            "summary": result.summary,
        }

    async def infer_hybrid(
        self,
        image_b64: str,
        top_k: Optional[int] = None,
        alpha: Optional[float] = None,
        beta: Optional[float] = None,
    ) -> Optional[str]:
        """Hybrid mode: raw summary text, or None when no neighbor matched."""
        result = await self.run(image_b64, Mode.HYBRID, top_k=top_k, alpha=alpha, beta=beta)
        return result.summary
