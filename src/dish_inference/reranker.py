import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from src.config import FUSION_ALPHA, FUSION_BETA
from .ingredients import ingredients_to_text
from .retriever import Neighbor
from .similarity import dot, fuse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedNeighbor:
    neighbor: Neighbor
    image_similarity: float
    text_similarity: float
    fused_score: float

    @property
    def id(self) -> Optional[str]:
        return self.neighbor.id

    def to_dict(self) -> Dict[str, Any]:
        data = self.neighbor.to_dict()
        data["image_similarity"] = self.image_similarity
        data["text_similarity"] = self.text_similarity
        data["fused_score"] = self.fused_score
        return data


class HybridReranker:
    """
    Re-rank retrieved neighbors by fused image + ingredient-text similarity:

        fused = alpha * clamp(image_sim) + beta * clamp(dot(query, text_emb))

    Ingredient texts of all neighbors are embedded in one batch. Output is
    sorted by descending fused score; equal scores keep retrieval order.
    """

    def __init__(self, provider, alpha: float = FUSION_ALPHA, beta: float = FUSION_BETA):
        self.provider = provider
        self.alpha = alpha
        self.beta = beta

    async def rerank(
        self,
        query_vector: Sequence[float],
        neighbors: Sequence[Neighbor],
        alpha: Optional[float] = None,
        beta: Optional[float] = None,
    ) -> List[RankedNeighbor]:
        alpha = self.alpha if alpha is None else alpha
        beta = self.beta if beta is None else beta

        if not neighbors:
            return []

        texts = [ingredients_to_text(n.ingredients) for n in neighbors]
        text_embeddings = await self.provider.embed_texts(texts)
        if len(text_embeddings) != len(neighbors):
            raise ValueError(
                f"Expected {len(neighbors)} text embeddings, got {len(text_embeddings)}"
            )

        scored = []
        for n, emb in zip(neighbors, text_embeddings):
            image_sim = n.score if n.score is not None else 0.0
            text_sim = dot(query_vector, emb)
            scored.append(
                RankedNeighbor(
                    neighbor=n,
                    image_similarity=float(image_sim),
                    text_similarity=float(text_sim),
                    fused_score=fuse(image_sim, text_sim, alpha, beta),
                )
            )

        order = sorted(range(len(scored)), key=lambda i: (-scored[i].fused_score, i))
        ranked = [scored[i] for i in order]

        logger.info(
            "Re-ranked %d neighbors (alpha=%s, beta=%s): %s",
            len(ranked),
            alpha,
            beta,
            [(r.id, round(r.fused_score, 4)) for r in ranked],
        )
        return ranked
