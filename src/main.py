"""Main FastAPI application."""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from src.config import ALLOW_ALL_ORIGINS, CORS_ORIGINS, PRELOAD_EMBEDDING_MODEL
from src.dish_inference.embeddings import ClipEmbeddingProvider
from src.dish_inference.generator import OpenAIGenerator
from src.dish_inference.pipeline import DishInferencePipeline, Mode
from src.dish_inference.reranker import HybridReranker
from src.dish_inference.retriever import NeighborRetriever, PineconeIndex
from src.errors import (
    DishInferenceError,
    InvalidInputError,
    RetrievalError,
    SummarizationError,
)
from src.utils import try_extract_json

logging.basicConfig(
    level=logging.INFO,
    stream=sys.stdout,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

logger = logging.getLogger(__name__)


class DishRequest(BaseModel):
    image_b64: Optional[str] = None
    top_k: Optional[int] = None


class HybridDishRequest(DishRequest):
    alpha: Optional[float] = None
    beta: Optional[float] = None


def build_pipeline() -> DishInferencePipeline:
    """Wire the production collaborators; the CLIP provider is shared by both modes."""
    provider = ClipEmbeddingProvider()
    return DishInferencePipeline(
        provider=provider,
        retriever=NeighborRetriever(PineconeIndex()),
        reranker=HybridReranker(provider),
        generator=OpenAIGenerator(),
    )


def _status_for(error: Exception) -> int:
    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, (RetrievalError, SummarizationError)):
        return 502
    return 500


def create_app(pipeline: Optional[DishInferencePipeline] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline or build_pipeline()
        if PRELOAD_EMBEDDING_MODEL:
            logger.info("Preloading embedding model on startup")
            await app.state.pipeline.provider.load()
        yield

    app = FastAPI(lifespan=lifespan)

    # -----------------------------------
    # CORS
    # -----------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if ALLOW_ALL_ORIGINS else CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    async def _infer(request: Request, body: DishRequest, mode: Mode, **weights):
        if not body.image_b64:
            raise HTTPException(400, "image_b64 is required in request body")

        total_start = time.time()
        logger.info("[PIPELINE] Starting /dish/%s request", mode.value)
        try:
            result = await request.app.state.pipeline.run(
                body.image_b64, mode, top_k=body.top_k, **weights
            )
        except DishInferenceError as e:
            logger.exception("Error in /dish/%s", mode.value)
            raise HTTPException(_status_for(e), str(e))
        except Exception as e:
            logger.exception("Unexpected error in /dish/%s", mode.value)
            raise HTTPException(500, f"Inference error: {str(e)}")

        meta = result.meta
        processing_times = {
            "embed_ms": round(meta.get("embed_time", 0.0) * 1000, 2),
            "retrieve_ms": round(meta.get("retrieve_time", 0.0) * 1000, 2),
            "rerank_ms": round(meta.get("rerank_time", 0.0) * 1000, 2),
            "summarize_ms": round(meta.get("summarize_time", 0.0) * 1000, 2),
            "total_ms": round((time.time() - total_start) * 1000, 2),
        }
        logger.info("[PIPELINE] /dish/%s timings_ms=%s", mode.value, processing_times)

        response = result.to_dict()
        response["summary_json"] = try_extract_json(result.summary)
        response["processing_times"] = processing_times
        return response

    @app.post("/dish/neighbors")
    async def dish_from_neighbors(body: DishRequest, request: Request):
        """Nearest reference dishes + summary built from their metadata only."""
        return await _infer(request, body, Mode.NEIGHBORS_ONLY)

    @app.post("/dish/hybrid")
    async def dish_hybrid(body: HybridDishRequest, request: Request):
        """Image + re-ranked reference dishes summarized together."""
        return await _infer(request, body, Mode.HYBRID, alpha=body.alpha, beta=body.beta)

    return app


app = create_app()
