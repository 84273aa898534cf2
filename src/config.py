import os


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
CORS_ORIGINS = _parse_cors_origins(os.getenv("CORS_ORIGINS", "*"))
ALLOW_ALL_ORIGINS = CORS_ORIGINS == ["*"]

# -----------------------------------
# Generative model configuration
# -----------------------------------

# GPT_MODEL: model used to summarize neighbor dishes into a nutrition estimate
GPT_MODEL = os.getenv("GPT_MODEL", "gpt-4o-mini")
GPT_MAX_TOKENS = int(os.getenv("GPT_MAX_TOKENS", "800"))

# GENERATION_TIMEOUT_S: hard timeout around one summarization call (0 = disabled)
GENERATION_TIMEOUT_S = float(os.getenv("GENERATION_TIMEOUT_S", "60"))

# -----------------------------------
# Vector index (Pinecone) configuration
# -----------------------------------

PINECONE_API_KEY = os.getenv("PINECONE_API_KEY")

# PINECONE_INDEX_HOST: data-plane host of the index, e.g. "nibble-index-768-abc123.svc.pinecone.io"
PINECONE_INDEX_HOST = os.getenv("PINECONE_INDEX_HOST", "")
PINECONE_NAMESPACE = os.getenv("PINECONE_NAMESPACE", "")

# VECTOR_INDEX_TIMEOUT_S: hard timeout around one nearest-neighbor query (0 = disabled)
VECTOR_INDEX_TIMEOUT_S = float(os.getenv("VECTOR_INDEX_TIMEOUT_S", "10"))

# -----------------------------------
# Embedding model configuration
# -----------------------------------

# CLIP_MODEL_NAME: must match the model the index was built with (768-dim for ViT-L/14@336px)
CLIP_MODEL_NAME = os.getenv("CLIP_MODEL_NAME", "openai/clip-vit-large-patch14-336")
CLIP_DEVICE = os.getenv("CLIP_DEVICE", "cpu")

# PRELOAD_EMBEDDING_MODEL: load CLIP once on service startup instead of on first request
PRELOAD_EMBEDDING_MODEL = os.getenv("PRELOAD_EMBEDDING_MODEL", "false").lower() == "true"

# -----------------------------------
# Retrieval / re-ranking defaults
# -----------------------------------

DEFAULT_TOP_K = int(os.getenv("DEFAULT_TOP_K", "10"))

# FUSION_ALPHA / FUSION_BETA: weights of image vs ingredient-text similarity in hybrid mode
FUSION_ALPHA = float(os.getenv("FUSION_ALPHA", "0.7"))
FUSION_BETA = float(os.getenv("FUSION_BETA", "0.3"))

# MAX_CONTEXT_NEIGHBORS: neighbors forwarded to the generative model (bounds prompt size)
MAX_CONTEXT_NEIGHBORS = int(os.getenv("MAX_CONTEXT_NEIGHBORS", "8"))

# IMAGE_EXCERPT_CHARS: how much of the base64 image is quoted in the hybrid prompt
IMAGE_EXCERPT_CHARS = int(os.getenv("IMAGE_EXCERPT_CHARS", "1000"))
