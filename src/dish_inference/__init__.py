"""
Dish inference package:
- similarity: dot product, clamping and weighted score fusion
- embeddings: CLIP image/text encoder with lazy, shared model loading
- ingredients: decoder for the polymorphic `ingredients` metadata field
- retriever: Pinecone nearest-neighbor search mapped into Neighbor objects
- reranker: hybrid image + ingredient-text re-ranking
- generator: OpenAI-backed summarization of neighbor context
- pipeline: orchestrator for neighbors-only and hybrid modes
"""
