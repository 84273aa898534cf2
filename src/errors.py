"""Exceptions raised by the dish inference pipeline."""


class DishInferenceError(Exception):
    """Base class for all dish inference failures."""


class InvalidInputError(DishInferenceError, ValueError):
    """Empty or non-base64 image input, or invalid request parameters."""


class InvalidImageError(InvalidInputError):
    """Bytes decoded from base64 are not a readable image."""


class ModelLoadError(DishInferenceError):
    """CLIP model/processor failed to initialize."""


class RetrievalError(DishInferenceError):
    """Vector index unreachable, timed out or returned a malformed response."""


class SummarizationError(DishInferenceError):
    """Generative text service call failed."""
