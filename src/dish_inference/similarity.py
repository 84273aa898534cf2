"""Pure numeric helpers: normalization, dot product, clamping and score fusion."""

from typing import Sequence

import numpy as np  # type: ignore


def l2_normalize(vec, eps: float = 1e-8) -> np.ndarray:
    """
    Scale a vector (or each row of a 2-D array) to unit Euclidean length.

    A zero vector is divided by `eps` instead of 0 and stays (near) zero.
    """
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim == 1:
        norm = float(np.linalg.norm(arr)) or eps
        return arr / norm

    norms = np.linalg.norm(arr, axis=-1, keepdims=True)
    norms[norms == 0] = eps
    return arr / norms


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product over the shared prefix of `a` and `b`."""
    n = min(len(a), len(b))
    return float(np.dot(np.asarray(a[:n], dtype=np.float64), np.asarray(b[:n], dtype=np.float64)))


def clamp(x: float, lo: float = -1.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, float(x)))


def fuse(image_sim: float, text_sim: float, alpha: float, beta: float) -> float:
    """
    Weighted linear fusion of image and text similarity.

    Both similarities are clamped to [-1, 1] first. Weights are used as given.
    """
    return alpha * clamp(image_sim) + beta * clamp(text_sim)
