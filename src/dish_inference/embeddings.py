import asyncio
import io
import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np  # type: ignore
import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from src.config import CLIP_DEVICE, CLIP_MODEL_NAME
from src.errors import InvalidImageError, ModelLoadError
from .similarity import l2_normalize

logger = logging.getLogger(__name__)

Loader = Callable[[], Tuple[Any, Any]]


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw bytes into an RGB PIL image or raise InvalidImageError."""
    if not image_bytes:
        raise InvalidImageError("Empty image bytes")
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise InvalidImageError(f"Cannot decode image: {e}") from e
    return img.convert("RGB")


def _frozen(vec: np.ndarray) -> np.ndarray:
    vec = np.ascontiguousarray(vec, dtype=np.float32)
    vec.setflags(write=False)
    return vec


def _features_to_array(output: Any, embeds_attr: str) -> np.ndarray:
    # Older transformers return a tensor, newer ones may wrap it in a model output.
    if not isinstance(output, torch.Tensor):
        tensor = getattr(output, embeds_attr, None)
        if tensor is None:
            tensor = getattr(output, "pooler_output")
        output = tensor
    return output.detach().cpu().numpy().astype(np.float32)


class ClipEmbeddingProvider:
    """
    CLIP image/text encoder projecting both modalities into one shared space.

    One instance is created at startup and shared by all requests. The
    model/processor pair is loaded lazily on first use; concurrent first
    callers await the same loading task, so the weights are read once.

    All returned vectors are float32, read-only and L2-normalized.
    """

    def __init__(
        self,
        model_name: str = CLIP_MODEL_NAME,
        device: str = CLIP_DEVICE,
        loader: Optional[Loader] = None,
    ):
        self.model_name = model_name
        self.device = device
        self._loader = loader or self._load_clip
        self._model = None
        self._processor = None
        self._load_task: Optional[asyncio.Task] = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def _load_clip(self) -> Tuple[Any, Any]:
        # Imported lazily so that importing this module does not pull transformers
        from transformers import CLIPModel, CLIPProcessor  # type: ignore

        logger.info("Loading CLIP model %s on device=%s", self.model_name, self.device)
        model = CLIPModel.from_pretrained(self.model_name)
        model.to(self.device)
        model.eval()
        processor = CLIPProcessor.from_pretrained(self.model_name)
        return model, processor

    def _load_sync(self) -> Tuple[Any, Any]:
        try:
            return self._loader()
        except Exception as e:
            logger.error("Failed to load CLIP model %s: %s", self.model_name, e)
            raise ModelLoadError(f"Failed to load embedding model {self.model_name}: {e}") from e

    async def load(self) -> Tuple[Any, Any]:
        """Load the model/processor pair once; safe under concurrent first use."""
        if self._model is not None:
            return self._model, self._processor

        if self._load_task is None:
            self._load_task = asyncio.ensure_future(asyncio.to_thread(self._load_sync))

        task = self._load_task
        try:
            # One caller being cancelled must not cancel the shared load
            model, processor = await asyncio.shield(task)
        except BaseException:
            # Drop a failed or cancelled load so a later request can retry
            if task.done() and (task.cancelled() or task.exception() is not None):
                if self._load_task is task:
                    self._load_task = None
            raise

        if self._model is None:
            self._model, self._processor = model, processor
            logger.info("CLIP model %s ready", self.model_name)
        return self._model, self._processor

    def _to_device(self, inputs) -> dict:
        return {
            k: (v.to(self.device) if hasattr(v, "to") else v)
            for k, v in dict(inputs).items()
        }

    def _encode_image_sync(self, model, processor, image: Image.Image, test_time_augment: bool) -> np.ndarray:
        views = [image]
        if test_time_augment:
            views.append(ImageOps.mirror(image))

        inputs = self._to_device(processor(images=views, return_tensors="pt"))
        with torch.no_grad():
            features = model.get_image_features(**inputs)

        vectors = l2_normalize(_features_to_array(features, "image_embeds"))
        if len(views) == 1:
            return _frozen(vectors[0])
        return _frozen(l2_normalize(vectors.mean(axis=0)))

    def _encode_texts_sync(self, model, processor, texts: List[str]) -> List[np.ndarray]:
        inputs = self._to_device(
            processor(text=texts, padding=True, truncation=True, return_tensors="pt")
        )
        with torch.no_grad():
            features = model.get_text_features(**inputs)

        vectors = l2_normalize(_features_to_array(features, "text_embeds"))
        return [_frozen(v) for v in vectors]

    async def embed_image(self, image_bytes: bytes, test_time_augment: bool = False) -> np.ndarray:
        """
        Embed one image.

        With test_time_augment the image and its horizontal mirror are
        embedded, each normalized, then averaged and normalized again.
        """
        image = decode_image(image_bytes)
        model, processor = await self.load()
        logger.debug(
            "Embedding image %sx%s (tta=%s)", image.width, image.height, test_time_augment
        )
        return await asyncio.to_thread(
            self._encode_image_sync, model, processor, image, test_time_augment
        )

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed a batch of strings in one model call, one vector per input."""
        texts = [str(t) if t is not None else "" for t in texts]
        if not texts:
            return []
        model, processor = await self.load()
        return await asyncio.to_thread(self._encode_texts_sync, model, processor, texts)
