import io
import string
import time

import numpy as np
import pytest
import torch
from PIL import Image

from src.dish_inference.retriever import Neighbor

FAKE_DIM = 32


class FakeClipProcessor:
    """Turns images/texts directly into deterministic feature vectors."""

    def __call__(self, images=None, text=None, **kwargs):
        if images is not None:
            return {"pixel_values": torch.tensor(np.stack([self._image_features(i) for i in images]))}
        return {"input_ids": torch.tensor(np.stack([self._text_features(t) for t in text]))}

    @staticmethod
    def _image_features(img):
        arr = np.asarray(img, dtype=np.float32) / 255.0
        h, w = arr.shape[:2]
        parts = [
            arr[:, : w // 2].mean(axis=(0, 1)),
            arr[:, w // 2:].mean(axis=(0, 1)),
            arr[: h // 2].mean(axis=(0, 1)),
            arr[h // 2:].mean(axis=(0, 1)),
            [1.0],
        ]
        vec = np.concatenate(parts).astype(np.float32)
        return np.pad(vec, (0, FAKE_DIM - len(vec)))

    @staticmethod
    def _text_features(text):
        vec = np.zeros(FAKE_DIM, dtype=np.float32)
        for ch in text.lower():
            if ch in string.ascii_lowercase:
                vec[string.ascii_lowercase.index(ch)] += 1.0
        vec[FAKE_DIM - 1] = 1.0
        return vec


class FakeClipModel:
    def get_image_features(self, pixel_values):
        return pixel_values * 3.0

    def get_text_features(self, input_ids):
        return input_ids * 2.0


class CountingLoader:
    def __init__(self, fail_times=0, delay=0.0):
        self.calls = 0
        self.fail_times = fail_times
        self.delay = delay

    def __call__(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise OSError("weights not found")
        return FakeClipModel(), FakeClipProcessor()


class FakeEmbeddingProvider:
    """Provider double with a fixed query vector and a text -> vector table."""

    def __init__(self, query_vector, text_vectors=None, default_text_vector=None):
        self.query_vector = np.asarray(query_vector, dtype=np.float32)
        self.text_vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (text_vectors or {}).items()}
        self.default_text_vector = (
            np.zeros_like(self.query_vector)
            if default_text_vector is None
            else np.asarray(default_text_vector, dtype=np.float32)
        )
        self.image_calls = []
        self.text_calls = []

    async def load(self):
        return None, None

    async def embed_image(self, image_bytes, test_time_augment=False):
        self.image_calls.append((image_bytes, test_time_augment))
        return self.query_vector

    async def embed_texts(self, texts):
        self.text_calls.append(list(texts))
        return [self.text_vectors.get(t, self.default_text_vector) for t in texts]


class FakeVectorIndex:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = {"matches": []} if response is None else response
        self.error = error
        self.delay = delay
        self.calls = []

    def query(self, vector, top_k, include_metadata=True, include_values=False):
        self.calls.append(
            {
                "vector": vector,
                "top_k": top_k,
                "include_metadata": include_metadata,
                "include_values": include_values,
            }
        )
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeGenerator:
    def __init__(self, reply='{"dish_title": "Caprese salad"}', error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


def make_match(id, score, ingredients=None, **meta):
    metadata = dict(meta)
    if ingredients is not None:
        metadata["ingredients"] = ingredients
    return {"id": id, "score": score, "metadata": metadata}


def png_bytes(left=(255, 0, 0), right=(255, 0, 0), size=(8, 8)):
    img = Image.new("RGB", size, left)
    img.paste(right, (size[0] // 2, 0, size[0], size[1]))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def fakes():
    """Namespace of test doubles shared across test modules."""

    class _Fakes:
        ClipProcessor = FakeClipProcessor
        ClipModel = FakeClipModel
        Loader = CountingLoader
        EmbeddingProvider = FakeEmbeddingProvider
        VectorIndex = FakeVectorIndex
        Generator = FakeGenerator
        Neighbor = Neighbor

    _Fakes.make_match = staticmethod(make_match)
    _Fakes.png_bytes = staticmethod(png_bytes)
    return _Fakes
