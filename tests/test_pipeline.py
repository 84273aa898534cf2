import asyncio
import base64
import json

import pytest

from src.dish_inference.pipeline import DishInferencePipeline, Mode, decode_image_b64
from src.dish_inference.reranker import HybridReranker
from src.dish_inference.retriever import NeighborRetriever
from src.errors import InvalidInputError, RetrievalError, SummarizationError

IMAGE_B64 = base64.b64encode(b"fake image bytes for the pipeline").decode("ascii")


def _pipeline(fakes, matches=None, provider=None, generator=None, index=None, **kwargs):
    provider = provider or fakes.EmbeddingProvider(query_vector=[1, 0, 0])
    index = index or fakes.VectorIndex({"matches": matches or []})
    generator = generator or fakes.Generator()

    pipeline = DishInferencePipeline(
        provider=provider,
        retriever=NeighborRetriever(index, timeout=5),
        reranker=HybridReranker(provider),
        generator=generator,
        **kwargs,
    )
    return pipeline, provider, index, generator


def test_hybrid_mode_promotes_ingredient_match(fakes):
    provider = fakes.EmbeddingProvider(
        query_vector=[1, 0, 0],
        text_vectors={"beef, bun": [0, 1, 0], "pork": [0, 0, 1], "tomato, mozzarella": [1, 0, 0]},
    )
    matches = [
        fakes.make_match("n1", 0.9, ["Beef", "Bun"]),
        fakes.make_match("n2", 0.8, '["pork"]'),
        fakes.make_match("n3", 0.7, [{"name": "Tomato"}, {"name": "Mozzarella"}]),
    ]
    pipeline, _, _, generator = _pipeline(fakes, matches, provider=provider)

    result = asyncio.run(pipeline.run(IMAGE_B64, Mode.HYBRID, alpha=0.5, beta=0.5))

    assert [n.id for n in result.neighbors] == ["n3", "n1", "n2"]
    assert result.summary == '{"dish_title": "Caprese salad"}'
    assert len(generator.prompts) == 1
    assert provider.image_calls[0][1] is True


def test_infer_hybrid_returns_raw_summary(fakes):
    pipeline, _, _, generator = _pipeline(
        fakes, [fakes.make_match("a", 0.9, ["rice"])], generator=fakes.Generator(reply="raw text")
    )
    assert asyncio.run(pipeline.infer_hybrid(IMAGE_B64)) == "raw text"

    prompt = generator.prompts[0]
    assert IMAGE_B64[:10] in prompt
    assert "total_protein" in prompt
    assert '"fused_score"' in prompt


def test_hybrid_prompt_truncates_image(fakes):
    long_b64 = base64.b64encode(bytes(range(256)) * 10).decode("ascii")
    pipeline, _, _, generator = _pipeline(
        fakes, [fakes.make_match("a", 0.9)], image_excerpt_chars=16
    )

    asyncio.run(pipeline.infer_hybrid(long_b64))

    prompt = generator.prompts[0]
    assert long_b64[:16] in prompt
    assert long_b64[:17] not in prompt


def test_hybrid_prompt_excerpt_skips_data_url_prefix(fakes):
    payload = base64.b64encode(bytes(range(256)) * 10).decode("ascii")
    pipeline, _, _, generator = _pipeline(
        fakes, [fakes.make_match("a", 0.9)], image_excerpt_chars=16
    )

    asyncio.run(pipeline.infer_hybrid(f"data:image/png;base64,{payload}"))

    prompt = generator.prompts[0]
    assert payload[:16] in prompt
    assert "data:image" not in prompt


def test_neighbors_only_mode_shape_and_prompt(fakes):
    matches = [fakes.make_match("a", 0.9, ["Rice"], total_calories=400), fakes.make_match("b", 0.5)]
    pipeline, provider, _, generator = _pipeline(fakes, matches)

    out = asyncio.run(pipeline.infer_from_neighbors(IMAGE_B64))

    assert set(out) == {"neighbors", "summary"}
    assert [n["id"] for n in out["neighbors"]] == ["a", "b"]
    assert out["neighbors"][0]["ingredients"] == ["rice"]
    assert "fused_score" not in out["neighbors"][0]
    assert provider.image_calls[0][1] is False
    assert provider.text_calls == []

    prompt = generator.prompts[0]
    assert '"estimated_protein"' in prompt
    assert "estimated_proten" not in prompt


def test_context_is_capped(fakes):
    matches = [fakes.make_match(f"d{i}", 1.0 - i / 100) for i in range(12)]
    pipeline, _, _, generator = _pipeline(fakes, matches, max_context_neighbors=8)

    result = asyncio.run(pipeline.run(IMAGE_B64, Mode.NEIGHBORS_ONLY, top_k=12))

    assert len(result.neighbors) == 12
    assert result.meta["context_neighbors"] == 8
    assert "top 8 neighbors" in generator.prompts[0]
    assert '"d7"' in generator.prompts[0]
    assert '"d8"' not in generator.prompts[0]


def test_no_matches_skips_summarization(fakes):
    for mode in (Mode.NEIGHBORS_ONLY, Mode.HYBRID):
        pipeline, _, index, generator = _pipeline(fakes, [])
        result = asyncio.run(pipeline.run(IMAGE_B64, mode))

        assert not result.found
        assert result.summary is None
        assert len(index.calls) == 1
        assert generator.prompts == []

    pipeline, _, _, _ = _pipeline(fakes, [])
    assert asyncio.run(pipeline.infer_hybrid(IMAGE_B64)) is None
    assert asyncio.run(pipeline.infer_from_neighbors(IMAGE_B64)) == {"neighbors": [], "summary": None}


def test_zero_top_k_is_no_result(fakes):
    pipeline, provider, index, generator = _pipeline(fakes, [fakes.make_match("a", 0.9)])
    result = asyncio.run(pipeline.run(IMAGE_B64, top_k=0))

    assert not result.found
    assert provider.image_calls == []
    assert index.calls == []
    assert generator.prompts == []


@pytest.mark.parametrize("bad", ["", "   ", "not-base64-!!", "abc", None, 123])
def test_invalid_input_fails_before_any_work(fakes, bad):
    pipeline, provider, index, generator = _pipeline(fakes, [fakes.make_match("a", 0.9)])

    with pytest.raises(InvalidInputError):
        asyncio.run(pipeline.run(bad, Mode.HYBRID))

    assert provider.image_calls == []
    assert index.calls == []
    assert generator.prompts == []


def test_data_url_and_whitespace_are_accepted():
    raw = b"\x89PNG fake"
    b64 = base64.b64encode(raw).decode("ascii")
    assert decode_image_b64(f"data:image/png;base64,{b64}") == raw
    assert decode_image_b64(b64[:4] + "\n" + b64[4:]) == raw


def test_invalid_fusion_weights_are_rejected(fakes):
    pipeline, provider, _, _ = _pipeline(fakes, [fakes.make_match("a", 0.9)])

    for alpha, beta in ((-0.1, 0.5), (float("nan"), 0.5), (0.5, "x")):
        with pytest.raises(InvalidInputError):
            asyncio.run(pipeline.run(IMAGE_B64, Mode.HYBRID, alpha=alpha, beta=beta))
    assert provider.image_calls == []


def test_non_integer_top_k_is_rejected(fakes):
    pipeline, _, _, _ = _pipeline(fakes, [fakes.make_match("a", 0.9)])
    with pytest.raises(InvalidInputError):
        asyncio.run(pipeline.run(IMAGE_B64, top_k="5"))


def test_retrieval_failure_propagates(fakes):
    pipeline, _, _, generator = _pipeline(
        fakes, index=fakes.VectorIndex(error=RetrievalError("index down"))
    )
    with pytest.raises(RetrievalError):
        asyncio.run(pipeline.run(IMAGE_B64))
    assert generator.prompts == []


def test_summarization_failure_propagates(fakes):
    for error in (SummarizationError("quota"), RuntimeError("boom")):
        pipeline, _, _, _ = _pipeline(
            fakes, [fakes.make_match("a", 0.9)], generator=fakes.Generator(error=error)
        )
        with pytest.raises(SummarizationError):
            asyncio.run(pipeline.run(IMAGE_B64, Mode.HYBRID))


def test_empty_reply_is_none(fakes):
    pipeline, _, _, _ = _pipeline(fakes, [fakes.make_match("a", 0.9)], generator=fakes.Generator(reply=""))
    assert asyncio.run(pipeline.run(IMAGE_B64)).summary is None


def test_result_meta_has_stage_timings(fakes):
    pipeline, _, _, _ = _pipeline(fakes, [fakes.make_match("a", 0.9, ["egg"])])
    result = asyncio.run(pipeline.run(IMAGE_B64, Mode.HYBRID))

    for key in ("embed_time", "retrieve_time", "rerank_time", "summarize_time", "total_time"):
        assert result.meta[key] >= 0.0
    assert result.meta["alpha"] == pytest.approx(0.7)
    assert json.loads(json.dumps(result.to_dict()))["mode"] == "hybrid"


def test_slow_summarization_times_out(fakes):
    pipeline, _, _, generator = _pipeline(
        fakes,
        [fakes.make_match("a", 0.9)],
        generator=fakes.Generator(delay=0.3),
        generation_timeout=0.05,
    )
    with pytest.raises(SummarizationError, match="timed out"):
        asyncio.run(pipeline.run(IMAGE_B64, Mode.HYBRID))
    assert len(generator.prompts) == 1
