import logging
from functools import lru_cache
from typing import Optional

from openai import OpenAI

from src.config import GPT_MAX_TOKENS, GPT_MODEL, OPENAI_API_KEY
from src.errors import SummarizationError
from src.prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


@lru_cache
def get_openai_client() -> OpenAI:
    if not OPENAI_API_KEY:
        raise SummarizationError("OPENAI_API_KEY is not set")
    logger.info("Initializing OpenAI client")
    return OpenAI(api_key=OPENAI_API_KEY)


class OpenAIGenerator:
    """
    Generative text service: prompt in, raw model text out.

    The reply is not validated here. JSON mode is requested so the text is
    normally a single object, but callers parse it themselves.
    """

    def __init__(self, model: str = GPT_MODEL, max_tokens: int = GPT_MAX_TOKENS, client=None):
        self.model = (model or "gpt-4o-mini").strip() or "gpt-4o-mini"
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def generate(self, prompt: str) -> Optional[str]:
        logger.info("Summarizing with model=%s, prompt_len=%s", self.model, len(prompt))
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                temperature=0,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except SummarizationError:
            raise
        except Exception as e:
            logger.error("Summarization via OpenAI failed: %s", e)
            raise SummarizationError(f"Generative service call failed: {e}") from e

        text = response.choices[0].message.content or ""
        logger.info("Summary received, length: %s", len(text))
        return text or None
