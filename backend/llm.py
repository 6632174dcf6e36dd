"""
llm.py
------
Generative text clients. Every client exposes `complete(prompt) -> str`;
callers never assume the answer is JSON.

  StubLLMClient    — no API calls; returns a fixed non-JSON string so every
                     stage exercises its degradation path
  GeminiClient     — google-genai backed client
  get_llm_client() — picks one from config.USE_STUB_LLM / GEMINI_API_KEY
"""

from __future__ import annotations
import logging

from google import genai as genai_sdk

import config

logger = logging.getLogger(__name__)


class StubLLMClient:
    """No-op LLM client used when USE_STUB_LLM=true or no API key is set."""

    def complete(self, prompt: str) -> str:  # noqa: ARG002
        return "[stub response]"


class GeminiClient:
    def __init__(
        self,
        model: str = config.LLM_MODEL_NAME,
        api_key: str = config.GEMINI_API_KEY,
        timeout_s: int = config.LLM_TIMEOUT_SECONDS,
    ):
        self._client = genai_sdk.Client(
            api_key=api_key,
            http_options={"timeout": timeout_s * 1000},
        )
        self._model = model

    def complete(self, prompt: str) -> str:
        response = self._client.models.generate_content(
            model=self._model,
            contents=prompt,
        )
        if not response or not response.text:
            raise RuntimeError("Empty Gemini response")
        return response.text.strip()


def get_llm_client():
    if config.USE_STUB_LLM or not config.GEMINI_API_KEY:
        logger.info("[llm] using stub client")
        return StubLLMClient()
    logger.info("[llm] using Gemini model %s", config.LLM_MODEL_NAME)
    return GeminiClient()
