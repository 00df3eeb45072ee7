#!/usr/bin/env python3
# CUI // SP-PROPIN
"""OpenAI-compatible text-generation provider.

Supports any OpenAI-compatible API: OpenAI, Gemini's OpenAI endpoint,
Ollama, vLLM, LM Studio, etc. The client is built with automatic retries
disabled so that one call maps to exactly one attempt.
"""

import logging
import time

from rfpstudio.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("rfpstudio.llm.openai")

DEFAULT_TIMEOUT_SECONDS = 120.0


class OpenAICompatibleProvider(LLMProvider):
    """Provider for OpenAI-compatible REST APIs."""

    def __init__(self, api_key: str = "ollama", base_url: str = "http://localhost:11434/v1",
                 provider_label: str = "openai_compatible",
                 timeout: float = DEFAULT_TIMEOUT_SECONDS, client=None):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._label = provider_label
        self._timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    @property
    def provider_name(self) -> str:
        return self._label

    def invoke(self, request: LLMRequest, model_id: str, model_config: dict) -> LLMResponse:
        client = self._get_client()
        start = time.time()

        messages = list(request.messages)
        if not messages:
            raise ValueError("LLMRequest has no messages")

        if request.system_prompt and not any(m.get("role") == "system" for m in messages):
            messages = [{"role": "system", "content": request.system_prompt}] + messages

        kwargs = {
            "model": model_id,
            "messages": messages,
            "max_tokens": model_config.get("max_tokens", request.max_tokens),
            "temperature": model_config.get("temperature", request.temperature),
        }
        if request.timeout:
            kwargs["timeout"] = request.timeout

        try:
            resp = client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise RuntimeError(f"{self._label} invocation failed: {exc}") from exc

        content = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        return LLMResponse(
            content=content,
            model_id=model_id,
            provider=self._label,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=int((time.time() - start) * 1000),
            stop_reason=str(resp.choices[0].finish_reason),
        )

    def check_availability(self, model_id: str) -> bool:
        try:
            models = self._get_client().models.list()
            ids = [m.id.split("/")[-1] for m in models.data]
            return model_id in ids
        except Exception as exc:
            logger.debug("Availability probe for %s failed: %s", model_id, exc)
            return False
