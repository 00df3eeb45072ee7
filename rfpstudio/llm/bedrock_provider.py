#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Bedrock text-generation provider (Anthropic messages API on AWS Bedrock)."""

import json
import logging
import time

import boto3
from botocore.config import Config

from rfpstudio.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("rfpstudio.llm.bedrock")


class BedrockLLMProvider(LLMProvider):
    """AWS Bedrock provider. One invoke_model call per attempt, no SDK retries."""

    def __init__(self, region: str = "us-east-1", timeout: float = 120.0, client=None):
        self._region = region
        self._timeout = timeout
        self._client = client

    @property
    def provider_name(self) -> str:
        return "bedrock"

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "bedrock-runtime",
                region_name=self._region,
                config=Config(
                    read_timeout=self._timeout,
                    retries={"max_attempts": 0},
                ),
            )
        return self._client

    def invoke(self, request: LLMRequest, model_id: str, model_config: dict) -> LLMResponse:
        client = self._get_client()
        start = time.time()

        messages = []
        for msg in request.messages:
            content = msg.get("content", "")
            role = msg.get("role", "user")
            if isinstance(content, str):
                messages.append({
                    "role": role,
                    "content": [{"type": "text", "text": content}],
                })
            elif isinstance(content, list):
                messages.append({"role": role, "content": content})

        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": model_config.get("max_tokens", request.max_tokens),
            "temperature": model_config.get("temperature", request.temperature),
            "messages": messages,
        }
        if request.system_prompt:
            body["system"] = request.system_prompt

        try:
            response = client.invoke_model(
                modelId=model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )
            result = json.loads(response["body"].read())
        except Exception as exc:
            raise RuntimeError(f"bedrock invocation failed: {exc}") from exc

        content_text = "".join(
            block.get("text", "")
            for block in result.get("content", [])
            if block.get("type") == "text"
        )
        usage = result.get("usage", {})

        return LLMResponse(
            content=content_text,
            model_id=model_id,
            provider="bedrock",
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            duration_ms=int((time.time() - start) * 1000),
            stop_reason=result.get("stop_reason", ""),
        )

    def check_availability(self, model_id: str) -> bool:
        try:
            self._get_client()
            return True
        except Exception as exc:
            logger.debug("Bedrock client unavailable: %s", exc)
            return False
