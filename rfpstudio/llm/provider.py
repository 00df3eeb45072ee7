#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Vendor-agnostic text-generation provider base classes and data types.

Every backend (OpenAI-compatible REST, AWS Bedrock) takes a prompt wrapped
in an LLMRequest and returns an LLMResponse, or raises on transport/quota
failure. Nothing here retries; retry policy belongs to the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class LLMRequest:
    """Vendor-agnostic text-generation request."""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    system_prompt: str = ""
    max_tokens: int = 8192
    temperature: float = 0.2
    timeout: Optional[float] = None
    project_id: str = ""

    @classmethod
    def from_prompt(cls, prompt: str, **kwargs) -> "LLMRequest":
        return cls(messages=[{"role": "user", "content": prompt}], **kwargs)


@dataclass
class LLMResponse:
    """Vendor-agnostic text-generation response."""
    content: str = ""
    model_id: str = ""
    provider: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    stop_reason: str = ""


class LLMProvider(ABC):
    """Abstract base class for text-generation providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier."""

    @abstractmethod
    def invoke(self, request: LLMRequest, model_id: str, model_config: dict) -> LLMResponse:
        """Invoke the model synchronously. Raises on any transport error."""

    @abstractmethod
    def check_availability(self, model_id: str) -> bool:
        """Check if a specific model is available."""
