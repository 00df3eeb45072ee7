#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Config-driven LLM router for RFP Studio.

Reads args/llm_config.yaml and resolves model names to a provider +
model_id. The router performs exactly one attempt per invoke_model() call;
walking a fallback chain is the caller's job (see rfx.analysis_engine).
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from rfpstudio.llm.provider import LLMProvider, LLMRequest, LLMResponse

logger = logging.getLogger("rfpstudio.llm.router")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = Path(os.environ.get(
    "RFPSTUDIO_LLM_CONFIG", str(BASE_DIR / "args" / "llm_config.yaml")
))

DEFAULT_SETTINGS = {
    "request_timeout_seconds": 120,
    "max_total_seconds": 600,
    "max_document_chars": 200000,
}


def _expand_env(value):
    """Expand ${VAR:-default} patterns in string values."""
    if not isinstance(value, str):
        return value
    pattern = r'\$\{([^}]+)\}'

    def replacer(match):
        expr = match.group(1)
        if ":-" in expr:
            var, default = expr.split(":-", 1)
            return os.environ.get(var, default)
        return os.environ.get(expr, match.group(0))
    return re.sub(pattern, replacer, value)


class UnknownModelError(KeyError):
    """Raised when a model name has no usable entry in the config."""


class LLMRouter:
    """Config-driven router mapping model names to providers."""

    def __init__(self, config_path=None, config: Optional[dict] = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._providers: Dict[str, LLMProvider] = {}
        if config is not None:
            self._config = config
        else:
            self._config = self._load_config()

    def _load_config(self) -> dict:
        """Load and parse llm_config.yaml."""
        if not self._config_path.exists():
            logger.warning("LLM config not found at %s - using empty config", self._config_path)
            return {}
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.error("Failed to load LLM config: %s", exc)
            return {}

    @property
    def settings(self) -> dict:
        merged = dict(DEFAULT_SETTINGS)
        merged.update(self._config.get("settings") or {})
        return merged

    def chain_for(self, function: str) -> List[str]:
        """Ordered model names configured for a routing function."""
        routing = self._config.get("routing") or {}
        route = routing.get(function, routing.get("default", {})) or {}
        return list(route.get("chain") or [])

    def register_provider(self, name: str, provider: LLMProvider) -> None:
        """Install a ready-made provider instance under a provider name."""
        self._providers[name] = provider

    def _get_model_config(self, model_name: str) -> dict:
        return (self._config.get("models") or {}).get(model_name, {})

    def _get_provider(self, provider_name: str) -> Optional[LLMProvider]:
        """Get or create a provider instance by name."""
        if provider_name in self._providers:
            return self._providers[provider_name]

        provider_cfg = (self._config.get("providers") or {}).get(provider_name, {})
        if not provider_cfg:
            return None

        ptype = provider_cfg.get("type", "")
        timeout = float(self.settings["request_timeout_seconds"])
        instance = None

        if ptype == "bedrock":
            from rfpstudio.llm.bedrock_provider import BedrockLLMProvider
            region = _expand_env(provider_cfg.get("region", "us-east-1"))
            instance = BedrockLLMProvider(region=region, timeout=timeout)

        elif ptype in ("openai", "openai_compatible"):
            from rfpstudio.llm.openai_provider import OpenAICompatibleProvider
            api_key = provider_cfg.get("api_key", "")
            if not api_key:
                api_key_env = provider_cfg.get("api_key_env", "")
                if api_key_env:
                    api_key = os.environ.get(api_key_env, "")
            base_url = _expand_env(provider_cfg.get("base_url", "https://api.openai.com/v1"))
            instance = OpenAICompatibleProvider(
                api_key=api_key, base_url=base_url,
                provider_label=provider_name, timeout=timeout,
            )

        elif ptype == "ollama":
            from rfpstudio.llm.openai_provider import OpenAICompatibleProvider
            base_url = _expand_env(provider_cfg.get("base_url", "http://localhost:11434/v1"))
            instance = OpenAICompatibleProvider(
                api_key="ollama", base_url=base_url,
                provider_label=provider_name, timeout=timeout,
            )

        else:
            logger.warning("Unknown provider type '%s' for provider '%s'", ptype, provider_name)

        if instance:
            self._providers[provider_name] = instance
        return instance

    def invoke_model(self, model_name: str, request: LLMRequest) -> LLMResponse:
        """Single attempt against one configured model. Raises on any failure."""
        model_cfg = self._get_model_config(model_name)
        if not model_cfg:
            raise UnknownModelError(f"Model '{model_name}' is not configured")

        provider_name = model_cfg.get("provider", "")
        provider = self._get_provider(provider_name)
        if provider is None:
            raise UnknownModelError(
                f"Provider '{provider_name}' for model '{model_name}' is not configured"
            )

        if request.timeout is None:
            request.timeout = float(self.settings["request_timeout_seconds"])
        model_id = model_cfg.get("model_id", model_name)
        return provider.invoke(request, model_id, model_cfg)

    def check_availability(self, model_name: str) -> bool:
        """Ask the model's provider whether it can serve the model right now."""
        model_cfg = self._get_model_config(model_name)
        if not model_cfg:
            return False
        provider = self._get_provider(model_cfg.get("provider", ""))
        if provider is None:
            return False
        return provider.check_availability(model_cfg.get("model_id", model_name))

    def validate(self, function: str) -> List[str]:
        """Return human-readable problems with the routing for a function."""
        issues = []
        chain = self.chain_for(function)
        if not chain:
            issues.append(f"Routing '{function}' has an empty model chain")
        providers = self._config.get("providers") or {}
        for model_name in chain:
            model_cfg = self._get_model_config(model_name)
            if not model_cfg:
                issues.append(f"Model '{model_name}' is not defined under 'models'")
                continue
            provider_name = model_cfg.get("provider", "")
            provider_cfg = providers.get(provider_name)
            if not provider_cfg:
                issues.append(f"Model '{model_name}' references unknown provider '{provider_name}'")
                continue
            key_env = provider_cfg.get("api_key_env")
            if key_env and not provider_cfg.get("api_key") and not os.environ.get(key_env):
                issues.append(f"Provider '{provider_name}' needs {key_env} to be set")
        return issues
