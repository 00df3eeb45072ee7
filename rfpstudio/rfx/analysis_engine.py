#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: RFP Studio System Administrator
"""Analysis fallback engine: RFP text -> structured Analysis dict.

Walks an ordered list of model names taken from an explicit AnalysisConfig.
Each name gets exactly one attempt; a transport/quota error or an empty
completion advances the cursor to the next name. The first non-empty answer
wins and later names are never called. When the list (or the wall-clock
budget) is exhausted, AllModelsFailedError is raised.

A non-empty answer that does not contain a JSON object still succeeds: it is
turned into a degraded Analysis carrying the raw text.

The text-generation service is anything with
invoke_model(model_name, LLMRequest) -> LLMResponse (see llm.router).
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, Union

from rfpstudio.llm.provider import LLMRequest
from rfpstudio.rfx.prompts import NOT_SPECIFIED, build_analysis_prompt

logger = logging.getLogger("rfpstudio.rfx.analysis")

SEE_FULL_TEXT = "See full analysis text"
DEGRADED_TITLE = "Analysis completed - see full text"
SUMMARY_PREFIX_CHARS = 500

REQUIREMENT_KEYS = ("functional", "technical", "compliance", "deliverables")

# (section, key) pairs that hold a single string
SCALAR_FIELDS = (
    ("overview", "title"),
    ("overview", "organization"),
    ("overview", "dueDate"),
    ("overview", "projectSummary"),
    ("evaluation", "weights"),
    ("evaluation", "timeline"),
    ("constraints", "budget"),
    ("constraints", "timeline"),
    ("constraints", "resources"),
)

# (section, key) pairs that hold a list of strings; key None = top-level list
LIST_FIELDS = tuple(("requirements", k) for k in REQUIREMENT_KEYS) + (
    ("evaluation", "criteria"),
    ("constraints", "other"),
    ("questions", None),
    ("opportunities", None),
)


class LLMUnavailableError(RuntimeError):
    """Raised when no text-generation model could produce an answer."""


class AllModelsFailedError(LLMUnavailableError):
    """Every configured model name was tried once and none answered."""

    def __init__(self, attempted: List[str], last_error: Optional[BaseException] = None,
                 message: str = ""):
        self.attempted = list(attempted)
        self.last_error = last_error
        if not message:
            if self.attempted:
                message = (f"All models failed ({', '.join(self.attempted)}). "
                           "Please try again later or check your API quota.")
            else:
                message = "No text-generation models are configured."
            if last_error is not None:
                message += f" Last error: {last_error}"
        super().__init__(message)


@dataclass
class AnalysisConfig:
    """Explicit engine configuration (ordered model names + time bounds)."""
    models: List[str] = field(default_factory=list)
    request_timeout_seconds: float = 120.0
    max_total_seconds: float = 600.0
    max_document_chars: int = 200000
    max_tokens: int = 8192

    @classmethod
    def from_router(cls, router, function: str = "rfp_analysis") -> "AnalysisConfig":
        settings = router.settings
        return cls(
            models=router.chain_for(function),
            request_timeout_seconds=float(settings.get("request_timeout_seconds", 120)),
            max_total_seconds=float(settings.get("max_total_seconds", 600)),
            max_document_chars=int(settings.get("max_document_chars", 200000)),
        )


# ── parsing ────────────────────────────────────────────────────────────────────

def parse_json_object(raw: str) -> Optional[dict]:
    """Parse the substring from the first '{' to the last '}' as a JSON object."""
    if not raw:
        return None
    start = raw.find("{")
    end = raw.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(raw[start:end + 1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _item_text(item) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, (dict, list)):
        return json.dumps(item, ensure_ascii=False)
    return str(item)


def _scalar(value) -> str:
    if value is None:
        return NOT_SPECIFIED
    if isinstance(value, list):
        value = ", ".join(t for t in (_item_text(v) for v in value) if t)
    text = _item_text(value)
    return text if text else NOT_SPECIFIED


def _string_list(value) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [t for t in (_item_text(v) for v in value if v is not None) if t]


def empty_analysis() -> dict:
    return {
        "metadata": {},
        "overview": {k: NOT_SPECIFIED for s, k in SCALAR_FIELDS if s == "overview"},
        "requirements": {k: [] for k in REQUIREMENT_KEYS},
        "evaluation": {"criteria": [], "weights": NOT_SPECIFIED, "timeline": NOT_SPECIFIED},
        "constraints": {"budget": NOT_SPECIFIED, "timeline": NOT_SPECIFIED,
                        "resources": NOT_SPECIFIED, "other": []},
        "questions": [],
        "opportunities": [],
    }


def normalize_analysis(parsed: dict) -> dict:
    """Coerce a parsed model answer into the full Analysis shape.

    Missing or blank scalars become the NOT_SPECIFIED sentinel, missing lists
    become [], and a scalar found where a list belongs is wrapped.
    """
    analysis = empty_analysis()
    for section, key in SCALAR_FIELDS:
        src = parsed.get(section)
        if isinstance(src, dict):
            analysis[section][key] = _scalar(src.get(key))
    for section, key in LIST_FIELDS:
        if key is None:
            analysis[section] = _string_list(parsed.get(section))
        else:
            src = parsed.get(section)
            if isinstance(src, dict):
                analysis[section][key] = _string_list(src.get(key))
    return analysis


def degraded_analysis(raw: str) -> dict:
    """Minimal Analysis for an answer that carried no parseable JSON object."""
    analysis = empty_analysis()
    analysis["overview"].update({
        "title": DEGRADED_TITLE,
        "projectSummary": raw[:SUMMARY_PREFIX_CHARS],
    })
    analysis["requirements"] = {k: [SEE_FULL_TEXT] for k in REQUIREMENT_KEYS}
    analysis["evaluation"].update({"criteria": [SEE_FULL_TEXT], "timeline": SEE_FULL_TEXT})
    analysis["constraints"].update({"timeline": SEE_FULL_TEXT, "other": [SEE_FULL_TEXT]})
    analysis["questions"] = ["Review full analysis for key questions"]
    analysis["opportunities"] = ["Review full analysis for opportunities"]
    analysis["fullText"] = raw
    analysis["degraded"] = True
    return analysis


# ── engine ─────────────────────────────────────────────────────────────────────

class AnalysisEngine:
    """Ordered model fallback over a text-generation service."""

    def __init__(self, service, config: AnalysisConfig,
                 clock: Callable[[], float] = time.monotonic):
        self._service = service
        self._config = config
        self._clock = clock

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    def truncate(self, text: str) -> str:
        limit = self._config.max_document_chars
        if limit and len(text) > limit:
            logger.info("Document text truncated from %d to %d chars", len(text), limit)
            return text[:limit]
        return text

    def generate_text(self, prompt: Union[str, Callable[[str], str]]) -> Tuple[str, str]:
        """Return (completion, model_name) from the first model that answers.

        prompt may be a string or a callable taking the model name.
        """
        models = list(self._config.models)
        attempted: List[str] = []
        last_error: Optional[BaseException] = None
        started = self._clock()
        index = 0

        while index < len(models):
            model_name = models[index]
            elapsed = self._clock() - started
            remaining = self._config.max_total_seconds - elapsed
            if remaining <= 0:
                logger.warning("Time budget of %ss exhausted; skipping %s",
                               self._config.max_total_seconds, models[index:])
                break

            logger.info("Attempting generation with model %s (attempt %d/%d)",
                        model_name, index + 1, len(models))
            text = prompt(model_name) if callable(prompt) else prompt
            request = LLMRequest.from_prompt(
                text,
                max_tokens=self._config.max_tokens,
                timeout=min(self._config.request_timeout_seconds, remaining),
            )
            attempted.append(model_name)
            try:
                response = self._service.invoke_model(model_name, request)
            except Exception as exc:
                logger.warning("Model %s failed: %s", model_name, exc)
                last_error = exc
                index += 1
                continue

            content = getattr(response, "content", response)
            if not isinstance(content, str) or not content.strip():
                logger.warning("Model %s returned an empty completion", model_name)
                last_error = LLMUnavailableError(f"Empty completion from {model_name}")
                index += 1
                continue

            logger.info("Model %s answered", model_name)
            return content, model_name

        raise AllModelsFailedError(attempted, last_error)

    def generate_json(self, prompt: Union[str, Callable[[str], str]]) -> Optional[dict]:
        """Generate and parse a JSON object. None when the answer has no object."""
        raw, _ = self.generate_text(prompt)
        return parse_json_object(raw)

    def analyze(self, text: str, filename: str, proposal_name: str) -> dict:
        """RFP text -> Analysis dict. Raises AllModelsFailedError only."""
        document_text = self.truncate(text)
        analysis_date = datetime.now(timezone.utc).isoformat()

        raw, model_name = self.generate_text(
            lambda m: build_analysis_prompt(document_text, filename, proposal_name,
                                            m, analysis_date)
        )

        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("Model %s answer for %s had no JSON object; using degraded analysis",
                           model_name, filename)
            analysis = degraded_analysis(raw)
        else:
            analysis = normalize_analysis(parsed)

        analysis["metadata"] = {
            "fileName": filename,
            "analysisDate": analysis_date,
            "proposalName": proposal_name,
            "modelUsed": model_name,
        }
        return analysis
