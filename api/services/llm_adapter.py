# api/services/llm_adapter.py
"""
Prompt templating, provider calls and tolerant JSON extraction for the
classification (lead analysis, knowledge learning) and drafting (follow-ups,
task translation) features.

Adapters never raise: provider failures and unparseable output come back as
LLMResult(success=False, error=...) so batch callers can count the item as
failed and move on.
"""

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import anthropic
import requests
from cachetools import TTLCache

from config import AppConfig

logger = logging.getLogger(__name__)

CLASSIFY_TEMPERATURE = 0.1
DRAFT_TEMPERATURE = 0.7

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class LLMProviderError(Exception):
    """Provider call failed (HTTP error, SDK error or empty answer)"""


@dataclass
class LLMResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    raw_text: str = ""
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "cached": self.cached,
        }


def render_template(template: str, variables: Dict[str, Any]) -> str:
    """Replace every {{name}} with its value; unknown placeholders stay as they are."""
    def substitute(match):
        key = match.group(1)
        if key in variables:
            value = variables[key]
            return "" if value is None else str(value)
        return match.group(0)
    return _PLACEHOLDER_RE.sub(substitute, template)


def extract_json(text: str) -> Any:
    """
    Parse the first balanced {...} or [...] span of a model answer after
    dropping markdown code fences. Braces inside JSON strings are ignored.
    Raises ValueError when no parseable span exists.
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()

    start = None
    for index, char in enumerate(cleaned):
        if char in "{[":
            start = index
            break
    if start is None:
        raise ValueError("No JSON object or array in model output")

    closing = {"{": "}", "[": "]"}
    stack = []
    in_string = False
    escaped = False
    for index in range(start, len(cleaned)):
        char = cleaned[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closing:
            stack.append(closing[char])
        elif char in "}]":
            if not stack or stack.pop() != char:
                raise ValueError("Unbalanced JSON in model output")
            if not stack:
                return json.loads(cleaned[start:index + 1])
    raise ValueError("Unterminated JSON in model output")


def apply_defaults(data: Any, defaults: Optional[Dict[str, Any]]) -> Any:
    if not defaults or not isinstance(data, dict):
        return data
    merged = dict(defaults)
    merged.update({key: value for key, value in data.items() if value is not None})
    return merged


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str, model: str):
        self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model

    def complete(self, prompt: str, temperature: float, max_tokens: int,
                 system: Optional[str] = None) -> str:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise LLMProviderError(f"Anthropic API error: {e}") from e

        text = "".join(getattr(block, "text", "") for block in response.content)
        if not text.strip():
            raise LLMProviderError("Empty response from Anthropic")
        return text


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str, model: str, timeout: int = 60,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete(self, prompt: str, temperature: float, max_tokens: int,
                 system: Optional[str] = None) -> str:
        text = f"{system}\n\n{prompt}" if system else prompt
        payload = {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        try:
            response = self.session.request(
                "POST",
                GEMINI_URL.format(model=self.model),
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise LLMProviderError(f"Gemini request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise LLMProviderError(f"Gemini API error {response.status_code}: {response.text[:300]}")

        data = response.json()
        try:
            answer = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise LLMProviderError("Gemini response has no candidate text")
        if not answer.strip():
            raise LLMProviderError("Empty response from Gemini")
        return answer


class LLMAdapter:
    """Templated classify/draft calls against one provider"""

    def __init__(self, provider, cache_ttl: int = 0, cache_size: int = 256):
        self.provider = provider
        self.cache = TTLCache(maxsize=cache_size, ttl=cache_ttl) if cache_ttl > 0 else None
        self.metrics = {"calls": 0, "failures": 0, "cache_hits": 0}
        # Job batches call the adapter from worker threads; TTLCache is not thread-safe
        self._lock = threading.Lock()

    def _count(self, metric: str):
        with self._lock:
            self.metrics[metric] += 1

    def _cached(self, signature: str) -> Optional[LLMResult]:
        if self.cache is None:
            return None
        with self._lock:
            cached = self.cache.get(signature)
            if cached is not None:
                self.metrics["cache_hits"] += 1
        return cached

    def _signature(self, prompt: str, temperature: float, system: Optional[str]) -> str:
        return hashlib.md5(f"{temperature}:{system or ''}:{prompt}".encode()).hexdigest()

    def _run(self, template: str, variables: Dict[str, Any], temperature: float, max_tokens: int,
             defaults: Optional[Dict[str, Any]], system: Optional[str], expect_json: bool) -> LLMResult:
        prompt = render_template(template, variables or {})
        signature = self._signature(prompt, temperature, system)

        cached = self._cached(signature)
        if cached is not None:
            return LLMResult(cached.success, cached.data, cached.error, cached.raw_text, cached=True)

        self._count("calls")
        try:
            text = self.provider.complete(prompt, temperature, max_tokens, system=system)
        except (LLMProviderError, requests.RequestException) as e:
            self._count("failures")
            logger.error(f"❌ LLM call failed ({self.provider.name}): {e}")
            return LLMResult(False, error=str(e))

        if not expect_json:
            result = LLMResult(True, data=text.strip(), raw_text=text)
        else:
            try:
                result = LLMResult(True, data=apply_defaults(extract_json(text), defaults), raw_text=text)
            except ValueError as e:
                self._count("failures")
                logger.warning(f"⚠️ Unparseable LLM output: {e} - {text[:200]!r}")
                return LLMResult(False, error=f"Unparseable output: {e}", raw_text=text)

        if self.cache is not None:
            with self._lock:
                self.cache[signature] = result
        return result

    def classify(self, template: str, variables: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None,
                 max_tokens: int = 1000, system: Optional[str] = None) -> LLMResult:
        return self._run(template, variables, CLASSIFY_TEMPERATURE, max_tokens, defaults, system, True)

    def draft(self, template: str, variables: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None,
              max_tokens: int = 500, system: Optional[str] = None, expect_json: bool = True) -> LLMResult:
        return self._run(template, variables, DRAFT_TEMPERATURE, max_tokens, defaults, system, expect_json)


def build_llm_adapter(config=AppConfig) -> Optional[LLMAdapter]:
    """Adapter for the configured provider, or None when no API key is set."""
    if config.LLM_PROVIDER == "anthropic":
        if not config.ANTHROPIC_API_KEY:
            logger.warning("⚠️ LLM disabled - no ANTHROPIC_API_KEY")
            return None
        provider = AnthropicProvider(config.ANTHROPIC_API_KEY, config.ANTHROPIC_MODEL)
    else:
        if not config.GEMINI_API_KEY:
            logger.warning("⚠️ LLM disabled - no GEMINI_API_KEY")
            return None
        provider = GeminiProvider(config.GEMINI_API_KEY, config.GEMINI_MODEL, timeout=config.HTTP_TIMEOUT)
    logger.info(f"✅ LLM adapter initialized with {provider.name}")
    return LLMAdapter(provider, cache_ttl=config.LLM_CACHE_TTL)
