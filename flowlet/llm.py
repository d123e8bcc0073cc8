"""Async chat/embedding client for OpenAI-compatible, Anthropic and Google endpoints.

Responses go through flowlet.cache, token usage through a CostTracker, and every
request opens an observability span. Failures surface as LLMError/RateLimitError,
so a node calling the client from exec gets the usual retry and fallback handling.

Usage:
    async with LlmClient(LlmProvider.OLLAMA) as client:
        answer = await client.generate("Summarise this paragraph: ...")
"""
import json
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel, Field

from .cache import Cache, compute_key, global_cache
from .errors import LLMError, RateLimitError
from .observability import record_metric, span
from .tokens import CostTracker, estimate_tokens, global_cost_tracker

logger = structlog.get_logger(__name__)

EMBEDDING_TTL = 86400
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096
DEFAULT_RETRY_AFTER = 60.0


class LlmProvider(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    CUSTOM = "custom"


# provider -> (base url, chat model, embedding model)
PROVIDER_DEFAULTS: Dict[LlmProvider, Tuple[str, str, Optional[str]]] = {
    LlmProvider.OPENAI: ("https://api.openai.com/v1", "gpt-4o-mini", "text-embedding-3-small"),
    LlmProvider.OLLAMA: ("http://localhost:11434/v1", "llama3", "nomic-embed-text"),
    LlmProvider.ANTHROPIC: ("https://api.anthropic.com/v1", "claude-3-5-sonnet-20241022", None),
    LlmProvider.GOOGLE: ("https://generativelanguage.googleapis.com/v1beta", "gemini-1.5-flash", None),
    LlmProvider.CUSTOM: ("http://localhost:8000/v1", "default", "nomic-embed-text"),
}

API_KEY_ENV = {
    LlmProvider.OPENAI: "OPENAI_API_KEY",
    LlmProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    LlmProvider.GOOGLE: "GOOGLE_API_KEY",
}


class LlmOptions(BaseModel):
    """Per-request generation settings."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    use_cache: bool = True
    timeout: float = Field(default=60.0, gt=0.0)


def _retry_after(value: Optional[str]) -> float:
    try:
        return float(value) if value is not None else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER


class LlmClient:
    """Provider-aware wrapper around a single httpx.AsyncClient.

    Args:
        provider: Which API dialect to speak.
        base_url: Overrides the provider's default endpoint.
        api_key: Falls back to the provider's environment variable.
        model: Overrides the provider's default chat model.
        cache: Response cache; defaults to the process-wide cache.
        cost_tracker: Usage accumulator; defaults to the process-wide tracker.
        transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
        timeout: Default request timeout in seconds.
    """

    def __init__(
        self,
        provider: LlmProvider = LlmProvider.OPENAI,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        cache: Optional[Cache] = None,
        cost_tracker: Optional[CostTracker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ):
        self.provider = LlmProvider(provider)
        default_url, default_model, self.embedding_model = PROVIDER_DEFAULTS[self.provider]
        self.base_url = (base_url or default_url).rstrip("/")
        self.model = model or default_model
        env_var = API_KEY_ENV.get(self.provider)
        self.api_key = api_key if api_key is not None else (os.environ.get(env_var, "") if env_var else "")
        self.cache = cache if cache is not None else global_cache
        self.cost_tracker = cost_tracker if cost_tracker is not None else global_cost_tracker
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=self._headers(), timeout=timeout, transport=transport)

    async def __aenter__(self) -> "LlmClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider == LlmProvider.ANTHROPIC:
            headers["anthropic-version"] = ANTHROPIC_VERSION
            if self.api_key:
                headers["x-api-key"] = self.api_key
        elif self.provider != LlmProvider.GOOGLE and self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7) -> str:
        return await self.chat_with_options(messages, LlmOptions(temperature=temperature))

    async def generate(self, prompt: str, temperature: float = 0.7) -> str:
        return await self.chat([{"role": "user", "content": prompt}], temperature)

    async def chat_with_options(self, messages: List[Dict[str, str]], options: LlmOptions) -> str:
        key = compute_key(
            self.provider.value, self.model, json.dumps(messages, sort_keys=True),
            options.temperature, options.max_tokens, options.top_p,
        )
        if options.use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("llm_cache_hit", provider=self.provider.value, model=self.model)
                return cached

        path, body, params = self._chat_request(messages, options)
        with span("llm_chat", provider=self.provider.value, model=self.model):
            logger.info("llm_request", provider=self.provider.value, model=self.model, messages=len(messages))
            data = await self._post(path, body, params, options.timeout)
            text, input_tokens, output_tokens = self._parse_chat(data, messages)

        self.cost_tracker.track_usage(self.model, input_tokens, output_tokens)
        record_metric("llm_input_tokens", input_tokens, provider=self.provider.value, model=self.model)
        record_metric("llm_output_tokens", output_tokens, provider=self.provider.value, model=self.model)
        if options.use_cache:
            self.cache.set(key, text)
        return text

    def _chat_request(self, messages, options) -> Tuple[str, Dict[str, Any], Optional[Dict[str, str]]]:
        if self.provider == LlmProvider.ANTHROPIC:
            system = "\n".join(m["content"] for m in messages if m.get("role") == "system")
            body: Dict[str, Any] = {
                "model": self.model,
                "messages": [m for m in messages if m.get("role") != "system"],
                "max_tokens": options.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
                "temperature": options.temperature,
            }
            if system:
                body["system"] = system
            if options.top_p is not None:
                body["top_p"] = options.top_p
            return "/messages", body, None

        if self.provider == LlmProvider.GOOGLE:
            config: Dict[str, Any] = {"temperature": options.temperature}
            if options.max_tokens is not None:
                config["maxOutputTokens"] = options.max_tokens
            if options.top_p is not None:
                config["topP"] = options.top_p
            body = {
                "contents": [
                    {"role": "model" if m.get("role") == "assistant" else "user", "parts": [{"text": m["content"]}]}
                    for m in messages if m.get("role") != "system"
                ],
                "generationConfig": config,
            }
            system = "\n".join(m["content"] for m in messages if m.get("role") == "system")
            if system:
                body["systemInstruction"] = {"parts": [{"text": system}]}
            return f"/models/{self.model}:generateContent", body, {"key": self.api_key}

        body = {"model": self.model, "messages": messages, "temperature": options.temperature}
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            body["top_p"] = options.top_p
        return "/chat/completions", body, None

    def _parse_chat(self, data: Dict[str, Any], messages) -> Tuple[str, int, int]:
        """Extract (text, input_tokens, output_tokens), estimating tokens when usage is absent."""
        try:
            if self.provider == LlmProvider.ANTHROPIC:
                text = "".join(block.get("text", "") for block in data["content"] if block.get("type", "text") == "text")
                usage = data.get("usage") or {}
                input_tokens, output_tokens = usage.get("input_tokens"), usage.get("output_tokens")
            elif self.provider == LlmProvider.GOOGLE:
                text = "".join(part.get("text", "") for part in data["candidates"][0]["content"]["parts"])
                usage = data.get("usageMetadata") or {}
                input_tokens, output_tokens = usage.get("promptTokenCount"), usage.get("candidatesTokenCount")
            else:
                text = data["choices"][0]["message"]["content"] or ""
                usage = data.get("usage") or {}
                input_tokens, output_tokens = usage.get("prompt_tokens"), usage.get("completion_tokens")
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected {self.provider.value} response shape: {e}", provider=self.provider.value,
                           response_body=json.dumps(data)[:1000]) from e
        if input_tokens is None:
            input_tokens = estimate_tokens("".join(m.get("content", "") for m in messages))
        if output_tokens is None:
            output_tokens = estimate_tokens(text)
        return text, int(input_tokens), int(output_tokens)

    async def embeddings(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Embed ``texts`` in order. Only OpenAI-compatible providers expose embeddings."""
        model = model or self.embedding_model
        if model is None:
            raise LLMError(f"Embeddings are not supported for provider '{self.provider.value}'", provider=self.provider.value)

        keys = [compute_key("embedding", self.provider.value, model, text) for text in texts]
        vectors: List[Optional[List[float]]] = [self.cache.get(k) for k in keys]
        missing = [i for i, v in enumerate(vectors) if v is None]
        if not missing:
            logger.debug("llm_embeddings_cache_hit", provider=self.provider.value, model=model, count=len(texts))
            return vectors

        with span("llm_embeddings", provider=self.provider.value, model=model):
            data = await self._post("/embeddings", {"model": model, "input": [texts[i] for i in missing]}, None, None)
            try:
                rows = sorted(data["data"], key=lambda row: row.get("index", 0))
                fetched = [row["embedding"] for row in rows]
            except (KeyError, TypeError) as e:
                raise LLMError(f"Unexpected embeddings response shape: {e}", provider=self.provider.value,
                               response_body=json.dumps(data)[:1000]) from e
        if len(fetched) != len(missing):
            raise LLMError(f"Expected {len(missing)} embeddings, got {len(fetched)}", provider=self.provider.value)

        for i, vector in zip(missing, fetched):
            vectors[i] = vector
            self.cache.set(keys[i], vector, ttl=EMBEDDING_TTL)
        record_metric("llm_embedded_texts", len(missing), provider=self.provider.value, model=model)
        return vectors

    async def _post(self, path: str, body: Dict[str, Any], params: Optional[Dict[str, str]], timeout: Optional[float]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"json": body}
        if params:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.post(path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("llm_request_failed", provider=self.provider.value, path=path, error=str(e))
            raise LLMError(f"Request to {self.provider.value} failed: {e}", provider=self.provider.value) from e

        if response.status_code == 429:
            retry_after = _retry_after(response.headers.get("Retry-After"))
            logger.warning("llm_rate_limited", provider=self.provider.value, retry_after=retry_after)
            raise RateLimitError(f"Rate limited by {self.provider.value}", provider=self.provider.value,
                                 retry_after=retry_after, response_body=response.text)
        if response.status_code >= 400:
            raise LLMError(f"{self.provider.value} returned HTTP {response.status_code}", provider=self.provider.value,
                           status_code=response.status_code, response_body=response.text)
        try:
            return response.json()
        except ValueError as e:
            raise LLMError(f"Invalid JSON from {self.provider.value}", provider=self.provider.value,
                           status_code=response.status_code, response_body=response.text) from e
