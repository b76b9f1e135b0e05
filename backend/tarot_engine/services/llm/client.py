import asyncio
import json
import logging
import random
import weakref
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from tarot_engine.core.errors import AIProviderError, LLMDisabledError
from tarot_engine.core.settings import Settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504}


def _estimate_tokens_from_text(text: str) -> int:
    s = text or ""
    if not s:
        return 0
    return max(1, int(len(s) / 4))


def _estimate_tokens_from_messages(messages: list[dict[str, Any]]) -> int:
    total = 0
    for m in messages or []:
        c = m.get("content")
        if isinstance(c, str):
            total += _estimate_tokens_from_text(c)
        else:
            total += _estimate_tokens_from_text(json.dumps(c, ensure_ascii=False, default=str))
    return total


class OpenAICompatibleLLM:
    """Chat-completions client for OpenAI-compatible providers (OpenRouter, OpenAI, ...).

    ``invoke`` takes chat messages and returns the first choice's text. Calls
    are bounded by a per-event-loop semaphore and retried with exponential
    backoff on connection errors and retryable HTTP statuses.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None,
        model: str,
        temperature: float,
        *,
        concurrency: int = 10,
        max_retries: int = 2,
        retry_base_s: float = 0.7,
        timeout_s: float = 60.0,
        json_mode: bool = True,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        if extra_headers:
            kwargs["default_headers"] = extra_headers
        self._http_client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            timeout=httpx.Timeout(timeout_s),
        )
        kwargs["http_client"] = self._http_client
        self._client = AsyncOpenAI(**kwargs)
        self._model = model
        self._temperature = temperature
        self._concurrency = max(1, int(concurrency))
        self._max_retries = max(1, int(max_retries))
        self._retry_base_s = float(retry_base_s)
        self._json_mode = json_mode
        self._semaphores: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = (
            weakref.WeakKeyDictionary()
        )

    @property
    def model(self) -> str:
        return self._model

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        sem = self._semaphores.get(loop)
        if sem is None:
            sem = asyncio.Semaphore(self._concurrency)
            self._semaphores[loop] = sem
        return sem

    def _backoff_s(self, attempt: int) -> float:
        sleep_s = self._retry_base_s * (2 ** (attempt - 1)) + random.random() * 0.25
        return min(15.0, sleep_s)

    def _build_kwargs(self, messages: list[dict[str, Any]], *, include_response_format: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
        }
        if self._json_mode and include_response_format:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    async def invoke(self, messages: list[dict[str, Any]], *, purpose: str = "reading") -> str:
        async with self._get_semaphore():
            last_err: Exception | None = None
            include_response_format = True
            attempt = 0

            while attempt < self._max_retries:
                attempt += 1
                try:
                    response = await self._client.chat.completions.create(
                        **self._build_kwargs(messages, include_response_format=include_response_format)
                    )
                except APIStatusError as e:
                    status = getattr(e, "status_code", None)
                    if status == 402:
                        raise LLMDisabledError("provider reports insufficient credits", details={"status": status}) from e
                    if status == 400 and include_response_format and "response_format" in str(e).lower():
                        # provider does not support JSON mode; retry once without it
                        include_response_format = False
                        attempt -= 1
                        last_err = e
                        continue
                    if status in RETRYABLE_STATUSES and attempt < self._max_retries:
                        logger.warning(
                            "llm.retry model=%s purpose=%s attempt=%s status=%s", self._model, purpose, attempt, status
                        )
                        last_err = e
                        await asyncio.sleep(self._backoff_s(attempt))
                        continue
                    raise AIProviderError(f"provider returned HTTP {status}", details={"status": status}) from e
                except (APIConnectionError, APITimeoutError, RateLimitError) as e:
                    if attempt < self._max_retries:
                        logger.warning(
                            "llm.retry model=%s purpose=%s attempt=%s error=%s",
                            self._model,
                            purpose,
                            attempt,
                            type(e).__name__,
                        )
                        last_err = e
                        await asyncio.sleep(self._backoff_s(attempt))
                        continue
                    raise AIProviderError(f"provider unreachable: {type(e).__name__}") from e

                usage = getattr(response, "usage", None)
                logger.info(
                    "llm.request_done model=%s purpose=%s messages=%s est_prompt_tokens=%s prompt_tokens=%s completion_tokens=%s total_tokens=%s",
                    self._model,
                    purpose,
                    len(messages or []),
                    _estimate_tokens_from_messages(messages),
                    getattr(usage, "prompt_tokens", None),
                    getattr(usage, "completion_tokens", None),
                    getattr(usage, "total_tokens", None),
                )
                choices = getattr(response, "choices", None) or []
                if not choices:
                    raise AIProviderError("provider returned no choices")
                content = getattr(choices[0].message, "content", None)
                if not content:
                    raise AIProviderError("provider returned an empty message")
                return content

            raise AIProviderError(f"provider call failed after {self._max_retries} attempts") from last_err

    async def aclose(self) -> None:
        await self._client.close()


def _build_client(
    settings: Settings,
    *,
    api_key: str,
    base_url: str | None,
    model: str,
    timeout_s: float | None,
) -> OpenAICompatibleLLM:
    extra_headers: dict[str, str] = {}
    if base_url and "openrouter.ai" in base_url:
        if settings.openrouter_site_url:
            extra_headers["HTTP-Referer"] = settings.openrouter_site_url
        if settings.openrouter_app_name:
            extra_headers["X-Title"] = settings.openrouter_app_name
    return OpenAICompatibleLLM(
        api_key=api_key,
        base_url=base_url,
        model=model,
        temperature=settings.llm_temperature,
        concurrency=settings.llm_concurrency,
        max_retries=settings.llm_max_retries,
        retry_base_s=settings.llm_retry_base_s,
        timeout_s=timeout_s or settings.generation_timeout_s,
        extra_headers=(extra_headers or None),
    )


def get_llm_client(settings: Settings, *, timeout_s: float | None = None) -> OpenAICompatibleLLM:
    if settings.llm_api_key is None:
        raise LLMDisabledError("LLM is not configured")

    model = settings.llm_model
    if not model:
        raise LLMDisabledError(
            "LLM model is not configured. Set the LLM_MODEL (or OPENROUTER_MODEL) environment variable."
        )
    return _build_client(
        settings,
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=model,
        timeout_s=timeout_s,
    )


def get_fallback_llm_client(settings: Settings, *, timeout_s: float | None = None) -> OpenAICompatibleLLM | None:
    """Second provider tried once the main one gives up; None when not configured."""
    if not settings.fallback_llm_configured:
        return None
    return _build_client(
        settings,
        api_key=settings.fallback_llm_api_key,
        base_url=settings.fallback_llm_base_url,
        model=settings.fallback_llm_model,
        timeout_s=timeout_s,
    )
