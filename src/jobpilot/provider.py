"""LM provider: Anthropic Messages API over httpx, plus the bounded call.

``AnthropicProvider`` speaks the wire protocol and classifies failures:
a size rejection becomes ContextOverflowError, anything else ProviderError.
Rate limits, overload and network errors are retried with backoff.

``call_with_budget`` is what the job loop uses. It fits the conversation
with the token guard, calls the provider, and on a size rejection shrinks
the output budget by 30% and tightens the guard before trying again.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jobpilot.config import ProviderConfig
from jobpilot.conversation import ToolCall, text_in, to_provider_messages, tool_calls_in
from jobpilot.errors import ContextBudgetExhaustedError, ContextOverflowError, ProviderError
from jobpilot.token_guard import GuardResult, TokenBudgetGuard

logger = logging.getLogger(__name__)

MIN_OUTPUT_TOKENS = 1000
OUTPUT_REDUCTION = 0.7
OVERFLOW_TIGHTEN_TOKENS = 2000
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504, 529}

OVERFLOW_PATTERN = re.compile(
    r"prompt is too long|context (window|limit|length)|exceeds? (the )?(context|maximum)|"
    r"too many (input )?tokens|max_tokens.*exceed",
    re.IGNORECASE,
)


@dataclass
class LMResponse:
    """One assistant turn from the provider."""

    content: list[dict]
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def text(self) -> str:
        return text_in(self.content)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return tool_calls_in(self.content)


class LMProvider(Protocol):
    async def complete(
        self,
        *,
        system: str,
        messages: list[dict],
        tools: list[dict],
        max_tokens: int,
    ) -> LMResponse: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ContextOverflowError):
        return False
    return isinstance(exc, ProviderError) and (
        exc.status_code is None or exc.status_code in RETRYABLE_STATUS
    )


class AnthropicProvider:
    """Messages API client."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url, timeout=config.request_timeout
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.api_version,
            "content-type": "application/json",
        }

    async def complete(
        self,
        *,
        system: str,
        messages: list[dict],
        tools: list[dict],
        max_tokens: int,
    ) -> LMResponse:
        payload: dict = {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "messages": to_provider_messages(messages),
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(max(1, self.config.transient_max_attempts)),
            wait=wait_exponential(multiplier=self.config.backoff_seconds, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                data = await self._post(payload)

        usage = data.get("usage") or {}
        return LMResponse(
            content=data.get("content") or [],
            stop_reason=data.get("stop_reason"),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            model=data.get("model", self.config.model),
            raw=data,
        )

    async def _post(self, payload: dict) -> dict:
        try:
            response = await self._client.post("/v1/messages", json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise ProviderError(f"Transport error: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            if response.status_code in (400, 413) and OVERFLOW_PATTERN.search(message):
                raise ContextOverflowError(message, response.status_code)
            raise ProviderError(
                f"Provider returned {response.status_code}: {message}", response.status_code
            )
        return response.json()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message", str(error))
    return str(body)


async def call_with_budget(
    provider: LMProvider,
    guard: TokenBudgetGuard,
    *,
    system: str,
    messages: list[dict],
    tools: list[dict],
    max_tokens: int,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
) -> tuple[LMResponse, GuardResult]:
    """Fit, call, and recover from provider size rejections.

    Raises ContextBudgetExhaustedError once ``max_attempts`` size
    rejections have happened. UnreducibleOverflowError from the guard is
    not retried.
    """
    state = {"max_tokens": max_tokens, "guard": guard}
    log_retry = before_sleep_log(logger, logging.WARNING)

    def shrink(retry_state: RetryCallState) -> None:
        state["max_tokens"] = max(MIN_OUTPUT_TOKENS, int(state["max_tokens"] * OUTPUT_REDUCTION))
        state["guard"] = state["guard"].tighten(OVERFLOW_TIGHTEN_TOKENS)
        log_retry(retry_state)
        logger.warning(
            "Context overflow, retrying with max_tokens=%d and budget=%d",
            state["max_tokens"],
            state["guard"].max_context_tokens,
        )

    bounded: GuardResult | None = None
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ContextOverflowError),
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_exponential(multiplier=backoff_seconds, max=30),
            before_sleep=shrink,
            reraise=True,
        ):
            with attempt:
                bounded = state["guard"].fit(messages, system)
                response = await provider.complete(
                    system=system,
                    messages=bounded.messages,
                    tools=tools,
                    max_tokens=state["max_tokens"],
                )
    except ContextOverflowError as e:
        raise ContextBudgetExhaustedError(
            f"Provider rejected the request for size {max_attempts} times: {e}"
        ) from e
    return response, bounded
