"""
Anthropic LLM client wrapper for schema-constrained generation.

Every AI step in the pipeline (classification, extraction, blending,
compilation, automation analysis) goes through `generate()`: a prompt from
the registry is rendered with its input variables, the model is forced to
answer through a single tool whose input schema is the prompt's Pydantic
output model, and the tool input is validated back into that model.

The wrapper provides:
- Automatic retry on transient errors (timeouts, rate limits, server errors)
- Structured logging of every call (tokens, cost, latency — never content)
- Token usage and cost tracking per call and per session

Usage:
    from ambient.llm.client import LLMClient

    client = LLMClient()
    output = await client.generate(
        registry.get(PromptKey.CLASSIFY),
        {"email_content": "...", "email_date": "2025-05-01", ...},
        purpose="classify",
    )
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import anthropic
from pydantic import BaseModel, ValidationError

from ambient.config import settings

if TYPE_CHECKING:
    from ambient.agent.prompts import PromptSpec

logger = logging.getLogger(__name__)

# Claude Sonnet 4 pricing (per 1M tokens) — update if model changes
PRICING = {
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
}
# Fallback pricing if model not in pricing table
DEFAULT_PRICING = {"input": 3.00, "output": 15.00}

# Name of the single tool the model is forced to call.
OUTPUT_TOOL_NAME = "record_output"


@dataclass
class LLMResult:
    """Result of a structured LLM call."""
    output: Optional[BaseModel]
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    cost: float
    latency_ms: int
    model: str


class LLMClient:
    """
    Wrapper around the async Anthropic client.

    Safe to share across concurrent tasks of one run: the only mutable state
    is the session counters, which are updated between awaits.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: int = 3,
        timeout_seconds: float = 60.0,
    ):
        self._api_key = api_key if api_key is not None else settings.anthropic_api_key
        self._model = model or settings.anthropic_model
        self._max_retries = max_retries
        self._timeout = timeout_seconds

        self._client = anthropic.AsyncAnthropic(
            api_key=self._api_key,
            timeout=self._timeout,
            max_retries=0,  # We handle retries ourselves for better logging
        )

        # Get pricing for this model
        self._pricing = PRICING.get(self._model, DEFAULT_PRICING)

        # Session-level cost tracking
        self.session_total_cost: float = 0.0
        self.session_total_input_tokens: int = 0
        self.session_total_output_tokens: int = 0
        self.session_call_count: int = 0

        logger.info(
            "llm_client.initialized",
            extra={
                "action": "llm_client.initialized",
                "model": self._model,
                "max_retries": self._max_retries,
                "timeout_seconds": self._timeout,
                "configured": self.configured,
            },
        )

    @property
    def configured(self) -> bool:
        """True when an API key is available."""
        return bool(self._api_key)

    async def generate(
        self,
        prompt: "PromptSpec",
        variables: dict[str, Any],
        purpose: Optional[str] = None,
    ) -> BaseModel:
        """
        Render a registry prompt and return the model's structured output.

        Args:
            prompt: The registry entry (templates, output schema, token limit).
            variables: Values for the prompt's placeholders.
            purpose: Label for logs. Defaults to the prompt key.

        Returns:
            An instance of `prompt.output_schema`.

        Raises:
            LLMError: On non-retryable API errors, exhausted retries, or an
                answer that does not validate against the schema.
        """
        result = await self.complete_structured(
            system=prompt.system,
            user=prompt.render(**variables),
            schema=prompt.output_schema,
            max_tokens=prompt.max_tokens,
            purpose=purpose or prompt.key.value,
        )
        return result.output

    async def complete_structured(
        self,
        system: str,
        user: str,
        schema: type[BaseModel],
        max_tokens: int,
        purpose: str = "unknown",
    ) -> LLMResult:
        """
        Send a tool-forced request and validate the answer against `schema`.

        Args:
            system: System prompt.
            user: Rendered user message.
            schema: Pydantic model describing the expected output.
            max_tokens: Max output tokens.
            purpose: What this call is for (e.g., "classify", "blend").
                     NEVER include email content in this field.
        """
        tool = {
            "name": OUTPUT_TOOL_NAME,
            "description": f"Record the {schema.__name__} result.",
            "input_schema": schema.model_json_schema(),
        }
        last_error = None

        for attempt in range(1, self._max_retries + 1):
            start = time.monotonic()
            try:
                response = await self._client.messages.create(
                    model=self._model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    tools=[tool],
                    tool_choice={"type": "tool", "name": OUTPUT_TOOL_NAME},
                )
            except (anthropic.APIStatusError, anthropic.APIConnectionError) as e:
                last_error = e
                wait = self._retry_wait(e, attempt, purpose, start)
                if wait:
                    await asyncio.sleep(wait)
                continue

            result = self._record_usage(response, start)
            result.output = self._parse_tool_output(response, schema, purpose)

            # Token counts and cost only, prompt and answer stay out of the logs
            logger.info(
                "llm.call.success",
                extra={
                    "action": "llm.call.success",
                    "purpose": purpose,
                    "attempt": attempt,
                    "model": self._model,
                    "input_tokens": result.input_tokens,
                    "output_tokens": result.output_tokens,
                    "cost_usd": round(result.cost, 6),
                    "latency_ms": result.latency_ms,
                    "session_total_cost_usd": round(self.session_total_cost, 4),
                    "session_call_count": self.session_call_count,
                },
            )
            return result

        logger.error(
            "llm.call.failed",
            extra={
                "action": "llm.call.failed",
                "purpose": purpose,
                "max_retries": self._max_retries,
                "error": str(last_error),
            },
        )
        raise LLMError(
            f"LLM call failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    def _retry_wait(self, error: Exception, attempt: int, purpose: str, start: float) -> float:
        """
        Seconds to wait before the next attempt.

        Timeouts retry immediately since the wait already happened. Rate
        limits, 5xx and connection failures back off exponentially. Any
        other status is permanent and raises LLMError.
        """
        fields = {"purpose": purpose, "attempt": attempt}
        backoff = min(2 ** attempt, 30)

        if isinstance(error, anthropic.APITimeoutError):
            event, wait = "llm.call.timeout", 0.0
            fields["latency_ms"] = int((time.monotonic() - start) * 1000)
            fields["timeout_seconds"] = self._timeout
        elif isinstance(error, anthropic.RateLimitError):
            event, wait = "llm.call.rate_limited", backoff
        elif isinstance(error, anthropic.APIStatusError) and error.status_code >= 500:
            event, wait = "llm.call.server_error", backoff
            fields["status_code"] = error.status_code
        elif isinstance(error, anthropic.APIStatusError):
            logger.error(
                "llm.call.client_error",
                extra={
                    "action": "llm.call.client_error",
                    "status_code": error.status_code,
                    "error": str(error),
                    **fields,
                },
            )
            raise LLMError(f"Anthropic API error (HTTP {error.status_code}): {error}") from error
        else:
            event, wait = "llm.call.connection_error", backoff
            fields["error"] = str(error)

        if wait:
            fields["wait_seconds"] = wait
        logger.warning(event, extra={"action": event, **fields})
        return wait

    def _record_usage(self, response, start: float) -> LLMResult:
        """Price the response and add it to the session counters."""
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        input_cost = (input_tokens / 1_000_000) * self._pricing["input"]
        output_cost = (output_tokens / 1_000_000) * self._pricing["output"]

        self.session_total_cost += input_cost + output_cost
        self.session_total_input_tokens += input_tokens
        self.session_total_output_tokens += output_tokens
        self.session_call_count += 1

        return LLMResult(
            output=None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            cost=input_cost + output_cost,
            latency_ms=int((time.monotonic() - start) * 1000),
            model=self._model,
        )

    @staticmethod
    def _parse_tool_output(response, schema: type[BaseModel], purpose: str) -> BaseModel:
        """Pull the forced tool call out of the response and validate it."""
        block = next(
            (b for b in response.content if getattr(b, "type", None) == "tool_use"),
            None,
        )
        if block is None:
            raise LLMError(f"Model returned no structured output for {purpose}")

        try:
            return schema.model_validate(block.input)
        except ValidationError as e:
            logger.error(
                "llm.call.schema_mismatch",
                extra={
                    "action": "llm.call.schema_mismatch",
                    "purpose": purpose,
                    "schema": schema.__name__,
                    "error_count": e.error_count(),
                },
            )
            raise LLMError(f"Output for {purpose} did not match {schema.__name__}") from e

    def get_session_stats(self) -> dict:
        """Get session-level usage statistics."""
        return {
            "total_cost_usd": round(self.session_total_cost, 4),
            "total_input_tokens": self.session_total_input_tokens,
            "total_output_tokens": self.session_total_output_tokens,
            "total_calls": self.session_call_count,
            "model": self._model,
        }

    def reset_session_stats(self) -> None:
        """Reset session-level counters."""
        self.session_total_cost = 0.0
        self.session_total_input_tokens = 0
        self.session_total_output_tokens = 0
        self.session_call_count = 0


class LLMError(Exception):
    """Raised when an LLM call fails after all retries or returns unusable output."""
    pass
