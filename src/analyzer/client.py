"""
Claude API Client for Insight Generation

Thin async wrapper around the Anthropic SDK with token usage tracking.
SDK failures are mapped onto AnalysisError subclasses so callers can tell
"try again later" apart from "not configured / down".
"""

import os
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass

import anthropic

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Insight generation failed."""


class AnalysisUnavailableError(AnalysisError):
    """Generator not configured, unreachable, timed out or erroring server-side."""


class AnalysisRateLimitedError(AnalysisError):
    """Generator is throttling requests."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class TokenUsage:
    """Track token usage for cost calculation."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost(self) -> float:
        """Estimate cost based on Claude Sonnet 4 pricing."""
        # $3/1M input, $15/1M output
        input_cost = (self.input_tokens / 1_000_000) * 3.0
        output_cost = (self.output_tokens / 1_000_000) * 15.0
        return input_cost + output_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": round(self.estimated_cost, 6),
        }


@dataclass
class AnalysisResponse:
    """Response from Claude analysis."""
    content: str
    usage: TokenUsage
    model: str
    stop_reason: Optional[str]


class ClaudeClient:
    """
    Async client for Claude API.

    Usage:
        client = ClaudeClient(api_key="...")
        response = await client.analyze(prompt, system=SYSTEM_PROMPT)
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    MAX_TOKENS = 4000
    TEMPERATURE = 0.3

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60.0,
    ):
        """
        Initialize Claude client.

        Args:
            api_key: Anthropic API key (defaults to env var)
            model: Model to use (defaults to Sonnet 4)
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise AnalysisUnavailableError("ANTHROPIC_API_KEY not provided")

        self.model = model or self.DEFAULT_MODEL
        # Retries are left to the caller; a rate limit must surface as such
        self.async_client = anthropic.AsyncAnthropic(
            api_key=self.api_key,
            timeout=timeout,
            max_retries=0,
        )

        # Track cumulative usage
        self.total_usage = TokenUsage()
        self.call_count = 0

    async def analyze(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
    ) -> AnalysisResponse:
        """
        Send analysis prompt to Claude.

        Args:
            prompt: User prompt
            system: System prompt
            max_tokens: Maximum output tokens
            temperature: Sampling temperature

        Returns:
            AnalysisResponse with content and usage

        Raises:
            AnalysisRateLimitedError, AnalysisUnavailableError, AnalysisError
        """
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self.async_client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            logger.warning(f"Claude rate limited: {e}")
            retry_after = None
            headers = getattr(getattr(e, "response", None), "headers", None) or {}
            if headers.get("retry-after"):
                try:
                    retry_after = float(headers["retry-after"])
                except ValueError:
                    retry_after = None
            raise AnalysisRateLimitedError("Insight generator is rate limited", retry_after) from e
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            logger.error(f"Claude credentials rejected: {e}")
            raise AnalysisUnavailableError("Insight generator credentials were rejected") from e
        except (anthropic.APITimeoutError, anthropic.APIConnectionError) as e:
            logger.error(f"Claude unreachable: {e}")
            raise AnalysisUnavailableError("Insight generator is unreachable") from e
        except anthropic.InternalServerError as e:
            logger.error(f"Claude server error: {e}")
            raise AnalysisUnavailableError("Insight generator is unavailable") from e
        except anthropic.APIError as e:
            logger.error(f"Claude API error: {e}")
            raise AnalysisError(f"Insight generation failed: {e}") from e

        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text

        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        self.total_usage.input_tokens += usage.input_tokens
        self.total_usage.output_tokens += usage.output_tokens
        self.call_count += 1

        logger.info(
            f"Claude call: {usage.input_tokens} in, {usage.output_tokens} out, "
            f"${usage.estimated_cost:.4f}"
        )

        return AnalysisResponse(
            content=content,
            usage=usage,
            model=self.model,
            stop_reason=response.stop_reason,
        )

    def get_usage_summary(self) -> Dict[str, Any]:
        """Get summary of all API usage."""
        return {
            "total_calls": self.call_count,
            "input_tokens": self.total_usage.input_tokens,
            "output_tokens": self.total_usage.output_tokens,
            "total_tokens": self.total_usage.total_tokens,
            "estimated_cost": self.total_usage.estimated_cost,
        }
