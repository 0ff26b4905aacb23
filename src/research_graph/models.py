"""Model Service adapter: resolves ``"<provider>__<model>"`` selectors.

Routes prompt completions to the provider named by an opaque platform
model selector using litellm for provider-agnostic access. Provider
failures are mapped onto the package error taxonomy so the retry
controller can recognise rate limiting.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from research_graph.exceptions import (
    MalformedResponseError,
    RateLimitedError,
    UpstreamUnavailableError,
    is_rate_limited,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SUPPORTED_PROVIDERS = frozenset({"google", "openai", "anthropic", "deepseek", "ollama"})

_PROVIDER_PREFIX: dict[str, str] = {
    "google": "gemini",
    "openai": "openai",
    "anthropic": "anthropic",
    "deepseek": "deepseek",
    "ollama": "ollama",
}

# Model aliases used by the selector values
_MODEL_ALIASES: dict[str, str] = {
    "gemini-flash": "gemini-2.0-flash",
    "gemini-flash-thinking": "gemini-2.0-flash-thinking-exp",
    "gemini-exp": "gemini-exp-1206",
    "chat": "deepseek-chat",
    "reasoner": "deepseek-reasoner",
    "sonnet-3.5": "claude-3-5-sonnet-latest",
    "haiku-3.5": "claude-3-5-haiku-latest",
}

# Bare selectors without a provider prefix
_LEGACY_SELECTORS: dict[str, tuple[str, str]] = {
    "gpt-4o": ("openai", "gpt-4o"),
    "o1-mini": ("openai", "o1-mini"),
    "o1": ("openai", "o1"),
    "sonnet-3.5": ("anthropic", "sonnet-3.5"),
    "haiku-3.5": ("anthropic", "haiku-3.5"),
}


class ModelSpec(BaseModel):
    """A resolved platform model selector."""

    provider: str = Field(description="google, openai, anthropic, deepseek, ollama.")
    model_id: str = Field(description="Provider-side model identifier.")

    @property
    def litellm_model(self) -> str:
        prefix = _PROVIDER_PREFIX[self.provider]
        return f"{prefix}/{self.model_id}"


def parse_platform_model(platform_model: str) -> ModelSpec:
    """Split an opaque ``"<provider>__<model>"`` selector.

    Args:
        platform_model: Selector such as ``"google__gemini-flash"`` or a
            bare legacy name such as ``"gpt-4o"``.

    Returns:
        The resolved :class:`ModelSpec`.

    Raises:
        UpstreamUnavailableError: If the provider is not supported.
    """
    if "__" in platform_model:
        provider, _, model = platform_model.partition("__")
    elif platform_model in _LEGACY_SELECTORS:
        provider, model = _LEGACY_SELECTORS[platform_model]
    else:
        raise UpstreamUnavailableError(
            f"Platform not enabled or invalid: {platform_model!r}"
        )

    if provider not in _SUPPORTED_PROVIDERS or not model:
        raise UpstreamUnavailableError(
            f"Platform not enabled or invalid: {platform_model!r}"
        )
    return ModelSpec(provider=provider, model_id=_MODEL_ALIASES.get(model, model))


class ModelService(Protocol):
    """Anything that turns a prompt into completion text."""

    async def complete(self, prompt: str, platform_model: str) -> str: ...


class ModelRouter:
    """litellm-backed :class:`ModelService`.

    Attributes:
        temperature: Sampling temperature passed to every call.
        max_tokens: Completion token ceiling.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout: int = 120,
    ) -> None:
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any) -> ModelRouter:
        return cls(
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
        )

    async def complete(self, prompt: str, platform_model: str) -> str:
        """Send *prompt* as a single user message and return the text.

        Raises:
            RateLimitedError: On an HTTP 429 from the provider.
            UpstreamUnavailableError: On any other provider failure.
            MalformedResponseError: If the completion is empty.
        """
        import litellm

        spec = parse_platform_model(platform_model)
        try:
            response = await litellm.acompletion(
                model=spec.litellm_model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=self.timeout,
            )
        except Exception as exc:
            if is_rate_limited(exc):
                raise RateLimitedError(
                    f"{spec.provider} rate limit exceeded: {exc}"
                ) from exc
            logger.warning(
                "model_invoke_failed",
                provider=spec.provider,
                model_id=spec.model_id,
                error=str(exc),
            )
            raise UpstreamUnavailableError(
                f"{spec.provider} request failed: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        content = response.choices[0].message.content
        if not content:
            raise MalformedResponseError("No response from model")

        logger.info(
            "model_invoke_success",
            provider=spec.provider,
            model_id=spec.model_id,
            chars=len(content),
        )
        return content
