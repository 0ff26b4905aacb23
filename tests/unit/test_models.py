"""Unit tests for research_graph.models - platform model routing via litellm."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from research_graph.config import ModelSettings
from research_graph.exceptions import (
    MalformedResponseError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from research_graph.models import ModelRouter, ModelSpec, parse_platform_model


def _completion(content: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


# ---------------------------------------------------------------------------
# TestParsePlatformModel
# ---------------------------------------------------------------------------


class TestParsePlatformModel:
    """Opaque ``provider__model`` selectors resolve to litellm model names."""

    def test_google_alias(self) -> None:
        spec = parse_platform_model("google__gemini-flash")
        assert spec == ModelSpec(provider="google", model_id="gemini-2.0-flash")
        assert spec.litellm_model == "gemini/gemini-2.0-flash"

    def test_openai_passthrough(self) -> None:
        assert parse_platform_model("openai__gpt-4o").litellm_model == "openai/gpt-4o"

    def test_deepseek_alias(self) -> None:
        spec = parse_platform_model("deepseek__chat")
        assert spec.litellm_model == "deepseek/deepseek-chat"

    def test_ollama_model_with_tag(self) -> None:
        spec = parse_platform_model("ollama__llama3.1:8b")
        assert spec.provider == "ollama"
        assert spec.model_id == "llama3.1:8b"

    def test_legacy_selector(self) -> None:
        spec = parse_platform_model("sonnet-3.5")
        assert spec.provider == "anthropic"
        assert spec.model_id == "claude-3-5-sonnet-latest"

    @pytest.mark.parametrize("selector", ["nope__model", "google__", "mystery-model", ""])
    def test_invalid(self, selector: str) -> None:
        with pytest.raises(UpstreamUnavailableError, match="Platform not enabled"):
            parse_platform_model(selector)


# ---------------------------------------------------------------------------
# TestModelRouter
# ---------------------------------------------------------------------------


class TestModelRouter:
    """Completions go through litellm and errors map onto the taxonomy."""

    def test_from_settings(self) -> None:
        router = ModelRouter.from_settings(
            ModelSettings(temperature=0.7, max_tokens=100, timeout=5)
        )
        assert router.temperature == 0.7
        assert router.max_tokens == 100
        assert router.timeout == 5

    @pytest.mark.asyncio()
    async def test_complete_sends_single_user_message(self) -> None:
        mock = AsyncMock(return_value=_completion("hello"))
        with patch("litellm.acompletion", mock):
            text = await ModelRouter(max_tokens=50).complete("Say hi", "openai__gpt-4o")

        assert text == "hello"
        kwargs = mock.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o"
        assert kwargs["messages"] == [{"role": "user", "content": "Say hi"}]
        assert kwargs["max_tokens"] == 50

    @pytest.mark.asyncio()
    async def test_rate_limit_mapped(self) -> None:
        error = RuntimeError("Error code: 429 - Resource exhausted")
        with (
            patch("litellm.acompletion", AsyncMock(side_effect=error)),
            pytest.raises(RateLimitedError),
        ):
            await ModelRouter().complete("p", "google__gemini-flash")

    @pytest.mark.asyncio()
    async def test_other_failure_mapped(self) -> None:
        with (
            patch("litellm.acompletion", AsyncMock(side_effect=RuntimeError("boom"))),
            pytest.raises(UpstreamUnavailableError, match="boom"),
        ):
            await ModelRouter().complete("p", "google__gemini-flash")

    @pytest.mark.asyncio()
    async def test_empty_completion(self) -> None:
        with (
            patch("litellm.acompletion", AsyncMock(return_value=_completion(""))),
            pytest.raises(MalformedResponseError, match="No response from model"),
        ):
            await ModelRouter().complete("p", "google__gemini-flash")

    @pytest.mark.asyncio()
    async def test_invalid_selector_makes_no_call(self) -> None:
        mock = AsyncMock()
        with (
            patch("litellm.acompletion", mock),
            pytest.raises(UpstreamUnavailableError),
        ):
            await ModelRouter().complete("p", "bogus__x")
        mock.assert_not_called()
