"""Shared pytest fixtures for the research-graph test suite."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

from research_graph.config import Settings
from research_graph.graph import ResearchGraph
from research_graph.retry import RetryPolicy

if TYPE_CHECKING:
    from pathlib import Path

# ---------------------------------------------------------------------------
# Model Service double
# ---------------------------------------------------------------------------


class FakeModel:
    """In-memory Model Service that replays queued responses.

    Queued exceptions are raised instead of returned. Every call is
    recorded as ``(prompt, platform_model)``.
    """

    def __init__(self) -> None:
        self.responses: list[str | BaseException] = []
        self.calls: list[tuple[str, str]] = []

    def queue(self, *responses: str | BaseException | dict[str, Any]) -> FakeModel:
        for response in responses:
            if isinstance(response, dict):
                response = json.dumps(response)
            self.responses.append(response)
        return self

    async def complete(self, prompt: str, platform_model: str) -> str:
        self.calls.append((prompt, platform_model))
        if not self.responses:
            raise AssertionError(f"Unexpected model call: {prompt[:80]!r}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


REPORT_JSON: dict[str, Any] = {
    "title": "Research Methods Compared",
    "summary": "A short comparison of research methodologies.",
    "sections": [
        {"title": "Peer Review", "content": "Peer review catches errors."},
        {"title": "Replication", "content": "Replication confirms findings."},
    ],
}

FOLLOW_UP_JSON: dict[str, Any] = {
    "searchTerms": [
        "open peer review outcomes",
        "replication crisis psychology",
        "preregistration adoption rates",
    ]
}


@pytest.fixture()
def fake_model() -> FakeModel:
    """A Model Service double with an empty response queue."""
    return FakeModel()


@pytest.fixture()
def report_json() -> dict[str, Any]:
    return json.loads(json.dumps(REPORT_JSON))


@pytest.fixture()
def follow_up_json() -> dict[str, Any]:
    return json.loads(json.dumps(FOLLOW_UP_JSON))


# ---------------------------------------------------------------------------
# Configuration and graph fixtures
# ---------------------------------------------------------------------------


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def retry() -> RetryPolicy:
    """Retry policy that never actually waits."""
    return RetryPolicy(max_attempts=3, base_delay=0.01, sleep=_no_sleep)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with an isolated project directory and instant retries."""
    return Settings.load(
        persistence={"directory": tmp_path / "projects", "debounce_seconds": 0.01},
        retry={"max_attempts": 3, "base_delay": 0.0},
        model={"platform_model": "google__gemini-flash"},
    )


@pytest.fixture()
def graph() -> ResearchGraph:
    return ResearchGraph()
