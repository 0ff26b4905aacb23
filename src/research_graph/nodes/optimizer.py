"""Query optimization stage.

Turns a free-form topic into one focused search query, a refined research
prompt, a short explanation and a suggested report outline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from research_graph.exceptions import MalformedResponseError
from research_graph.retry import RetryPolicy
from research_graph.structured import extract_object

if TYPE_CHECKING:
    from research_graph.models import ModelService

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Structured output schema
# ---------------------------------------------------------------------------


class OptimizedQuery(BaseModel):
    """Result of optimizing a research topic."""

    query: str = Field(min_length=1, description="Focused web search query.")
    optimized_prompt: str = Field(
        alias="optimizedPrompt",
        description="Refined research prompt used for ranking and synthesis.",
    )
    explanation: str = Field(default="", description="Why the query was chosen.")
    suggested_structure: list[str] = Field(
        default_factory=list,
        alias="suggestedStructure",
        description="Suggested report section titles.",
    )

    model_config = ConfigDict(populate_by_name=True)


TEST_OPTIMIZATION = OptimizedQuery(
    query="test",
    optimized_prompt=(
        "Analyze and compare different research methodologies, focusing on "
        "scientific rigor, peer review processes, and validation techniques"
    ),
    explanation="Test optimization strategy",
    suggested_structure=["Test Structure 1", "Test Structure 2", "Test Structure 3"],
)


def is_test_topic(topic: str) -> bool:
    return topic.strip().lower() == "test"


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_OPTIMIZE_PROMPT = """\
You are a research assistant. Optimize the following research topic into a
single focused web search query and a detailed research prompt.

Topic: {topic}

Respond with ONLY a JSON object in this format:
{{"query": "<search query>", "optimizedPrompt": "<research prompt>", \
"explanation": "<why this query>", \
"suggestedStructure": ["<section 1>", "<section 2>", "<section 3>"]}}
"""


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


async def optimize_query(
    topic: str,
    model: ModelService,
    platform_model: str,
    retry: RetryPolicy | None = None,
) -> OptimizedQuery:
    """Optimize *topic* into a search query and research prompt.

    The literal topic ``"test"`` (any case) returns a fixed canned
    optimization without calling the Model Service.

    Args:
        topic: Free-form research topic.
        model: Model Service used for the completion.
        platform_model: Opaque ``"<provider>__<model>"`` selector.
        retry: Retry policy for the remote call.

    Returns:
        The validated :class:`OptimizedQuery`.

    Raises:
        MalformedResponseError: If the completion cannot be decoded.
    """
    if is_test_topic(topic):
        logger.info("optimize_test_bypass")
        return TEST_OPTIMIZATION.model_copy(deep=True)

    policy = retry or RetryPolicy()
    prompt = _OPTIMIZE_PROMPT.format(topic=topic)
    text = await policy.run(lambda: model.complete(prompt, platform_model))

    data = extract_object(text)
    try:
        result = OptimizedQuery.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError(f"Invalid optimizer response: {exc}") from exc

    logger.info(
        "optimize_complete",
        query=result.query,
        sections=len(result.suggested_structure),
    )
    return result
