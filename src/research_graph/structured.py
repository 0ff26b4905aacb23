"""Best-effort recovery of structured (JSON) payloads from model output.

Model Service responses are opaque text. They are decoded by an ordered
chain of pure strategies, each ``str -> Any`` raising
:class:`StructuredDecodeError` on failure:

1. :func:`decode_strict` - the whole payload is JSON.
2. :func:`decode_fenced` - JSON inside a markdown code fence, after
   stripping common formatting artifacts.
3. :func:`decode_balanced` - the first balanced ``{...}`` / ``[...]``
   region that decodes, scanning string- and escape-aware.

Shape-checking callers scan every balanced region through
:func:`iter_balanced`, so a bracketed citation such as ``[1]`` ahead of
the real object does not end the search.

New heuristics are added by appending to :data:`DECODERS`.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from research_graph.exceptions import MalformedResponseError, StructuredDecodeError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_YAML_PIPE_RE = re.compile(r"\|\n")
_BLOCK_QUOTE_RE = re.compile(r"^\s*>", re.MULTILINE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}", "]"}

NO_STRUCTURED_RESULT = "No valid structured result found"


def clean_artifacts(text: str) -> str:
    """Strip YAML pipes, block-quote markers and trailing commas."""
    cleaned = _YAML_PIPE_RE.sub("\n", text)
    cleaned = _BLOCK_QUOTE_RE.sub("", cleaned)
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StructuredDecodeError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def decode_strict(text: str) -> Any:
    """Decode the whole payload as JSON."""
    return _loads(text.strip())


def decode_fenced(text: str) -> Any:
    """Decode the first fenced code block after artifact cleanup."""
    match = _FENCE_RE.search(text)
    if match is None:
        raise StructuredDecodeError("no fenced code block")
    return _loads(clean_artifacts(match.group(1)))


def _balanced_regions(text: str) -> Iterator[str]:
    stack: list[str] = []
    start = -1
    in_string = False
    escape_next = False

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char in _OPENERS:
            if not stack:
                start = i
            stack.append(_OPENERS[char])
        elif char in _CLOSERS and stack:
            if char != stack[-1]:
                # Mismatched bracket; abandon this region
                stack.clear()
                continue
            stack.pop()
            if not stack:
                yield text[start : i + 1]


def iter_balanced(text: str) -> Iterator[Any]:
    """Yield every balanced bracketed region that decodes, in order.

    Brackets inside quoted strings are ignored. Regions that fail to parse
    are skipped and scanning continues after them.
    """
    for region in _balanced_regions(text):
        try:
            yield _loads(clean_artifacts(region))
        except StructuredDecodeError:
            continue


def decode_balanced(text: str) -> Any:
    """Decode the first balanced bracketed region that parses."""
    for result in iter_balanced(text):
        return result
    raise StructuredDecodeError("no balanced region decodes")


DECODERS: tuple[Callable[[str], Any], ...] = (
    decode_strict,
    decode_fenced,
    decode_balanced,
)

# Strategies that can offer more than one candidate to shape-checking callers
_SCANNERS: dict[Callable[[str], Any], Callable[[str], Iterator[Any]]] = {
    decode_balanced: iter_balanced,
}


def _candidates(text: str, decoders: Sequence[Callable[[str], Any]]) -> Iterator[Any]:
    for decoder in decoders:
        scanner = _SCANNERS.get(decoder)
        if scanner is not None:
            yield from scanner(text)
            continue
        try:
            yield decoder(text)
        except StructuredDecodeError:
            continue


def extract_structured(
    text: str,
    decoders: Sequence[Callable[[str], Any]] = DECODERS,
) -> Any:
    """Run the decode chain and return the first successful result.

    Raises:
        MalformedResponseError: If every strategy fails.
    """
    for decoder in decoders:
        try:
            return decoder(text)
        except StructuredDecodeError:
            continue
    raise MalformedResponseError(NO_STRUCTURED_RESULT)


def extract_object(text: str) -> dict[str, Any]:
    """Like :func:`extract_structured` but require a JSON object.

    Candidates that decode to anything other than an object are skipped,
    including earlier balanced regions such as ``[1]``.
    """
    for result in _candidates(text, DECODERS):
        if isinstance(result, dict):
            return result
    raise MalformedResponseError(NO_STRUCTURED_RESULT)


# ---------------------------------------------------------------------------
# Report body shape
# ---------------------------------------------------------------------------


class SectionBody(BaseModel):
    title: str
    content: str


class ReportBody(BaseModel):
    """The ``{title, summary, sections}`` shape a synthesis must produce."""

    title: str = Field(min_length=1)
    summary: str
    sections: list[SectionBody]


def decode_report_body(
    text: str,
    decoders: Sequence[Callable[[str], Any]] = DECODERS,
) -> ReportBody:
    """Recover a well-formed report body from model output.

    Each candidate is validated against :class:`ReportBody`; one of the
    wrong shape is skipped and the next candidate is tried, so the balanced
    scan keeps going past regions like ``[1]``.

    Raises:
        MalformedResponseError: If no candidate yields a valid shape.
    """
    for candidate in _candidates(text, decoders):
        try:
            return ReportBody.model_validate(candidate)
        except ValidationError:
            continue
    raise MalformedResponseError(NO_STRUCTURED_RESULT)
