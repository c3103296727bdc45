"""Small path expressions over decoded JSON documents.

Accepted syntaxes:

* JSONPath-like: ``$``, ``$.rawResponse.answer``, ``$.items[0].name``,
  ``$['doc type'].field``
* slash-delimited: ``/score/decisiondetails/0/approved_amount``
* bare dotted: ``answer.summary`` (treated as ``$.answer.summary``)

A numeric segment indexes into an array and any other segment indexes into an
object. Resolution failures raise :class:`PathResolutionError` describing the
segment that could not be followed.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from Claims_Pipeline.utils.errors import ProjectionSkipped

Segment = str | int

_BRACKET = re.compile(r"\[(?:'([^']*)'|\"([^\"]*)\"|(-?\d+))\]")
_MISSING = object()


class PathSyntaxError(ValueError):
    """The path text is not a valid expression."""


class PathResolutionError(ProjectionSkipped):
    """A path segment could not be followed in the document."""

    def __init__(self, path: str, segment: Segment | None, reason: str) -> None:
        super().__init__(
            f"Cannot resolve '{path}' at segment {segment!r}: {reason}",
            extra={"path": path, "segment": segment},
        )
        self.path = path
        self.segment = segment
        self.reason = reason


def _parse_dotted(body: str, text: str) -> list[Segment]:
    segments: list[Segment] = []
    position = 0
    length = len(body)
    while position < length:
        char = body[position]
        if char == ".":
            position += 1
            end = position
            while end < length and body[end] not in ".[":
                end += 1
            name = body[position:end]
            if not name:
                raise PathSyntaxError(f"Empty segment in path '{text}'")
            segments.append(name)
            position = end
        elif char == "[":
            match = _BRACKET.match(body, position)
            if match is None:
                raise PathSyntaxError(f"Malformed bracket segment in path '{text}'")
            single, double, index = match.groups()
            if index is not None:
                segments.append(int(index))
            else:
                segments.append(single if single is not None else double)
            position = match.end()
        else:
            raise PathSyntaxError(f"Unexpected character {char!r} in path '{text}'")
    return segments


@dataclass(frozen=True, slots=True)
class PathExpression:
    """Parsed path; an empty segment tuple addresses the whole document."""

    text: str
    segments: tuple[Segment, ...]

    @classmethod
    def parse(cls, text: str | None) -> PathExpression:
        raw = (text or "").strip()
        if raw in ("", "$", "/"):
            return cls(raw or "$", ())
        if raw.startswith("/"):
            parts = [part for part in raw.split("/") if part != ""]
            segments: list[Segment] = [int(part) if part.isdigit() else part for part in parts]
            return cls(raw, tuple(segments))
        if raw.startswith("$"):
            return cls(raw, tuple(_parse_dotted(raw[1:], raw)))
        return cls(raw, tuple(_parse_dotted("." + raw, raw)))

    def resolve(self, document: Any) -> Any:
        current = document
        for segment in self.segments:
            current = self._step(current, segment)
        return current

    def _step(self, current: Any, segment: Segment) -> Any:
        if isinstance(segment, int):
            if isinstance(current, list):
                if -len(current) <= segment < len(current):
                    return current[segment]
                raise PathResolutionError(self.text, segment, "index out of range")
            if isinstance(current, Mapping) and str(segment) in current:
                return current[str(segment)]
            raise PathResolutionError(
                self.text, segment, f"expected array, found {type(current).__name__}"
            )
        if isinstance(current, Mapping):
            if segment in current:
                return current[segment]
            raise PathResolutionError(self.text, segment, "key not present")
        raise PathResolutionError(
            self.text, segment, f"expected object, found {type(current).__name__}"
        )

    def __str__(self) -> str:
        return self.text


def resolve_path(document: Any, path: str | PathExpression, default: Any = _MISSING) -> Any:
    """Resolve ``path`` against ``document``.

    When ``default`` is given it is returned instead of raising on a miss.
    """
    expression = path if isinstance(path, PathExpression) else PathExpression.parse(path)
    try:
        return expression.resolve(document)
    except PathResolutionError:
        if default is _MISSING:
            raise
        return default


def set_dotted(target: dict[str, Any], path: str, value: Any) -> None:
    """Set ``value`` at dotted ``path``, creating intermediate objects.

    >>> body = {}
    >>> set_dotted(body, "claim.amount.total", 10)
    >>> body
    {'claim': {'amount': {'total': 10}}}
    """
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


__all__ = [
    "PathExpression",
    "PathResolutionError",
    "PathSyntaxError",
    "resolve_path",
    "set_dotted",
]
