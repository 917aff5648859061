"""Prometheus-style label matchers.

Supports the four matcher operators (``=``, ``!=``, ``=~``, ``!~``) and
parsing of selector strings such as ``up{job=~"api.*",env!="dev"}``.
Regular expressions are fully anchored, as in PromQL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from ..errors import ConfigurationError


class MatchType(str, Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"


METRIC_NAME_LABEL = "__name__"

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*")
_MATCHER_RE = re.compile(
    r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)\s*"((?:[^"\\]|\\.)*)"\s*'
)


@dataclass(frozen=True)
class LabelMatcher:
    """Match a single label against a value or an anchored regex."""

    name: str
    type: MatchType
    value: str
    _pattern: re.Pattern | None = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "type", MatchType(self.type))
        if self.type in (MatchType.REGEX, MatchType.NOT_REGEX):
            try:
                pattern = re.compile(f"^(?:{self.value})$")
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid regex for label {self.name!r}: {self.value!r} ({e})"
                ) from e
            object.__setattr__(self, "_pattern", pattern)

    def matches(self, value: str | None) -> bool:
        """Match a label value; a missing label behaves as the empty string."""
        value = "" if value is None else value
        if self.type is MatchType.EQUAL:
            return value == self.value
        if self.type is MatchType.NOT_EQUAL:
            return value != self.value
        matched = self._pattern.match(value) is not None
        return matched if self.type is MatchType.REGEX else not matched

    def __str__(self) -> str:
        escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{self.name}{self.type.value}"{escaped}"'


def matches_all(matchers: tuple[LabelMatcher, ...], labels: Mapping[str, str]) -> bool:
    return all(m.matches(labels.get(m.name)) for m in matchers)


def format_selector(matchers: tuple[LabelMatcher, ...]) -> str:
    """Render matchers as a PromQL selector, ``{a="b",c=~"d"}``."""
    return "{" + ",".join(str(m) for m in matchers) + "}"


def parse_selector(selector: str) -> tuple[LabelMatcher, ...]:
    """Parse ``metric{label="value",...}`` into matchers.

    Args:
        selector: Series selector; the metric name and the braces are each
            optional, but at least one matcher must result

    Returns:
        Tuple of matchers, metric name first when given
    """
    text = selector.strip()
    matchers: list[LabelMatcher] = []

    name_match = _NAME_RE.match(text)
    if name_match:
        matchers.append(LabelMatcher(METRIC_NAME_LABEL, MatchType.EQUAL, name_match.group(0)))
        text = text[name_match.end():].strip()

    if text:
        if not (text.startswith("{") and text.endswith("}")):
            raise ConfigurationError(f"Invalid series selector: {selector!r}")
        body = text[1:-1].strip()
        pos = 0
        while pos < len(body):
            m = _MATCHER_RE.match(body, pos)
            if m is None:
                raise ConfigurationError(f"Invalid series selector: {selector!r}")
            name, op, raw = m.groups()
            value = re.sub(r"\\(.)", r"\1", raw)
            matchers.append(LabelMatcher(name, MatchType(op), value))
            pos = m.end()
            if pos < len(body):
                if body[pos] != ",":
                    raise ConfigurationError(f"Invalid series selector: {selector!r}")
                pos += 1

    if not matchers:
        raise ConfigurationError(f"Series selector has no matchers: {selector!r}")
    return tuple(matchers)
