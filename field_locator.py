"""Resolve HL7 field locations to text ranges and step through the matches.

A location is either structured (``PID-5``, ``PID-5.1``, ``PID-3.4.2``) or a
free-text fragment that is matched against field descriptions in the schema
(``name`` finds every field whose description contains "name").
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from hl7_parser import MessageModel, Segment, split_components
from hl7_schema import SchemaDefinition

if TYPE_CHECKING:
    from session import DocumentSession

logger = logging.getLogger(__name__)

FIELD_LOCATION_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]{2}-[0-9]+(\.[0-9]+(\.[0-9]+)?)?$")


@dataclass(frozen=True)
class FieldLocation:
    segment: str
    field: int
    component: Optional[int] = None
    subcomponent: Optional[int] = None

    @classmethod
    def parse(cls, text: str) -> Optional["FieldLocation"]:
        """Structured location, or ``None`` when ``text`` is a free-text query."""
        text = (text or "").strip()
        if not FIELD_LOCATION_PATTERN.match(text):
            return None
        name, _, position = text.partition("-")
        parts = [int(p) for p in position.split(".")]
        return cls(
            segment=name.upper(),
            field=parts[0],
            component=parts[1] if len(parts) > 1 else None,
            subcomponent=parts[2] if len(parts) > 2 else None,
        )

    def __str__(self) -> str:
        text = f"{self.segment}-{self.field}"
        if self.component is not None:
            text += f".{self.component}"
        if self.subcomponent is not None:
            text += f".{self.subcomponent}"
        return text


@dataclass(frozen=True)
class FieldMatch:
    line_number: int
    segment: str
    field_index: int
    start: int
    end: int
    description: str = ""

    @property
    def location(self) -> str:
        return f"{self.segment}-{self.field_index}"

    def text(self, source: str) -> str:
        return source[self.start:self.end]


@dataclass(frozen=True)
class FieldDescription:
    line_number: int
    location: str
    start: int
    end: int
    description: str


def _narrow(start: int, end: int, value: str, location: FieldLocation, model: MessageModel) -> List[Tuple[int, int]]:
    delimiters = model.delimiters
    ranges = []
    for rep_start, rep_end in split_components(value, delimiters.repetition):
        repetition = value[rep_start:rep_end]
        components = split_components(repetition, delimiters.component)
        if location.component > len(components):
            continue
        c_start, c_end = components[location.component - 1]
        if location.subcomponent is not None:
            component = repetition[c_start:c_end]
            subcomponents = split_components(component, delimiters.subcomponent)
            if location.subcomponent > len(subcomponents):
                continue
            s_start, s_end = subcomponents[location.subcomponent - 1]
            c_start, c_end = c_start + s_start, c_start + s_end
        ranges.append((start + rep_start + c_start, start + rep_start + c_end))
    return ranges


def _locate_structured(
    location: FieldLocation, model: MessageModel, schema: Optional[SchemaDefinition]
) -> List[FieldMatch]:
    description = schema.field_description(location.segment, location.field) if schema else ""
    matches = []
    for segment in model.segments_named(location.segment):
        span = segment.field(location.field)
        if span is None:
            continue
        if location.component is None:
            ranges = [(span.start, span.end)]
        else:
            ranges = _narrow(span.start, span.end, model.field_text(span), location, model)
        for start, end in ranges:
            matches.append(
                FieldMatch(segment.line_number, segment.name.upper(), location.field, start, end, description)
            )
    return matches


def _locate_free_text(query: str, model: MessageModel, schema: Optional[SchemaDefinition]) -> List[FieldMatch]:
    if schema is None:
        return []
    needle = query.lower()
    matches = []
    for segment in model.segments:
        definition = schema.segment(segment.name)
        if definition is None:
            continue
        for index, field_def in enumerate(definition.fields, start=1):
            if needle not in field_def.description.lower():
                continue
            span = segment.field(index)
            if span is None:
                continue
            matches.append(
                FieldMatch(segment.line_number, segment.name.upper(), index, span.start, span.end, field_def.description)
            )
    return matches


def locate(query: str, model: MessageModel, schema: Optional[SchemaDefinition] = None) -> List[FieldMatch]:
    """All ranges matching ``query``, ordered by line then field index."""
    query = (query or "").strip()
    if not query:
        return []
    location = FieldLocation.parse(query)
    if location is not None:
        matches = _locate_structured(location, model, schema)
    else:
        matches = _locate_free_text(query, model, schema)
    matches.sort(key=lambda m: (m.line_number, m.field_index, m.start))
    return matches


def field_descriptions(
    model: MessageModel, schema: Optional[SchemaDefinition] = None, max_lines: Optional[int] = None
) -> List[FieldDescription]:
    """Every field of every segment with its schema description ("" when undefined)."""
    result = []
    for segment in model.segments:
        if max_lines is not None and segment.line_number > max_lines:
            break
        result.extend(_describe(segment, schema))
    return result


def _describe(segment: Segment, schema: Optional[SchemaDefinition]) -> List[FieldDescription]:
    name = segment.name.upper()
    out = []
    for span in segment.fields[1:]:
        description = schema.field_description(name, span.index) if schema else ""
        out.append(FieldDescription(segment.line_number, f"{name}-{span.index}", span.start, span.end, description))
    return out


class FindResult(Enum):
    FOUND = "Found"
    WRAPPED_TO_START = "WrappedToStart"
    NO_FIELD_MATCH = "NoFieldMatch"
    NO_SEARCH_DEFINED = "NoSearchDefined"


@dataclass
class SearchState:
    query: str
    matches: List[FieldMatch]
    revision: int
    index: int = 0

    @property
    def current(self) -> Optional[FieldMatch]:
        if not self.matches:
            return None
        return self.matches[self.index]


@dataclass(frozen=True)
class FindOutcome:
    result: FindResult
    match: Optional[FieldMatch] = None

    @property
    def found(self) -> bool:
        return self.match is not None


@dataclass
class FieldLocator:
    """Find / find-next over one document session. Holds the only live search state."""

    session: "DocumentSession"
    state: Optional[SearchState] = field(default=None)

    def _compute(self, query: str) -> List[FieldMatch]:
        return locate(query, self.session.model, self.session.schema)

    def find(self, query: str) -> FindOutcome:
        matches = self._compute(query)
        self.state = SearchState(query=query, matches=matches, revision=self.session.revision)
        logger.debug("find %r: %d matches", query, len(matches))
        if not matches:
            return FindOutcome(FindResult.NO_FIELD_MATCH)
        return FindOutcome(FindResult.FOUND, matches[0])

    def find_next(self) -> FindOutcome:
        state = self.state
        if state is None:
            return FindOutcome(FindResult.NO_SEARCH_DEFINED)

        if state.revision != self.session.revision:
            self._refresh(state)
        if not state.matches:
            return FindOutcome(FindResult.NO_FIELD_MATCH)

        state.index += 1
        if state.index >= len(state.matches):
            state.index = 0
            return FindOutcome(FindResult.WRAPPED_TO_START, state.matches[0])
        return FindOutcome(FindResult.FOUND, state.matches[state.index])

    def _refresh(self, state: SearchState) -> None:
        """Recompute a stale search so the next step lands after the previous match."""
        previous = state.current
        if previous is not None:
            key = (previous.line_number, previous.field_index)
            # repetitions of one field share the key; remember which one we were on
            occurrence = sum(1 for m in state.matches[:state.index] if (m.line_number, m.field_index) == key)
        state.matches = self._compute(state.query)
        state.revision = self.session.revision
        logger.debug("search %r refreshed at revision %d", state.query, state.revision)
        if previous is None or not state.matches:
            state.index = -1
            return
        state.index = len(state.matches) - 1
        seen = 0
        for i, match in enumerate(state.matches):
            match_key = (match.line_number, match.field_index)
            if match_key < key:
                continue
            if match_key == key and seen <= occurrence:
                seen += 1
                continue
            state.index = i - 1
            break

    def reset(self) -> None:
        self.state = None
