"""Segment level helpers: extract, split batch files, reformat, describe."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from field_locator import FieldLocation, locate
from hl7_parser import (
    HEADER_SEGMENTS,
    DelimiterSet,
    decompose,
    detect_line_terminator,
    is_segment_name,
    is_segment_valid,
    iter_lines,
    parse_delimiters,
    parse_message,
    split_components,
)
from hl7_schema import SchemaDefinition

logger = logging.getLogger(__name__)

DEFAULT_BATCH_HEADER = "MSH"
DEFAULT_SPLIT_THRESHOLD = 100

_DOUBLE_BREAK = re.compile(r"(\r\n|\n|\r){2}")


def segment_name_of(line: str, delimiters: DelimiterSet) -> Optional[str]:
    token = line.split(delimiters.field, 1)[0][:3]
    if len(token) < 3 or not is_segment_name(token):
        return None
    return token.upper()


def extract_segments(
    text: str, reference_line: str, delimiters: Optional[DelimiterSet] = None
) -> Optional[str]:
    """Every line sharing the segment name of ``reference_line``, joined by the document's terminator.

    Returns ``None`` when the reference line does not start with a segment name.
    """
    delimiters = delimiters or parse_delimiters(text)
    name = segment_name_of(reference_line, delimiters)
    if name is None:
        logger.warning("the current line does not appear to be a valid segment: %r", reference_line[:20])
        return None
    eol = detect_line_terminator(text)
    selected = [
        line.text for line in iter_lines(text)
        if line.text.split(delimiters.field, 1)[0].upper() == name
    ]
    return eol.join(selected)


@dataclass(frozen=True)
class BatchSplit:
    messages: Tuple[str, ...]
    threshold: int = DEFAULT_SPLIT_THRESHOLD

    @property
    def count(self) -> int:
        return len(self.messages)

    @property
    def requires_confirmation(self) -> bool:
        """Opening this many messages must be confirmed by the caller first."""
        return self.count > self.threshold


def split_batch(
    text: str,
    delimiters: Optional[DelimiterSet] = None,
    header: str = DEFAULT_BATCH_HEADER,
    threshold: int = DEFAULT_SPLIT_THRESHOLD,
) -> BatchSplit:
    """Cut a batch file at every line starting with ``header`` + field delimiter.

    Anything before the first header (FHS/BHS envelopes, blank lines) is
    dropped. Batch trailers (BTS/FTS) are left in the tail of the message
    that precedes them.
    """
    delimiters = delimiters or parse_delimiters(text)
    marker = (header + delimiters.field).upper()
    starts = [line.start for line in iter_lines(text) if line.text[:len(marker)].upper() == marker]
    messages = []
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else len(text)
        messages.append(header + delimiters.field + text[start + len(marker):end])
    split = BatchSplit(tuple(messages), threshold)
    if split.requires_confirmation:
        logger.warning("batch split produces %d messages (threshold %d)", split.count, threshold)
    return split


def _segment_start_at(text: str, pos: int, names: frozenset, delimiters: DelimiterSet) -> bool:
    token = text[pos:pos + 3]
    if len(token) < 3 or text[pos + 3:pos + 4] != delimiters.field:
        return False
    if token in names:
        return True
    # custom Z segments are only recognised after whitespace to limit false positives
    return (
        token[0] == "Z"
        and token[1].isupper()
        and token[2].isalnum()
        and pos > 0
        and text[pos - 1] in " \t"
    )


def add_linebreaks(
    text: str,
    schema: SchemaDefinition,
    delimiters: Optional[DelimiterSet] = None,
    eol: Optional[str] = None,
) -> str:
    """Put every known segment on its own line."""
    delimiters = delimiters or parse_delimiters(text)
    eol = eol or detect_line_terminator(text)
    names = frozenset(schema)
    out = []
    last = 0
    for pos in range(1, len(text)):
        if text[pos - 1] in "\r\n":
            continue
        if _segment_start_at(text, pos, names, delimiters):
            out.append(text[last:pos])
            out.append(eol)
            last = pos
    out.append(text[last:])
    return _DOUBLE_BREAK.sub(lambda _match: eol, "".join(out))


def find_segment_text(line: str, delimiters: DelimiterSet) -> Optional[str]:
    """The segment part of ``line``, skipping any prefix such as a line number."""
    for pos in range(len(line) - 3):
        if line[pos + 3] == delimiters.field and is_segment_name(line[pos:pos + 3]):
            return line[pos:]
    return None


def describe_segment(
    line: str, schema: Optional[SchemaDefinition] = None, delimiters: Optional[DelimiterSet] = None
) -> Optional[str]:
    """Tree view of one segment: each populated field with its description, then its components."""
    delimiters = delimiters or parse_delimiters(line)
    segment_text = find_segment_text(line, delimiters)
    if segment_text is None or not is_segment_valid(segment_text, delimiters):
        logger.warning("the current line does not appear to be a valid segment")
        return None

    segment = decompose(segment_text, delimiters)
    name = segment.name.upper()
    lines = []
    for span in segment.fields[1:]:
        value = span.text(segment_text)
        if not value:
            continue
        description = schema.field_description(name, span.index) if schema else ""
        label = f"{name}-{span.index}"
        lines.append(f"{label} ({description}) {value}" if description else f"{label} {value}")
        if name in HEADER_SEGMENTS and span.index <= 2:
            continue
        components = split_components(value, delimiters.component)
        if len(components) < 2:
            continue
        for c_index, (start, end) in enumerate(components, start=1):
            if end > start:
                lines.append(f"    {label}.{c_index} {value[start:end]}")
    return "\n".join(lines)


def extract_field_values(messages: Iterable[str], location: str) -> List[Tuple[int, str]]:
    """``(message index, value)`` for every occurrence of a structured location across messages."""
    if FieldLocation.parse(location) is None:
        logger.warning("not a field location: %r", location)
        return []
    values = []
    for index, message in enumerate(messages):
        model = parse_message(message)
        for match in locate(location, model):
            values.append((index, match.text(message)))
    return values
