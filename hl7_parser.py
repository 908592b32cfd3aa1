#!/usr/bin/env python3
"""HL7 v2.x message decomposition.

Splits raw message text into segments and fields while keeping the exact
character offsets of every field, so callers can map a field back to a range
in the original document. Delimiters are read from the first MSH/FHS/BHS line
and are only ever compared as plain characters, never fed to a regex.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

HEADER_SEGMENTS = ("MSH", "FHS", "BHS")
SEGMENT_TERMINATOR = "\r"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class ParseWarning(str, Enum):
    MALFORMED_DELIMITER_HEADER = "MalformedDelimiterHeader"
    UNSUPPORTED_SCHEMA_VERSION = "UnsupportedSchemaVersion"
    INVALID_SEGMENT_SYNTAX = "InvalidSegmentSyntax"


@dataclass(frozen=True)
class DelimiterSet:
    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"

    @property
    def encoding_characters(self) -> str:
        return self.component + self.repetition + self.escape + self.subcomponent

    def is_valid(self) -> bool:
        chars = (self.field, self.component, self.repetition, self.escape, self.subcomponent)
        return all(len(c) == 1 for c in chars) and len(set(chars)) == len(chars)


DEFAULT_DELIMITERS = DelimiterSet()


@dataclass(frozen=True)
class Line:
    number: int  # 1-based
    start: int
    text: str

    @property
    def end(self) -> int:
        return self.start + len(self.text)


@dataclass(frozen=True)
class Field:
    index: int
    start: int
    end: int

    def text(self, source: str) -> str:
        return source[self.start:self.end]

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


@dataclass(frozen=True)
class Segment:
    """One segment line. ``fields[n]`` is ``SEG-n``; ``fields[0]`` is the name itself."""

    name: str
    line_number: int
    start: int
    end: int
    fields: Tuple[Field, ...]

    @property
    def field_count(self) -> int:
        return len(self.fields) - 1

    def field(self, index: int) -> Optional[Field]:
        if index < 1 or index >= len(self.fields):
            return None
        return self.fields[index]


@dataclass(frozen=True)
class MessageModel:
    text: str
    delimiters: DelimiterSet
    segments: Tuple[Segment, ...]
    line_count: int
    warnings: Tuple[ParseWarning, ...] = field(default_factory=tuple)

    def segments_named(self, name: str) -> List[Segment]:
        name = name.upper()
        return [s for s in self.segments if s.name.upper() == name]

    def field_text(self, f: Field) -> str:
        return f.text(self.text)


def iter_lines(text: str) -> Iterator[Line]:
    """Yield every line with its start offset. Accepts CR, LF and CRLF terminators."""
    pos = 0
    number = 1
    for match in _LINE_BREAK.finditer(text):
        yield Line(number, pos, text[pos:match.start()])
        pos = match.end()
        number += 1
    if pos < len(text):
        yield Line(number, pos, text[pos:])


def detect_line_terminator(text: str) -> str:
    match = _LINE_BREAK.search(text)
    if match is None:
        return SEGMENT_TERMINATOR
    return match.group(0)


def is_header_line(line: str) -> bool:
    return len(line) > 3 and line[:3].upper() in HEADER_SEGMENTS


def _read_header(line: str) -> Optional[DelimiterSet]:
    field_sep = line[3]
    end = line.find(field_sep, 4)
    encoding = line[4:] if end == -1 else line[4:end]
    if len(encoding) < 4:
        return None
    delimiters = DelimiterSet(field_sep, encoding[0], encoding[1], encoding[2], encoding[3])
    if not delimiters.is_valid():
        return None
    return delimiters


def read_delimiters(text: str) -> Tuple[DelimiterSet, Optional[ParseWarning]]:
    for line in iter_lines(text):
        if not is_header_line(line.text):
            continue
        delimiters = _read_header(line.text)
        if delimiters is None:
            logger.warning("malformed delimiter header on line %d, using defaults", line.number)
            return DEFAULT_DELIMITERS, ParseWarning.MALFORMED_DELIMITER_HEADER
        return delimiters, None
    return DEFAULT_DELIMITERS, None


def parse_delimiters(text: str) -> DelimiterSet:
    """Delimiters from the first header line, or the standard ``|^~\\&`` set."""
    return read_delimiters(text)[0]


def is_segment_name(token: str) -> bool:
    return 3 <= len(token) <= 4 and token[0].isascii() and token[0].isalpha() and token.isascii() and token.isalnum()


def is_segment_valid(line: str, delimiters: DelimiterSet = DEFAULT_DELIMITERS) -> bool:
    end = line.find(delimiters.field)
    if end == -1:
        return False
    return is_segment_name(line[:end])


def decompose(
    line: str,
    delimiters: DelimiterSet = DEFAULT_DELIMITERS,
    offset: int = 0,
    line_number: int = 1,
) -> Segment:
    """Split one segment line on the field delimiter in a single pass.

    For MSH/FHS/BHS the delimiter right after the name is field 1, so those
    segments have one more field than they have field delimiters.
    """
    sep = delimiters.field
    first = line.find(sep)
    name = line if first == -1 else line[:first]
    spans = [Field(0, offset, offset + len(name))]
    if first == -1:
        return Segment(name, line_number, offset, offset + len(line), tuple(spans))

    index = 1
    if name.upper() in HEADER_SEGMENTS:
        spans.append(Field(index, offset + first, offset + first + 1))
        index += 1

    start = first + 1
    for pos in range(start, len(line)):
        if line[pos] == sep:
            spans.append(Field(index, offset + start, offset + pos))
            index += 1
            start = pos + 1
    spans.append(Field(index, offset + start, offset + len(line)))
    return Segment(name, line_number, offset, offset + len(line), tuple(spans))


def parse_message(text: str) -> MessageModel:
    """Build an immutable model of ``text``. Rebuilt wholesale on every change."""
    delimiters, warning = read_delimiters(text)
    segments = []
    line_count = 0
    for line in iter_lines(text):
        line_count = line.number
        if not is_segment_valid(line.text, delimiters):
            if line.text.strip():
                logger.debug("skipping line %d: not a segment", line.number)
            continue
        segments.append(decompose(line.text, delimiters, line.start, line.number))
    warnings = (warning,) if warning else ()
    return MessageModel(text, delimiters, tuple(segments), line_count, warnings)


def split_components(value: str, separator: str) -> List[Tuple[int, int]]:
    """(start, end) pairs of the pieces of ``value`` between ``separator`` characters."""
    pieces = []
    start = 0
    for pos, ch in enumerate(value):
        if ch == separator:
            pieces.append((start, pos))
            start = pos + 1
    pieces.append((start, len(value)))
    return pieces


def detect_version(model: MessageModel) -> Optional[str]:
    """MSH-12 (first component) of the first MSH segment, if any."""
    for segment in model.segments:
        if segment.name.upper() != "MSH":
            continue
        version_field = segment.field(12)
        if version_field is None:
            return None
        value = model.field_text(version_field)
        version = value.split(model.delimiters.component)[0].strip()
        return version or None
    return None


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    source = sys.stdin.read()
    model = parse_message(source)
    for seg in model.segments:
        print(seg.line_number, seg.name, [model.field_text(f) for f in seg.fields[1:]])
