"""Per-document context: the text snapshot and everything derived from it.

Each open document gets its own DocumentSession, so delimiters, schema and
the find cursor are never shared between documents.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from field_locator import FieldDescription, FieldLocator, FindOutcome, field_descriptions
from hl7_parser import (
    DelimiterSet,
    MessageModel,
    ParseWarning,
    detect_line_terminator,
    detect_version,
    iter_lines,
    parse_message,
)
from hl7_schema import SchemaCatalog, SchemaDefinition
from preferences import Preferences
from required_fields import MissingField, check_required_fields
from segment_tools import BatchSplit, add_linebreaks, describe_segment, extract_segments, split_batch

logger = logging.getLogger(__name__)


class DocumentSession:
    def __init__(
        self,
        text: str = "",
        catalog: Optional[SchemaCatalog] = None,
        preferences: Optional[Preferences] = None,
    ):
        self.preferences = preferences or Preferences()
        self.catalog = catalog or SchemaCatalog(
            default_version=self.preferences.default_schema_version,
            custom_segments=self.preferences.custom_segment_schema or None,
        )
        self._text = text
        self.revision = 0
        self._model: Optional[MessageModel] = None
        self._schema: Optional[SchemaDefinition] = None
        self._schema_fell_back = False
        self._built_revision = -1
        self.last_warning: Optional[ParseWarning] = None
        self.locator = FieldLocator(self)

    @property
    def text(self) -> str:
        return self._text

    def update(self, text: str) -> int:
        """Replace the document text. Any change bumps the revision."""
        if text != self._text:
            self._text = text
            self.revision += 1
        return self.revision

    def _rebuild(self) -> None:
        if self._built_revision == self.revision:
            return
        self._model = parse_message(self._text)
        self._schema, self._schema_fell_back = self.catalog.resolve(detect_version(self._model))
        self._built_revision = self.revision

    @property
    def model(self) -> MessageModel:
        self._rebuild()
        return self._model

    @property
    def schema(self) -> SchemaDefinition:
        self._rebuild()
        return self._schema

    @property
    def delimiters(self) -> DelimiterSet:
        return self.model.delimiters

    @property
    def warnings(self) -> Tuple[ParseWarning, ...]:
        self._rebuild()
        warnings = self._model.warnings
        if self._schema_fell_back:
            warnings += (ParseWarning.UNSUPPORTED_SCHEMA_VERSION,)
        return warnings

    @property
    def line_terminator(self) -> str:
        return detect_line_terminator(self._text)

    def find(self, query: str) -> FindOutcome:
        return self.locator.find(query)

    def find_next(self) -> FindOutcome:
        return self.locator.find_next()

    def check_required_fields(self) -> List[MissingField]:
        return check_required_fields(self.model, self.schema)

    def field_descriptions(self) -> List[FieldDescription]:
        return field_descriptions(self.model, self.schema, self.preferences.max_lines_for_field_descriptions)

    def _line(self, line_number: int) -> str:
        for line in iter_lines(self._text):
            if line.number == line_number:
                return line.text
        return ""

    def _checked(self, result: Optional[str]) -> Optional[str]:
        self.last_warning = ParseWarning.INVALID_SEGMENT_SYNTAX if result is None else None
        return result

    def extract_segments(self, line_number: int) -> Optional[str]:
        return self._checked(extract_segments(self._text, self._line(line_number), self.delimiters))

    def describe_segment(self, line_number: int) -> Optional[str]:
        return self._checked(describe_segment(self._line(line_number), self.schema, self.delimiters))

    def split_batch(self) -> BatchSplit:
        return split_batch(self._text, self.delimiters, threshold=self.preferences.batch_split_threshold)

    def add_linebreaks(self) -> str:
        """Reformat the document in place so each segment starts a line."""
        self.update(add_linebreaks(self._text, self.schema, self.delimiters))
        return self._text
