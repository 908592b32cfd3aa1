"""Check that fields marked required in the schema carry a value.

Conditional requirements and datatypes are not evaluated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from hl7_parser import MessageModel
from hl7_schema import SchemaDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MissingField:
    line_number: int
    location: str
    description: str

    def __str__(self) -> str:
        return f"{self.line_number:<7}{self.location:<8}{self.description}"


def check_required_fields(model: MessageModel, schema: SchemaDefinition) -> List[MissingField]:
    missing = []
    skipped = 0
    for segment in model.segments:
        definition = schema.segment(segment.name)
        if definition is None:
            continue
        name = segment.name.upper()
        for index, field_def in enumerate(definition.fields, start=1):
            if field_def.conditional:
                skipped += 1
            if not field_def.required:
                continue
            span = segment.field(index)
            if span is None or span.is_empty:
                missing.append(MissingField(segment.line_number, f"{name}-{index}", field_def.description))
    logger.debug("%d required fields missing, %d conditional fields not checked", len(missing), skipped)
    return missing
