"""Versioned HL7 segment definitions.

The tables are read-only JSON files under ``data/<version>/segments.json``.
Each maps a segment name to ``{"desc": ..., "fields": [...]}`` where every
field carries ``desc``, ``datatype``, ``optionality`` and ``repeatability``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_SCHEMA_VERSION = "2.7.1"
KNOWN_VERSIONS = ("2.1", "2.2", "2.3", "2.3.1", "2.4", "2.5", "2.5.1", "2.6", "2.7", "2.7.1")

OPTIONAL = 1
REQUIRED = 2
CONDITIONAL = 3


@dataclass(frozen=True)
class FieldDefinition:
    description: str
    datatype: str = ""
    optionality: int = OPTIONAL
    repeatability: int = 1

    @property
    def required(self) -> bool:
        return self.optionality == REQUIRED

    @property
    def conditional(self) -> bool:
        return self.optionality == CONDITIONAL

    @property
    def repeating(self) -> bool:
        return self.repeatability != 1

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldDefinition":
        return cls(
            description=str(raw.get("desc", "")),
            datatype=str(raw.get("datatype", "")),
            optionality=int(raw.get("optionality", OPTIONAL)),
            repeatability=int(raw.get("repeatability", 1)),
        )


@dataclass(frozen=True)
class SegmentDefinition:
    name: str
    description: str = ""
    fields: Tuple[FieldDefinition, ...] = ()

    def field(self, index: int) -> Optional[FieldDefinition]:
        """1-based lookup; ``None`` past the end of the table."""
        if index < 1 or index > len(self.fields):
            return None
        return self.fields[index - 1]

    @classmethod
    def from_dict(cls, name: str, raw: Mapping[str, Any]) -> "SegmentDefinition":
        fields = tuple(FieldDefinition.from_dict(f) for f in raw.get("fields", []))
        return cls(name=name, description=str(raw.get("desc", "")), fields=fields)


@dataclass(frozen=True)
class SchemaDefinition(Mapping[str, SegmentDefinition]):
    version: str
    segments: Dict[str, SegmentDefinition] = field(default_factory=dict)

    def __getitem__(self, name: str) -> SegmentDefinition:
        return self.segments[name.upper()]

    def __iter__(self) -> Iterator[str]:
        return iter(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    def __hash__(self) -> int:
        return id(self)

    def segment(self, name: str) -> Optional[SegmentDefinition]:
        return self.segments.get(name.upper())

    def field(self, segment_name: str, index: int) -> Optional[FieldDefinition]:
        definition = self.segment(segment_name)
        if definition is None:
            return None
        return definition.field(index)

    def field_description(self, segment_name: str, index: int) -> str:
        definition = self.field(segment_name, index)
        return definition.description if definition else ""

    def overlay(self, custom: Mapping[str, Any]) -> "SchemaDefinition":
        """New schema with ``custom`` segments merged in; custom entries win."""
        merged = dict(self.segments)
        for name, raw in custom.items():
            merged[name.upper()] = SegmentDefinition.from_dict(name.upper(), raw)
        return SchemaDefinition(self.version, merged)

    @classmethod
    def from_dict(cls, version: str, raw: Mapping[str, Any]) -> "SchemaDefinition":
        segments = {name.upper(): SegmentDefinition.from_dict(name.upper(), body) for name, body in raw.items()}
        return cls(version, segments)


def _read_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


class SchemaCatalog:
    """Loads and caches schema tables by version, applying an optional custom overlay."""

    def __init__(
        self,
        data_dir: Union[str, Path] = DATA_DIR,
        default_version: str = DEFAULT_SCHEMA_VERSION,
        custom_segments: Union[None, str, Path, Mapping[str, Any]] = None,
    ):
        self.data_dir = Path(data_dir)
        self.default_version = default_version
        self._custom = self._load_custom(custom_segments)
        self._cache: Dict[str, SchemaDefinition] = {}

    def _load_custom(self, custom: Union[None, str, Path, Mapping[str, Any]]) -> Dict[str, Any]:
        if not custom:
            return {}
        if isinstance(custom, Mapping):
            return dict(custom)
        path = Path(custom)
        if not path.exists():
            logger.warning("could not load the custom schema file: %s", path)
            return {}
        try:
            return _read_json(path)
        except (OSError, ValueError):
            logger.exception("invalid custom schema file: %s", path)
            return {}

    def available_versions(self) -> List[str]:
        if not self.data_dir.is_dir():
            return []
        return sorted(p.parent.name for p in self.data_dir.glob("*/segments.json"))

    def supports(self, version: Optional[str]) -> bool:
        return bool(version) and (self.data_dir / str(version) / "segments.json").is_file()

    def resolve(self, version: Optional[str]) -> Tuple[SchemaDefinition, bool]:
        """Schema for ``version`` and whether it fell back to the default version."""
        fell_back = False
        if not self.supports(version):
            if version in KNOWN_VERSIONS:
                logger.warning("No bundled schema for HL7 v%s. Defaulting to v%s", version, self.default_version)
            elif version:
                logger.warning("HL7 v%s is not supported. Defaulting to v%s", version, self.default_version)
            else:
                logger.warning("HL7 version not detected in message. Defaulting to v%s", self.default_version)
            version = self.default_version
            fell_back = True
        return self._get(str(version)), fell_back

    def load(self, version: Optional[str]) -> SchemaDefinition:
        return self.resolve(version)[0]

    def _get(self, version: str) -> SchemaDefinition:
        schema = self._cache.get(version)
        if schema is None:
            path = self.data_dir / version / "segments.json"
            schema = SchemaDefinition.from_dict(version, _read_json(path))
            if self._custom:
                schema = schema.overlay(self._custom)
            self._cache[version] = schema
            logger.debug("loaded schema v%s (%d segments)", version, len(schema))
        return schema
