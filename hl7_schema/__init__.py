from hl7_schema.catalog import (
    CONDITIONAL,
    DEFAULT_SCHEMA_VERSION,
    KNOWN_VERSIONS,
    OPTIONAL,
    REQUIRED,
    FieldDefinition,
    SchemaCatalog,
    SchemaDefinition,
    SegmentDefinition,
)

__all__ = [
    "CONDITIONAL",
    "DEFAULT_SCHEMA_VERSION",
    "KNOWN_VERSIONS",
    "OPTIONAL",
    "REQUIRED",
    "FieldDefinition",
    "SchemaCatalog",
    "SchemaDefinition",
    "SegmentDefinition",
]
