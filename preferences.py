"""User preferences consumed by the tools. Stored as a flat JSON object."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from hl7_schema import DEFAULT_SCHEMA_VERSION
from mllp import DEFAULT_MAX_PENDING_BYTES
from segment_tools import DEFAULT_SPLIT_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass
class Preferences:
    connection_timeout: int = 5  # seconds
    default_listener_port: int = 5000
    socket_encoding: str = "utf-8"
    custom_segment_schema: str = ""
    batch_split_threshold: int = DEFAULT_SPLIT_THRESHOLD
    max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES
    default_schema_version: str = DEFAULT_SCHEMA_VERSION
    max_lines_for_field_descriptions: int = 200
    favourite_remote_hosts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def connection_timeout_ms(self) -> int:
        return self.connection_timeout * 1000

    def favourite(self, name: str) -> Optional[Dict[str, Any]]:
        """Favourite host entry called ``name``.

        Entries look like ``{"name": "lab", "host": "10.0.0.5", "port": 2575,
        "use_tls": true, "ignore_cert_error": false}``; only ``host`` is needed.
        """
        for entry in self.favourite_remote_hosts:
            if entry.get("name") == name:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Preferences":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            logger.warning("ignoring unknown preferences: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in raw.items() if k in known})


def load_preferences(path: Optional[Union[str, Path]]) -> Preferences:
    if not path:
        return Preferences()
    path = Path(path)
    if not path.exists():
        logger.info("preferences file %s not found, using defaults", path)
        return Preferences()
    with path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError(f"preferences file {path} must contain a JSON object")
    return Preferences.from_dict(raw)
