"""Opaque media references. The core never handles raw media bytes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class MediaReference:
    uri: str
    size_bytes: int = 0
    duration_s: float | None = None
    content_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MediaReference:
        return cls(
            uri=data["uri"],
            size_bytes=data.get("size_bytes", 0),
            duration_s=data.get("duration_s"),
            content_type=data.get("content_type"),
        )
