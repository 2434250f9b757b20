"""
Description compilation.

Turns ordered per-scene analyses into:
  - timestamped text (``[00:05.00 - 00:12.50] A dog runs...``) for captions
  - clean narration text with scene connectors, fed to speech synthesis
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_FILLER = re.compile(
    r"\b(the scene shows|we can see|there is|there are|in this scene|this video shows"
    r"|appears to be|seems to|looks like)\b",
    re.IGNORECASE,
)
_SPACES = re.compile(r"\s+")

_CONNECTORS = (
    "Next,",
    "Then,",
    "Subsequently,",
    "Following this,",
    "Meanwhile,",
    "At this point,",
    "Continuing,",
    "Later,",
)


@dataclass
class SceneAnalysis:
    index: int
    description: str
    confidence: float
    start_s: float | None = None
    end_s: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SceneAnalysis:
        return cls(
            index=data["index"],
            description=data["description"],
            confidence=data["confidence"],
            start_s=data.get("start_s"),
            end_s=data.get("end_s"),
        )


@dataclass
class CompiledDescription:
    timestamped_text: str
    narration: str
    scene_count: int
    average_confidence: float
    word_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.timestamped_text,
            "narration": self.narration,
            "scene_count": self.scene_count,
            "confidence": self.average_confidence,
            "word_count": self.word_count,
        }


def clean_description(text: str) -> str:
    """Strip filler phrases, normalize spacing, capitalize and terminate."""
    cleaned = _SPACES.sub(" ", _FILLER.sub("", text)).strip()
    cleaned = cleaned.strip(",; ")
    if not cleaned:
        return ""
    cleaned = cleaned[0].upper() + cleaned[1:]
    if cleaned[-1] not in ".!?":
        cleaned += "."
    return cleaned


def format_timestamp(seconds: float) -> str:
    minutes, rest = divmod(seconds, 60)
    hundredths = int(round((rest % 1) * 100)) % 100
    return f"{int(minutes):02d}:{int(rest):02d}.{hundredths:02d}"


def _connector(index: int, total: int) -> str:
    if index == total - 1:
        return "Finally,"
    if index == total // 2:
        return "Midway through,"
    return _CONNECTORS[index % len(_CONNECTORS)]


def compile_scenes(analyses: list[SceneAnalysis]) -> CompiledDescription:
    """Compile scene analyses, ordered by index, into one description."""
    if not analyses:
        raise ValueError("no scene analyses to compile")

    ordered = sorted(analyses, key=lambda a: a.index)
    descriptions = [clean_description(a.description) or a.description for a in ordered]

    lines = []
    for analysis, text in zip(ordered, descriptions, strict=True):
        if analysis.start_s is not None and analysis.end_s is not None:
            span = f"[{format_timestamp(analysis.start_s)} - {format_timestamp(analysis.end_s)}]"
            lines.append(f"{span} {text}")
        else:
            lines.append(text)

    parts = [descriptions[0]]
    for i, text in enumerate(descriptions[1:], start=1):
        parts.append(f"{_connector(i, len(descriptions))} {text}")
    narration = " ".join(parts)

    return CompiledDescription(
        timestamped_text="\n\n".join(lines),
        narration=narration,
        scene_count=len(ordered),
        average_confidence=sum(a.confidence for a in ordered) / len(ordered),
        word_count=len(narration.split()),
    )
