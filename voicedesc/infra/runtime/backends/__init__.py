"""
Analysis Backend Protocol — Service-Agnostic Adapter Interface
================================================================

Defines the contract every external analysis / speech backend must
implement. The stage executor only ever talks to these interfaces;
the selector hands out descriptors holding an adapter, never a concrete
service client.

Errors raised by an adapter MUST be ``AdapterError`` with an
``AdapterErrorKind``. Anything else is treated as fatal and unclassified.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from voicedesc.models.media import MediaReference


class AnalysisTask(StrEnum):
    SEGMENT = "segment"    # split media into scenes
    DESCRIBE = "describe"  # describe a single image / scene


@dataclass
class AnalysisOptions:
    """Standardized analysis request parameters."""

    task: AnalysisTask = AnalysisTask.DESCRIBE
    detail_level: str = "detailed"
    language: str = "en"
    prompt: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class AnalysisResult:
    description: str
    confidence: float
    structured_elements: dict[str, Any] = field(default_factory=dict)


@dataclass
class VoiceOptions:
    voice_id: str
    language: str = "en"
    speed: float = 1.0


@dataclass
class SpeechResult:
    audio_reference: str
    duration_s: float


@dataclass
class HealthStatus:
    available: bool
    quota_remaining: int | None = None


@dataclass(frozen=True)
class Segment:
    """Time window of a video, in seconds."""

    index: int
    start_s: float
    end_s: float

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "start_s": self.start_s, "end_s": self.end_s}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        return cls(index=data["index"], start_s=data["start_s"], end_s=data["end_s"])


class AnalysisBackendAdapter(ABC):
    """
    Abstract analysis / speech backend.

    Implementations wrap one external service (vision-language model,
    video-understanding API, TTS engine).
    """

    @abstractmethod
    async def analyze(
        self, media: MediaReference, options: AnalysisOptions
    ) -> AnalysisResult:
        """Analyze an image, a scene, or a whole video (segmentation)."""
        ...

    @abstractmethod
    async def synthesize_speech(self, text: str, voice: VoiceOptions) -> SpeechResult:
        """Turn narration text into an audio artifact reference."""
        ...

    async def health_check(self) -> HealthStatus:
        """Check if the backend is reachable and has quota left."""
        return HealthStatus(available=True)


class SceneExtractor(ABC):
    """Cuts a video segment into a scene reference the analyzers can consume."""

    @abstractmethod
    async def extract(self, media: MediaReference, segment: Segment) -> MediaReference:
        ...


__all__ = [
    "AnalysisBackendAdapter",
    "AnalysisOptions",
    "AnalysisResult",
    "AnalysisTask",
    "HealthStatus",
    "SceneExtractor",
    "Segment",
    "SpeechResult",
    "VoiceOptions",
]
