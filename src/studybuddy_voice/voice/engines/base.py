"""
Abstract base class for speech backends.

The premium vendor backend and the on-device fallback implement this
interface, allowing the TTSRouter to treat them uniformly.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..sanitizer import sanitize


class AudioFormat(Enum):
    """Audio payload kinds a backend can produce."""

    MP3 = "mp3"
    WAV = "wav"
    # Spoken directly by the device; the result carries no audio bytes
    DEVICE = "device"


@dataclass
class VoiceConfig:
    """Configuration for one synthesis call.

    Attributes:
        voice_id: Backend-specific voice identifier ("default" picks the backend default).
        language: BCP-47 language tag (e.g. "en-IN", "hi-IN").
        speed: Playback rate multiplier (1.0 = normal), clamped to 0.5-2.0.
        pitch: Pitch multiplier (1.0 = normal).
        output_format: Desired audio output format.
        extra: Backend-specific additional parameters.
    """

    voice_id: str = "default"
    language: str = "en-IN"
    speed: float = 1.0
    pitch: float = 1.0
    output_format: AudioFormat = AudioFormat.MP3
    extra: dict[str, object] = field(default_factory=dict)


@dataclass
class TTSResult:
    """Result of a synthesis operation.

    Attributes:
        audio_data: Encoded audio bytes (empty for device utterances).
        format: Audio format of the data.
        engine_name: Name of the backend that produced this result.
        text: The exact text that will be voiced.
        voice_id: Voice actually used.
        language: Language actually used.
        model: Vendor model, if any.
        cached: True if served from a cache.
        speed: Playback rate.
        sample_rate: Sample rate in Hz, 0 if unknown.
        duration_ms: Approximate duration in milliseconds, 0.0 if unknown.
    """

    audio_data: bytes
    format: AudioFormat
    engine_name: str
    text: str = ""
    voice_id: str = "default"
    language: str = "en-IN"
    model: Optional[str] = None
    cached: bool = False
    speed: float = 1.0
    sample_rate: int = 0
    duration_ms: float = 0.0


class SpeechBackend(ABC):
    """Abstract base class for speech backends.

    Subclasses must implement:
    - name: A short backend name.
    - is_available(): Whether the backend can currently be used.
    - synthesize(): Turn text into a playable TTSResult.

    ``metered`` backends consume the student's premium quota.
    """

    metered: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend name."""
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is configured and usable.

        Returns:
            True if the backend can be used, False otherwise.
        """
        ...

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        voice_config: Optional[VoiceConfig] = None,
    ) -> TTSResult:
        """Synthesize text.

        Args:
            text: The text to convert to speech.
            voice_config: Optional voice configuration. If None, use defaults.

        Returns:
            TTSResult ready for the PlaybackController.

        Raises:
            SynthesisError: If synthesis fails.
        """
        ...

    def prepare_text(self, text: str) -> str:
        """Exact text this backend would voice for ``text``."""
        return sanitize(text)

    async def warmup(self) -> None:
        """Optional warmup (open connections, enumerate voices). No-op by default."""

    async def shutdown(self) -> None:
        """Optional cleanup of held resources. No-op by default."""

    def supported_languages(self) -> list[str]:
        return ["en-IN", "hi-IN"]


def clamp_rate(value: Optional[float]) -> float:
    if value is None:
        return 1.0
    return min(2.0, max(0.5, float(value)))
