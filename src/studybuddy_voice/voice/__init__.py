"""
Voice subsystem for StudyBuddy.

Provides text-to-speech with a plan-aware router:
- Premium: metered Speechify voices for students on an active Pro plan
- Fallback: on-device speech (espeak-ng) for everyone else, and whenever
  the premium path fails

The router commits premium usage through the atomic UsageLedger only after
the vendor succeeded, and always degrades to the fallback instead of
failing the utterance.
"""

from .engines.base import AudioFormat, SpeechBackend, TTSResult, VoiceConfig
from .cache import AudioCache
from .playback import AudioSink, PlaybackController, PlaybackEvent, PlaybackEventType, SubprocessAudioSink
from .engines.device import DeviceSpeechBackend, EspeakDriver
from .engines.premium import SPEECHIFY_VOICES, SpeechifyBackend
from .router import RouteState, SpeakOutcome, TTSRouter
from .sanitizer import sanitize

__all__ = [
    # Router
    "TTSRouter",
    "RouteState",
    "SpeakOutcome",
    # Backend interface
    "SpeechBackend",
    "VoiceConfig",
    "TTSResult",
    "AudioFormat",
    # Backends
    "SpeechifyBackend",
    "SPEECHIFY_VOICES",
    "DeviceSpeechBackend",
    "EspeakDriver",
    # Playback
    "PlaybackController",
    "PlaybackEvent",
    "PlaybackEventType",
    "AudioSink",
    "SubprocessAudioSink",
    # Utilities
    "AudioCache",
    "sanitize",
]
