"""Speech backends.

Only the interface is re-exported here; import the concrete backends from
their modules (``engines.premium``, ``engines.device``).
"""

from .base import AudioFormat, SpeechBackend, TTSResult, VoiceConfig

__all__ = ["AudioFormat", "SpeechBackend", "TTSResult", "VoiceConfig"]
