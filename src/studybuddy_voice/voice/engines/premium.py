"""
Premium (metered) speech backend backed by the Speechify HTTP API.

One POST per utterance returns base64-encoded MP3 audio. Input is sanitized
and capped at ``max_input_chars``; the resulting text is exactly what gets
voiced and billed. Results are cached by model, voice and text prefix.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from ...exceptions import SynthesisError, VendorError
from ..cache import AudioCache
from ..sanitizer import sanitize
from .base import AudioFormat, SpeechBackend, TTSResult, VoiceConfig, clamp_rate

logger = logging.getLogger("studybuddy-voice.voice.premium")

DEFAULT_API_URL = "https://api.sws.speechify.com/v1/audio/speech"
DEFAULT_MODEL = "simba-multilingual"
DEFAULT_VOICE_ID = "henry"

_DEVANAGARI_RE = re.compile("[\u0900-\u097F]")


@dataclass(frozen=True)
class PremiumVoice:
    id: str
    name: str
    language: str
    language_code: str
    gender: str
    description: str


SPEECHIFY_VOICES: dict[str, PremiumVoice] = {
    v.id: v
    for v in (
        PremiumVoice("henry", "Henry", "Hindi/English (India)", "hi-IN", "male",
                     "Indian accent, best for Hindi and Hinglish"),
        PremiumVoice("natasha", "Natasha", "Hindi/English (India)", "hi-IN", "female",
                     "Indian female voice, natural Hindi pronunciation"),
        PremiumVoice("george", "George", "English (UK)", "en-GB", "male",
                     "British accent, professional"),
        PremiumVoice("cliff", "Cliff", "English (US)", "en-US", "male",
                     "American accent, clear"),
        PremiumVoice("mrbeast", "MrBeast", "English", "en-US", "male",
                     "Energetic, fun"),
        PremiumVoice("gwyneth", "Gwyneth", "English", "en-US", "female",
                     "Calm, professional"),
        PremiumVoice("oliver", "Oliver", "English (UK)", "en-GB", "male",
                     "British, formal"),
    )
}


def detect_language(text: str, requested: Optional[str] = None) -> str:
    """Devanagari script forces hi-IN; otherwise hi-IN only on request, else en-IN."""
    if _DEVANAGARI_RE.search(text):
        return "hi-IN"
    return "hi-IN" if requested == "hi-IN" else "en-IN"


def resolve_voice_id(voice_id: Optional[str]) -> str:
    """Map ``None``/"default" to the default voice and reject unknown ids."""
    if not voice_id or voice_id == "default":
        return DEFAULT_VOICE_ID
    if voice_id not in SPEECHIFY_VOICES:
        raise SynthesisError(
            f"Unknown premium voice '{voice_id}'",
            engine_name="premium",
            recoverable=False,
            details={"voice_id": voice_id},
        )
    return voice_id


class SpeechifyBackend(SpeechBackend):
    """Metered vendor backend.

    Usage:
        backend = SpeechifyBackend(api_key="...", cache=AudioCache(100))
        result = await backend.synthesize("Namaste!", VoiceConfig(voice_id="henry"))
        await backend.shutdown()
    """

    metered = True

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        cache: Optional[AudioCache] = None,
        timeout: float = 30.0,
        max_input_chars: int = 2000,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.cache = cache
        self.timeout = timeout
        self.max_input_chars = max_input_chars
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "premium"

    def is_available(self) -> bool:
        return bool(self.api_key)

    def supported_languages(self) -> list[str]:
        return ["en-IN", "hi-IN", "en-GB", "en-US"]

    def prepare_text(self, text: str) -> str:
        """Sanitize and cap ``text``; the result is what is voiced and billed."""
        clean = sanitize(text)
        if len(clean) > self.max_input_chars:
            logger.warning("Premium text truncated from %d to %d chars", len(clean), self.max_input_chars)
            clean = clean[: self.max_input_chars - 3] + "..."
        return clean

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def synthesize(
        self,
        text: str,
        voice_config: Optional[VoiceConfig] = None,
    ) -> TTSResult:
        """Synthesize via the vendor, consulting the cache first.

        Raises:
            SynthesisError: On an unknown voice or empty text.
            VendorError: On any vendor, transport or payload failure.
        """
        config = voice_config or VoiceConfig()
        if not self.is_available():
            raise VendorError("Premium TTS not configured", recoverable=False)

        voice_id = resolve_voice_id(config.voice_id)
        prepared = self.prepare_text(text)
        if not prepared:
            raise SynthesisError("No speakable text", engine_name=self.name, recoverable=False)

        language = detect_language(prepared, config.language)
        speed = clamp_rate(config.speed)

        cache_key = None
        if self.cache is not None:
            cache_key = self.cache.make_key(prepared, voice_id, self.model)
            audio = self.cache.get(cache_key)
            if audio is not None:
                logger.debug("Premium cache hit for voice %s", voice_id)
                return self._result(audio, prepared, voice_id, language, speed, cached=True)

        audio = await self._request_audio(prepared, voice_id, language)

        if self.cache is not None and cache_key is not None:
            self.cache.put(cache_key, audio)

        logger.info(
            "Premium synthesis: %d chars, %d bytes, voice=%s, lang=%s",
            len(prepared), len(audio), voice_id, language,
        )
        return self._result(audio, prepared, voice_id, language, speed, cached=False)

    async def _request_audio(self, text: str, voice_id: str, language: str) -> bytes:
        payload = {
            "input": text,
            "voice_id": voice_id,
            "audio_format": "mp3",
            "model": self.model,
            "language": language,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._get_client().post(
                self.api_url, json=payload, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException:
            raise VendorError("Premium TTS request timed out") from None
        except httpx.RequestError as exc:
            raise VendorError(f"Premium TTS request failed: {exc}") from exc

        if response.status_code == 401:
            raise VendorError("TTS authentication failed", status_code=401, recoverable=False)
        if response.status_code == 429:
            raise VendorError("TTS rate limit exceeded. Please try again later.", status_code=429)
        if response.status_code >= 400:
            logger.error("Premium TTS HTTP %d: %s", response.status_code, response.text[:200])
            raise VendorError(
                f"TTS service error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise VendorError("Invalid response from TTS service") from None

        audio_b64 = data.get("audio_data") if isinstance(data, dict) else None
        if not audio_b64:
            raise VendorError("Invalid response from TTS service")

        try:
            return base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError):
            raise VendorError("Invalid audio payload from TTS service") from None

    def _result(
        self,
        audio: bytes,
        text: str,
        voice_id: str,
        language: str,
        speed: float,
        cached: bool,
    ) -> TTSResult:
        return TTSResult(
            audio_data=audio,
            format=AudioFormat.MP3,
            engine_name=self.name,
            text=text,
            voice_id=voice_id,
            language=language,
            model=self.model,
            cached=cached,
            speed=speed,
        )

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
