"""
On-device (unmetered) fallback speech.

Speech is produced locally by a SpeechDriver, by default an ``espeak-ng``
subprocess. The backend is also the AudioSink for DEVICE results: it picks a
voice for the requested language, keeps long utterances alive with a
periodic pause/resume, and retries once with the English (India) voice if
the chosen voice fails.
"""

import asyncio
import logging
import os
import shutil
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ...exceptions import FallbackUnavailableError, PlaybackError, SynthesisError
from ..playback import AudioSink, PlaybackHandle
from ..sanitizer import sanitize
from .base import AudioFormat, SpeechBackend, TTSResult, VoiceConfig, clamp_rate

logger = logging.getLogger("studybuddy-voice.voice.device")

DEFAULT_LANGUAGE_PREFERENCES = ["hi-IN", "hi", "en-IN", "en"]
RETRY_LANGUAGE = "en-IN"


@dataclass(frozen=True)
class DeviceVoice:
    id: str
    name: str
    language: str
    gender: Optional[str] = None


def _norm(tag: str) -> str:
    return tag.replace("_", "-").lower()


def select_voice(
    voices: list[DeviceVoice],
    language: Optional[str],
    preferences: Optional[list[str]] = None,
) -> Optional[DeviceVoice]:
    """Pick a voice: exact tag, then language family, then preference order, then any.

    Args:
        voices: Installed voices.
        language: Requested BCP-47 tag, e.g. "hi-IN".
        preferences: Ordered fallback tags.

    Returns:
        The chosen voice, or None if no voices exist.
    """
    if not voices:
        return None

    def match(tag: str) -> Optional[DeviceVoice]:
        wanted = _norm(tag)
        for voice in voices:
            if _norm(voice.language) == wanted:
                return voice
        family = wanted.split("-")[0]
        for voice in voices:
            if _norm(voice.language).split("-")[0] == family:
                return voice
        return None

    for tag in ([language] if language else []) + list(preferences or DEFAULT_LANGUAGE_PREFERENCES):
        voice = match(tag)
        if voice is not None:
            return voice
    return voices[0]


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------


class DeviceUtterance(ABC):
    """A running on-device utterance."""

    @abstractmethod
    async def wait(self) -> None:
        """Return when speech ends or is cancelled.

        Raises:
            PlaybackError: If the voice failed.
        """
        ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> None: ...

    @abstractmethod
    def cancel(self) -> None: ...

    @property
    @abstractmethod
    def speaking(self) -> bool: ...


class SpeechDriver(ABC):
    """Platform speech capability."""

    @abstractmethod
    def is_available(self) -> bool: ...

    @abstractmethod
    def list_voices(self) -> list[DeviceVoice]: ...

    async def load_voices(self) -> list[DeviceVoice]:
        """Discover installed voices; drivers with a slow listing override this."""
        return self.list_voices()

    @abstractmethod
    async def speak(
        self,
        text: str,
        voice: DeviceVoice,
        rate: float = 1.0,
        pitch: float = 1.0,
    ) -> DeviceUtterance:
        """Start speaking ``text``.

        Raises:
            PlaybackError: If speech cannot start.
        """
        ...


class EspeakUtterance(DeviceUtterance):
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self._cancelled = False
        self._paused = False

    @property
    def speaking(self) -> bool:
        return self.process.returncode is None and not self._cancelled

    async def wait(self) -> None:
        # Read stderr while waiting; a full pipe would stall the child
        _, stderr = await self.process.communicate()
        returncode = self.process.returncode
        if self._cancelled or returncode < 0:
            return
        if returncode != 0:
            raise PlaybackError(
                f"espeak exited with code {returncode}",
                details={"stderr": (stderr or b"").decode(errors="replace")[:200]},
            )

    def _signal(self, sig: int) -> None:
        if self.process.returncode is None:
            try:
                os.kill(self.process.pid, sig)
            except ProcessLookupError:
                pass

    def pause(self) -> None:
        self._signal(signal.SIGSTOP)
        self._paused = True

    def resume(self) -> None:
        self._signal(signal.SIGCONT)
        self._paused = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._paused:
            self.resume()
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


class EspeakDriver(SpeechDriver):
    """espeak-ng (or espeak) as the on-device speech engine.

    Voices are listed once by :meth:`load_voices`; :meth:`list_voices` only
    reads that cache. Utterance text is fed on stdin, never on the command
    line, so text such as "-3 plus 5" cannot be taken for an option.
    """

    BASE_WPM = 175
    LIST_TIMEOUT = 10.0

    def __init__(self, binary: Optional[str] = None) -> None:
        self.binary = binary or shutil.which("espeak-ng") or shutil.which("espeak")
        self._voices: Optional[list[DeviceVoice]] = None

    def is_available(self) -> bool:
        return self.binary is not None

    def list_voices(self) -> list[DeviceVoice]:
        return self._voices or []

    async def load_voices(self, refresh: bool = False) -> list[DeviceVoice]:
        """Run ``espeak --voices`` and cache the parsed result.

        A failed listing is cached as empty, so later utterances do not pay
        for it again; pass ``refresh=True`` to retry.
        """
        if self._voices is not None and not refresh:
            return self._voices
        if not self.binary:
            return []
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "--voices",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Could not list espeak voices: %s", exc)
            self._voices = []
            return self._voices

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.LIST_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Listing espeak voices timed out after %.0fs", self.LIST_TIMEOUT)
            self._voices = []
            return self._voices

        if process.returncode != 0:
            logger.warning("espeak --voices exited with code %s", process.returncode)
            self._voices = []
            return self._voices

        self._voices = parse_espeak_voices(stdout.decode(errors="replace"))
        logger.debug("Found %d espeak voices", len(self._voices))
        return self._voices

    async def speak(
        self,
        text: str,
        voice: DeviceVoice,
        rate: float = 1.0,
        pitch: float = 1.0,
    ) -> DeviceUtterance:
        if not self.binary:
            raise PlaybackError("espeak is not installed")
        cmd = [
            self.binary,
            "-v", voice.id,
            "-s", str(int(self.BASE_WPM * clamp_rate(rate))),
            "-p", str(max(0, min(99, int(50 * pitch)))),
            "-b", "1",
            "--stdin",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PlaybackError(f"Failed to start espeak: {exc}") from exc

        try:
            process.stdin.write(text.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            # espeak died before reading; its exit status surfaces from wait()
            logger.debug("espeak closed stdin early: %s", exc)
        finally:
            process.stdin.close()
        return EspeakUtterance(process)


def parse_espeak_voices(output: str) -> list[DeviceVoice]:
    """Parse ``espeak --voices`` output.

    Example line: `` 5  hi              --/M      Hindi              inc/hi``
    """
    voices: list[DeviceVoice] = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4:
            continue
        language, age_gender, name = parts[1], parts[2], parts[3]
        gender = {"M": "male", "F": "female"}.get(age_gender.split("/")[-1])
        voices.append(DeviceVoice(id=language, name=name.replace("_", " "), language=language, gender=gender))
    return voices


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class DeviceSpeechHandle(PlaybackHandle):
    """Playback handle for one device utterance, with keep-alive and one retry."""

    def __init__(
        self,
        backend: "DeviceSpeechBackend",
        utterance: DeviceUtterance,
        result: TTSResult,
        voice: DeviceVoice,
    ) -> None:
        self.backend = backend
        self.utterance = utterance
        self.result = result
        self.voice = voice
        self._closed = False
        self._retried = False
        self._keepalive: Optional[asyncio.Task] = None
        self._start_keepalive()

    def _start_keepalive(self) -> None:
        self._keepalive = asyncio.get_running_loop().create_task(self._keepalive_loop())

    async def _keepalive_loop(self) -> None:
        # Long utterances stall on some platforms unless nudged periodically
        while True:
            await asyncio.sleep(self.backend.keepalive_interval)
            if self._closed or not self.utterance.speaking:
                return
            self.utterance.pause()
            self.utterance.resume()

    async def wait(self) -> None:
        try:
            await self.utterance.wait()
        except PlaybackError as exc:
            if self._closed or self._retried:
                raise
            self._retried = True
            fallback_voice = self.backend.voice_for(RETRY_LANGUAGE)
            if fallback_voice is None:
                raise
            logger.warning("Device voice %s failed (%s), retrying with %s", self.voice.id, exc, fallback_voice.id)
            self.voice = fallback_voice
            self.utterance = await self.backend.driver.speak(
                self.result.text, fallback_voice, self.result.speed
            )
            if self._closed:
                self.utterance.cancel()
                return
            await self.utterance.wait()
        finally:
            if self._keepalive is not None:
                self._keepalive.cancel()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._keepalive is not None:
            self._keepalive.cancel()
        self.utterance.cancel()


class DeviceSpeechBackend(SpeechBackend, AudioSink):
    """Unmetered fallback backend speaking through a local SpeechDriver.

    Usage:
        device = DeviceSpeechBackend()
        result = await device.synthesize("Hello", VoiceConfig(language="en-IN"))
        handle = await device.open(result)
        await handle.wait()
    """

    metered = False

    def __init__(
        self,
        driver: Optional[SpeechDriver] = None,
        keepalive_interval: float = 10.0,
        language_preferences: Optional[list[str]] = None,
    ) -> None:
        self.driver = driver or EspeakDriver()
        self.keepalive_interval = keepalive_interval
        self.language_preferences = language_preferences or list(DEFAULT_LANGUAGE_PREFERENCES)

    @property
    def name(self) -> str:
        return "device"

    def is_available(self) -> bool:
        return self.driver.is_available()

    async def warmup(self) -> None:
        if self.is_available():
            voices = await self.driver.load_voices()
            logger.info("Device speech ready with %d voices", len(voices))

    def supported_languages(self) -> list[str]:
        return sorted({v.language for v in self.driver.list_voices()})

    def voice_for(self, language: Optional[str]) -> Optional[DeviceVoice]:
        return select_voice(self.driver.list_voices(), language, self.language_preferences)

    async def synthesize(
        self,
        text: str,
        voice_config: Optional[VoiceConfig] = None,
    ) -> TTSResult:
        """Prepare a device utterance; nothing is spoken until ``open``.

        Raises:
            FallbackUnavailableError: If there is no speech capability or voice.
            SynthesisError: If no speakable text remains.
        """
        config = voice_config or VoiceConfig()
        if not self.is_available():
            raise FallbackUnavailableError()

        clean = sanitize(text)
        if not clean:
            raise SynthesisError("No speakable text", engine_name=self.name, recoverable=False)

        # No-op once warmup has listed the voices
        await self.driver.load_voices()
        voice = self.voice_for(config.language)
        if voice is None:
            raise FallbackUnavailableError("No on-device voices installed")

        return TTSResult(
            audio_data=b"",
            format=AudioFormat.DEVICE,
            engine_name=self.name,
            text=clean,
            voice_id=voice.id,
            language=voice.language,
            speed=clamp_rate(config.speed),
        )

    async def open(self, result: TTSResult) -> PlaybackHandle:
        voices = self.driver.list_voices()
        voice = next((v for v in voices if v.id == result.voice_id), None) or self.voice_for(result.language)
        if voice is None:
            raise PlaybackError("No on-device voices installed")
        utterance = await self.driver.speak(result.text, voice, result.speed)
        logger.debug("Device speech started with voice %s", voice.id)
        return DeviceSpeechHandle(self, utterance, result, voice)
