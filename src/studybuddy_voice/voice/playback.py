"""
Playback of synthesized speech.

The PlaybackController owns at most one playing handle. Starting a new
utterance or calling ``stop()`` always closes the previous handle first, so
audio never overlaps and player processes and temp files are never leaked.

Audio reaches the speakers through an AudioSink:
- SubprocessAudioSink plays encoded audio (MP3/WAV) with a system player
- the device speech backend acts as the sink for DEVICE results
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from ..exceptions import PlaybackError
from .engines.base import AudioFormat, TTSResult, clamp_rate

logger = logging.getLogger("studybuddy-voice.voice.playback")


class PlaybackEventType(Enum):
    STARTED = "started"
    ENDED = "ended"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass
class PlaybackEvent:
    type: PlaybackEventType
    utterance_id: int
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type != PlaybackEventType.STARTED


class PlaybackHandle(ABC):
    """One utterance being played."""

    @abstractmethod
    async def wait(self) -> None:
        """Return when playback finishes or the handle is closed.

        Raises:
            PlaybackError: If playback failed.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Stop playback and release resources. Must be idempotent."""
        ...


class AudioSink(ABC):
    """Something that can start playing a TTSResult."""

    @abstractmethod
    async def open(self, result: TTSResult) -> PlaybackHandle:
        """Start playback of ``result``.

        Raises:
            PlaybackError: If playback cannot start.
        """
        ...


# ---------------------------------------------------------------------------
# Encoded audio through a system player
# ---------------------------------------------------------------------------

# Player command templates; "{path}" is replaced with the audio file
_PLAYERS: list[tuple[str, list[str]]] = [
    ("ffplay", ["-nodisp", "-autoexit", "-loglevel", "quiet", "{path}"]),
    ("mpg123", ["-q", "{path}"]),
    ("paplay", ["{path}"]),
    ("afplay", ["{path}"]),
]


class SubprocessHandle(PlaybackHandle):
    def __init__(self, process: asyncio.subprocess.Process, path: str, player: str) -> None:
        self.process = process
        self.path = path
        self.player = player
        self._closed = False

    async def wait(self) -> None:
        returncode = await self.process.wait()
        if self._closed or returncode < 0:
            # Terminated on purpose
            return
        if returncode != 0:
            raise PlaybackError(
                f"{self.player} exited with code {returncode}",
                details={"player": self.player, "returncode": returncode},
            )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class SubprocessAudioSink(AudioSink):
    """Plays encoded audio by writing a temp file and spawning a system player.

    Args:
        players: Ordered (binary, args) candidates; the first one on PATH is used.
    """

    def __init__(self, players: Optional[list[tuple[str, list[str]]]] = None) -> None:
        self.players = players if players is not None else list(_PLAYERS)

    def find_player(self) -> Optional[tuple[str, list[str]]]:
        for binary, args in self.players:
            path = shutil.which(binary)
            if path:
                return path, args
        return None

    async def open(self, result: TTSResult) -> PlaybackHandle:
        if result.format == AudioFormat.DEVICE or not result.audio_data:
            raise PlaybackError("No encoded audio to play")

        player = self.find_player()
        if player is None:
            raise PlaybackError("No audio player found (tried ffplay, mpg123, paplay, afplay)")
        binary, args = player

        fd, path = tempfile.mkstemp(suffix=f".{result.format.value}", prefix="studybuddy-tts-")
        with os.fdopen(fd, "wb") as fh:
            fh.write(result.audio_data)

        cmd = [binary] + [a.replace("{path}", path) for a in args]
        rate = clamp_rate(result.speed)
        if rate != 1.0 and os.path.basename(binary) == "ffplay":
            cmd[1:1] = ["-af", f"atempo={rate}"]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            os.unlink(path)
            raise PlaybackError(f"Failed to start {binary}: {exc}") from exc

        logger.debug("Playing %d bytes with %s", len(result.audio_data), binary)
        return SubprocessHandle(process, path, os.path.basename(binary))


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PlaybackController:
    """Plays one utterance at a time.

    Usage:
        controller = PlaybackController(SubprocessAudioSink())
        async for event in controller.play(result):
            if event.terminal:
                ...
        controller.stop()
    """

    def __init__(
        self,
        sink: AudioSink,
        format_sinks: Optional[dict[AudioFormat, AudioSink]] = None,
    ) -> None:
        self.sink = sink
        self.format_sinks: dict[AudioFormat, AudioSink] = dict(format_sinks or {})
        self._handle: Optional[PlaybackHandle] = None
        self._generation = 0

    def register_sink(self, fmt: AudioFormat, sink: AudioSink) -> None:
        self.format_sinks[fmt] = sink

    @property
    def is_playing(self) -> bool:
        return self._handle is not None

    def stop(self) -> None:
        """Stop the current utterance, if any. Safe to call at any time."""
        self._generation += 1
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
            logger.debug("Playback stopped")

    async def play(self, result: TTSResult) -> AsyncIterator[PlaybackEvent]:
        """Play ``result``, yielding STARTED then one terminal event.

        A later ``play()`` or ``stop()`` ends this one with CANCELLED.
        """
        self.stop()
        generation = self._generation
        sink = self.format_sinks.get(result.format, self.sink)

        try:
            handle = await sink.open(result)
        except PlaybackError as exc:
            logger.warning("Playback failed to start: %s", exc)
            yield PlaybackEvent(PlaybackEventType.ERRORED, generation, str(exc))
            return

        if generation != self._generation:
            handle.close()
            yield PlaybackEvent(PlaybackEventType.CANCELLED, generation)
            return

        self._handle = handle
        try:
            yield PlaybackEvent(PlaybackEventType.STARTED, generation)
            try:
                await handle.wait()
            except PlaybackError as exc:
                if generation == self._generation:
                    logger.warning("Playback error: %s", exc)
                    yield PlaybackEvent(PlaybackEventType.ERRORED, generation, str(exc))
                    return

            if generation != self._generation:
                yield PlaybackEvent(PlaybackEventType.CANCELLED, generation)
            else:
                yield PlaybackEvent(PlaybackEventType.ENDED, generation)
        finally:
            if self._handle is handle:
                self._handle = None
            handle.close()
