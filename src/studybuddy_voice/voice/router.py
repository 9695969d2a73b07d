"""
TTS Router for plan-aware, quota-aware backend selection.

For every utterance the router decides between the metered premium backend
and the unmetered on-device fallback:

  1. No student identity            -> fallback
  2. Plan status not loaded yet     -> fallback
  3. Basic plan                     -> fallback, always
  4. Pro, entitled, quota covers it -> premium
  5. Anything else                  -> fallback

A premium attempt synthesizes first and commits usage through the ledger
only after the vendor succeeded, so failed, timed out or cancelled
utterances are never billed. Any premium-side failure (vendor, ledger
denial, ledger outage, playback) degrades to the fallback; only a failing
fallback is surfaced as an error.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..exceptions import FallbackUnavailableError, LedgerUnavailableError, SynthesisError
from ..models import Plan, PlanStatus, ReserveResult, RouteReason, SpeakRequest, StatusLabel, UsageInfo
from ..plans.resolver import PlanResolver, status_message
from ..storage.ledger import UsageLedger
from .cache import AudioCache
from .engines.base import AudioFormat, SpeechBackend, TTSResult, VoiceConfig
from .engines.premium import SPEECHIFY_VOICES, PremiumVoice, resolve_voice_id
from .playback import PlaybackController, PlaybackEventType

logger = logging.getLogger("studybuddy-voice.voice.router")

PREVIEW_TEXT = "Hello! I'm {name}, your study buddy. Let's learn together!"


class RouteState(Enum):
    IDLE = "idle"
    ROUTING = "routing"
    PREMIUM_ATTEMPT = "premium_attempt"
    PREMIUM_SUCCESS = "premium_success"
    PREMIUM_DENIED = "premium_denied"
    PREMIUM_FAILED = "premium_failed"
    FALLBACK_ATTEMPT = "fallback_attempt"
    FALLBACK_SUCCESS = "fallback_success"
    FALLBACK_FAILED = "fallback_failed"
    DONE = "done"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class SpeakOutcome:
    """What happened to one utterance.

    Attributes:
        state: Terminal state (DONE, CANCELLED or SKIPPED).
        backend: Name of the backend that was heard, None if nothing was.
        reason: Why premium was not used (or why nothing was heard).
        billed_characters: Characters committed to the ledger.
        path: Every state visited, in order.
        error: User-facing error, set only when both backends failed.
    """

    state: RouteState = RouteState.IDLE
    backend: Optional[str] = None
    reason: Optional[RouteReason] = None
    billed_characters: int = 0
    path: list[RouteState] = field(default_factory=list)
    error: Optional[str] = None

    def enter(self, state: RouteState) -> None:
        self.state = state
        self.path.append(state)


class _Stopped(Exception):
    """The utterance was superseded by stop() or a newer speak()."""


class TTSRouter:
    """Per-session router between the premium and the fallback backend.

    Usage:
        router = TTSRouter(premium, device, playback, ledger=ledger,
                           resolver=resolver, student_id="student-1")
        await router.initialize()
        outcome = await router.speak(SpeakRequest(text="Photosynthesis is..."))
        router.stop()
        await router.shutdown()
    """

    def __init__(
        self,
        premium: SpeechBackend,
        fallback: SpeechBackend,
        playback: PlaybackController,
        ledger: Optional[UsageLedger] = None,
        resolver: Optional[PlanResolver] = None,
        student_id: Optional[str] = None,
        client_cache: Optional[AudioCache] = None,
        premium_timeout: float = 30.0,
        default_voice: str = "henry",
        default_language: str = "en-IN",
        low_quota_threshold: int = 10000,
    ) -> None:
        self.premium = premium
        self.fallback = fallback
        self.playback = playback
        self.ledger = ledger
        self.resolver = resolver
        self.student_id = student_id
        self.client_cache = client_cache
        self.premium_timeout = premium_timeout
        self.voice_id = resolve_voice_id(default_voice)
        self.default_language = default_language
        self.low_quota_threshold = low_quota_threshold

        self.plan_status: Optional[PlanStatus] = None
        self.error: Optional[str] = None
        self.last_outcome: Optional[SpeakOutcome] = None
        self._generation = 0
        self._synthesis_task: Optional[asyncio.Task] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the plan status and warm up backends."""
        if self._initialized:
            return
        for backend in (self.premium, self.fallback):
            try:
                await backend.warmup()
            except Exception as exc:
                logger.warning("Warmup failed for backend '%s': %s", backend.name, exc)
        await self.refresh_usage()
        self._initialized = True
        logger.info(
            "TTSRouter initialized: student=%s, plan=%s",
            self.student_id,
            self.plan_status.plan.value if self.plan_status else None,
        )

    async def refresh_usage(self) -> Optional[PlanStatus]:
        """Re-read the plan status from the store."""
        if not self.student_id or self.resolver is None:
            self.plan_status = None
            return None
        self.plan_status = await asyncio.to_thread(self.resolver.resolve, self.student_id)
        return self.plan_status

    async def shutdown(self) -> None:
        self.stop()
        for backend in (self.premium, self.fallback):
            try:
                await backend.shutdown()
            except Exception as exc:
                logger.warning("Error shutting down backend '%s': %s", backend.name, exc)
        self._initialized = False
        logger.info("TTSRouter shut down")

    # ------------------------------------------------------------------
    # Read model and voice selection
    # ------------------------------------------------------------------

    @property
    def voices(self) -> list[PremiumVoice]:
        return list(SPEECHIFY_VOICES.values())

    def set_voice(self, voice_id: str) -> None:
        """Select the premium voice for later utterances.

        Raises:
            SynthesisError: If the voice is unknown.
        """
        self.voice_id = resolve_voice_id(voice_id)

    @property
    def would_use_premium(self) -> bool:
        status = self.plan_status
        return bool(
            self.student_id
            and status is not None
            and status.plan == Plan.PRO
            and status.can_use_premium
        )

    @property
    def usage_info(self) -> UsageInfo:
        status = self.plan_status or PlanStatus.safe_default(self.student_id)
        return UsageInfo.from_status(status, using_premium=self.would_use_premium)

    @property
    def status_message(self) -> str:
        status = self.plan_status or PlanStatus.safe_default(self.student_id)
        return status_message(status, self.would_use_premium, self.low_quota_threshold)

    @property
    def is_speaking(self) -> bool:
        return self.playback.is_playing or (
            self._synthesis_task is not None and not self._synthesis_task.done()
        )

    # ------------------------------------------------------------------
    # Speaking
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Cancel in-flight synthesis and silence playback. Idempotent."""
        self._generation += 1
        task, self._synthesis_task = self._synthesis_task, None
        if task is not None and not task.done():
            task.cancel()
        self.playback.stop()

    async def preview_voice(self, voice_id: str) -> SpeakOutcome:
        voice = SPEECHIFY_VOICES[resolve_voice_id(voice_id)]
        return await self.speak(
            SpeakRequest(text=PREVIEW_TEXT.format(name=voice.name), voice_id=voice.id)
        )

    async def speak(self, request: SpeakRequest) -> SpeakOutcome:
        """Route, synthesize, bill and play one utterance.

        Never raises for backend, ledger or playback failures; inspect the
        returned outcome (and ``self.error``) instead.
        """
        self.stop()
        generation = self._generation
        self.error = None

        outcome = SpeakOutcome()
        outcome.enter(RouteState.ROUTING)
        self.last_outcome = outcome

        prepared = self.premium.prepare_text(request.text)
        if not prepared:
            outcome.enter(RouteState.SKIPPED)
            return outcome

        voice_id = self.voice_id
        if request.voice_id:
            try:
                voice_id = resolve_voice_id(request.voice_id)
            except SynthesisError as exc:
                logger.warning("%s, using '%s'", exc, self.voice_id)
        language = request.language or self.default_language

        try:
            reason = self._route(len(prepared))
            if reason is None:
                heard = await self._premium_attempt(outcome, generation, prepared, voice_id, language, request.speed)
                if heard:
                    outcome.enter(RouteState.DONE)
                    return outcome
            else:
                outcome.reason = reason
                logger.info("Routing to fallback: %s", reason.value)

            await self._fallback_attempt(outcome, generation, request.text, language, request.speed)
        except _Stopped:
            outcome.enter(RouteState.CANCELLED)
            return outcome

        outcome.enter(RouteState.DONE)
        return outcome

    def _route(self, character_count: int) -> Optional[RouteReason]:
        """Return None to try premium, or the reason to skip it."""
        if not self.student_id or self.ledger is None:
            return RouteReason.NO_IDENTITY
        status = self.plan_status
        if status is None:
            return RouteReason.PLAN_NOT_LOADED
        if status.plan == Plan.BASIC:
            return RouteReason.BASIC_PLAN
        if status.can_use_premium and status.tts_remaining >= character_count:
            return None
        if status.label in (StatusLabel.INACTIVE, StatusLabel.EXPIRED):
            return RouteReason.SUBSCRIPTION_INACTIVE
        status.can_use_premium = False
        return RouteReason.QUOTA_EXHAUSTED

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Stopped()

    async def _premium_attempt(
        self,
        outcome: SpeakOutcome,
        generation: int,
        prepared: str,
        voice_id: str,
        language: str,
        speed: float,
    ) -> bool:
        """Try the premium path. Returns True if premium audio was heard."""
        outcome.enter(RouteState.PREMIUM_ATTEMPT)
        config = VoiceConfig(voice_id=voice_id, language=language, speed=speed)

        try:
            result = await self._synthesize_premium(generation, prepared, config)
        except asyncio.TimeoutError:
            logger.warning("Premium synthesis timed out after %.1fs", self.premium_timeout)
            outcome.enter(RouteState.PREMIUM_FAILED)
            outcome.reason = RouteReason.VENDOR_ERROR
            return False
        except _Stopped:
            raise
        except Exception as exc:
            logger.warning("Premium synthesis failed, falling back: %s", exc)
            outcome.enter(RouteState.PREMIUM_FAILED)
            outcome.reason = RouteReason.VENDOR_ERROR
            return False

        # Nothing may be billed once the utterance has been superseded
        self._check_current(generation)

        billed = len(result.text)
        try:
            reserve = await asyncio.to_thread(self.ledger.check_and_reserve, self.student_id, billed)
        except LedgerUnavailableError as exc:
            logger.warning("Ledger unavailable, failing closed to fallback: %s", exc)
            outcome.enter(RouteState.PREMIUM_DENIED)
            outcome.reason = RouteReason.LEDGER_UNAVAILABLE
            return False

        self._apply_reserve(reserve)
        if not reserve.granted:
            outcome.enter(RouteState.PREMIUM_DENIED)
            outcome.reason = reserve.reason or RouteReason.QUOTA_EXHAUSTED
            if reserve.reason not in (RouteReason.QUOTA_EXHAUSTED, None):
                await self._refresh_quietly()
            return False
        outcome.billed_characters = billed

        self._check_current(generation)
        event_type, error = await self._play(result)
        if event_type == PlaybackEventType.CANCELLED:
            raise _Stopped()
        if event_type == PlaybackEventType.ERRORED:
            logger.warning("Premium playback failed, falling back: %s", error)
            outcome.enter(RouteState.PREMIUM_FAILED)
            outcome.reason = RouteReason.PLAYBACK_ERROR
            return False

        outcome.enter(RouteState.PREMIUM_SUCCESS)
        outcome.backend = self.premium.name
        outcome.reason = None
        return True

    async def _synthesize_premium(self, generation: int, prepared: str, config: VoiceConfig) -> TTSResult:
        model = getattr(self.premium, "model", self.premium.name)
        cache_key = None
        if self.client_cache is not None:
            cache_key = self.client_cache.make_key(prepared, config.voice_id, model)
            audio = self.client_cache.get(cache_key)
            if audio is not None:
                return TTSResult(
                    audio_data=audio,
                    format=AudioFormat.MP3,
                    engine_name=self.premium.name,
                    text=prepared,
                    voice_id=config.voice_id,
                    language=config.language,
                    model=model,
                    cached=True,
                    speed=config.speed,
                )

        task = asyncio.ensure_future(
            asyncio.wait_for(self.premium.synthesize(prepared, config), self.premium_timeout)
        )
        self._synthesis_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise _Stopped() from None
            raise
        finally:
            if self._synthesis_task is task:
                self._synthesis_task = None

        if self.client_cache is not None and cache_key is not None:
            self.client_cache.put(cache_key, result.audio_data)
        return result

    async def _fallback_attempt(
        self,
        outcome: SpeakOutcome,
        generation: int,
        text: str,
        language: str,
        speed: float,
    ) -> None:
        outcome.enter(RouteState.FALLBACK_ATTEMPT)
        premium_failed = RouteState.PREMIUM_FAILED in outcome.path or RouteState.PREMIUM_DENIED in outcome.path

        try:
            result = await self.fallback.synthesize(text, VoiceConfig(language=language, speed=speed))
        except FallbackUnavailableError:
            logger.info("No on-device speech available, utterance skipped")
            outcome.enter(RouteState.FALLBACK_FAILED)
            outcome.reason = RouteReason.FALLBACK_UNAVAILABLE
            return
        except Exception as exc:
            self._fail(outcome, f"Fallback synthesis failed: {exc}", premium_failed)
            return

        self._check_current(generation)
        event_type, error = await self._play(result)
        if event_type == PlaybackEventType.CANCELLED:
            raise _Stopped()
        if event_type == PlaybackEventType.ERRORED:
            self._fail(outcome, f"Fallback playback failed: {error}", premium_failed)
            return

        outcome.enter(RouteState.FALLBACK_SUCCESS)
        outcome.backend = self.fallback.name

    def _fail(self, outcome: SpeakOutcome, message: str, premium_failed: bool) -> None:
        logger.error("%s (premium %s)", message, "also failed" if premium_failed else "not attempted")
        outcome.enter(RouteState.FALLBACK_FAILED)
        outcome.reason = RouteReason.BOTH_FAILED
        outcome.error = "Voice playback failed"
        self.error = outcome.error

    async def _play(self, result: TTSResult) -> tuple[PlaybackEventType, Optional[str]]:
        last_type, last_error = PlaybackEventType.CANCELLED, None
        async for event in self.playback.play(result):
            last_type, last_error = event.type, event.error
        return last_type, last_error

    def _apply_reserve(self, reserve: ReserveResult) -> None:
        """Reconcile the cached status with the ledger's answer."""
        status = self.plan_status
        if status is None:
            return
        status.tts_used = reserve.characters_used
        status.tts_limit = reserve.characters_limit
        status.tts_remaining = reserve.remaining
        if reserve.granted:
            status.can_use_premium = reserve.remaining > 0
            if reserve.remaining == 0:
                status.label = StatusLabel.LIMIT_REACHED
        else:
            status.can_use_premium = False

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh_usage()
        except Exception as exc:
            logger.warning("Plan refresh failed: %s", exc)

    def get_status(self) -> dict[str, object]:
        return {
            "initialized": self._initialized,
            "student_id": self.student_id,
            "voice_id": self.voice_id,
            "usage": self.usage_info.model_dump(mode="json"),
            "status_message": self.status_message,
            "error": self.error,
            "backends": {
                backend.name: {
                    "available": backend.is_available(),
                    "metered": backend.metered,
                }
                for backend in (self.premium, self.fallback)
            },
        }
