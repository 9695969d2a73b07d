"""
StudyBuddy Voice service entry point.

Builds the settings from the environment, prepares the database schema and
serves the HTTP API with uvicorn.
"""

import logging
from typing import Optional

import uvicorn
from starlette.applications import Starlette

from .config import VoiceSettings
from .server import VoiceServer
from .plans.resolver import PlanResolver
from .storage.database import SubscriptionStore
from .storage.ledger import UsageLedger
from .voice.cache import AudioCache
from .voice.engines.base import AudioFormat
from .voice.engines.device import DeviceSpeechBackend
from .voice.engines.premium import SpeechifyBackend
from .voice.playback import PlaybackController, SubprocessAudioSink
from .voice.router import TTSRouter

logger = logging.getLogger("studybuddy-voice")


def create_server(settings: Optional[VoiceSettings] = None) -> VoiceServer:
    """Build a VoiceServer with its store schema in place."""
    settings = settings or VoiceSettings.from_env()
    store = SubscriptionStore(
        settings.database_url, default_limit=settings.monthly_character_limit
    )
    store.create_schema()
    return VoiceServer(settings, store=store)


def create_app(settings: Optional[VoiceSettings] = None) -> Starlette:
    return create_server(settings).app


def create_router(
    student_id: Optional[str],
    settings: Optional[VoiceSettings] = None,
    store: Optional[SubscriptionStore] = None,
) -> TTSRouter:
    """Wire a per-session TTSRouter: premium + device backends, caches, ledger.

    Call ``await router.initialize()`` before the first ``speak``.
    """
    settings = settings or VoiceSettings.from_env()
    store = store or SubscriptionStore(
        settings.database_url, default_limit=settings.monthly_character_limit
    )
    premium = SpeechifyBackend(
        api_key=settings.speechify_api_key,
        api_url=settings.speechify_api_url,
        model=settings.tts_model,
        cache=AudioCache(
            max_entries=settings.server_cache_size,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix_chars=settings.cache_key_prefix_chars,
        ),
        timeout=settings.premium_timeout_seconds,
        max_input_chars=settings.max_input_chars,
    )
    device = DeviceSpeechBackend(keepalive_interval=settings.keepalive_interval_seconds)
    playback = PlaybackController(SubprocessAudioSink(), {AudioFormat.DEVICE: device})
    return TTSRouter(
        premium=premium,
        fallback=device,
        playback=playback,
        ledger=UsageLedger(store),
        resolver=PlanResolver(store),
        student_id=student_id,
        client_cache=AudioCache(
            max_entries=settings.client_cache_size,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix_chars=settings.cache_key_prefix_chars,
        ),
        premium_timeout=settings.premium_timeout_seconds,
        default_voice=settings.default_voice,
        default_language=settings.default_language,
        low_quota_threshold=settings.low_quota_threshold,
    )


def main() -> None:
    """Main entry point for the StudyBuddy voice service."""
    settings = VoiceSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.speechify_api_key:
        logger.warning("SPEECHIFY_API_KEY not set, premium voice is disabled")
    if not settings.operator_token:
        logger.warning("OPERATOR_TOKEN not set, operator actions are unauthenticated")

    server = create_server(settings)
    logger.info("Serving on %s:%d", settings.host, settings.port)
    uvicorn.run(server.app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
