"""
Tests for the premium (Speechify) backend.
"""

import base64
import json

import httpx
import pytest

from studybuddy_voice.exceptions import SynthesisError, VendorError
from studybuddy_voice.voice.cache import AudioCache
from studybuddy_voice.voice.engines.base import AudioFormat, VoiceConfig
from studybuddy_voice.voice.engines.premium import (
    SPEECHIFY_VOICES,
    SpeechifyBackend,
    detect_language,
    resolve_voice_id,
)

AUDIO = b"ID3\x04\x00fake-mp3"


def _ok_handler(calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"audio_data": base64.b64encode(AUDIO).decode()})
    return handler


def _backend(handler, cache=None, **kwargs) -> SpeechifyBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpeechifyBackend(api_key="test-key", cache=cache, client=client, **kwargs)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestDetectLanguage:
    def test_devanagari_forces_hindi(self):
        assert detect_language("नमस्ते", "en-IN") == "hi-IN"
        assert detect_language("Hello नमस्ते") == "hi-IN"

    def test_requested_hindi(self):
        assert detect_language("Namaste dost", "hi-IN") == "hi-IN"

    def test_default_english_india(self):
        assert detect_language("Hello") == "en-IN"
        assert detect_language("Hello", "en-US") == "en-IN"


class TestVoices:
    def test_catalog(self):
        assert set(SPEECHIFY_VOICES) == {
            "henry", "natasha", "george", "cliff", "mrbeast", "gwyneth", "oliver"
        }
        assert SPEECHIFY_VOICES["natasha"].gender == "female"
        assert SPEECHIFY_VOICES["george"].language_code == "en-GB"

    def test_default_resolves_to_henry(self):
        assert resolve_voice_id("default") == "henry"
        assert resolve_voice_id(None) == "henry"

    def test_unknown_voice(self):
        with pytest.raises(SynthesisError):
            resolve_voice_id("robot")


class TestPrepareText:
    def test_sanitizes(self):
        backend = SpeechifyBackend(api_key="k")
        assert backend.prepare_text("**Hi** 🎉") == "Hi"

    def test_truncates_with_ellipsis(self):
        backend = SpeechifyBackend(api_key="k", max_input_chars=2000)
        prepared = backend.prepare_text("a" * 2500)
        assert len(prepared) == 2000
        assert prepared.endswith("...")

    def test_short_text_not_truncated(self):
        backend = SpeechifyBackend(api_key="k", max_input_chars=2000)
        assert backend.prepare_text("a" * 2000) == "a" * 2000


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


class TestSynthesize:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        calls = []
        backend = _backend(_ok_handler(calls))
        result = await backend.synthesize("Hello **class**", VoiceConfig(voice_id="george"))

        assert len(calls) == 1
        req = calls[0]
        assert req.headers["Authorization"] == "Bearer test-key"
        body = json.loads(req.content)
        assert body == {
            "input": "Hello class",
            "voice_id": "george",
            "audio_format": "mp3",
            "model": "simba-multilingual",
            "language": "en-IN",
        }
        assert result.audio_data == AUDIO
        assert result.format == AudioFormat.MP3
        assert result.text == "Hello class"
        assert result.engine_name == "premium"
        assert not result.cached

    @pytest.mark.asyncio
    async def test_cache_hit_skips_vendor(self):
        calls = []
        cache = AudioCache(max_entries=10)
        backend = _backend(_ok_handler(calls), cache=cache)

        first = await backend.synthesize("Repeat me")
        second = await backend.synthesize("Repeat me")

        assert len(calls) == 1
        assert not first.cached
        assert second.cached
        assert second.audio_data == AUDIO

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, message", [
        (401, "TTS authentication failed"),
        (429, "TTS rate limit exceeded. Please try again later."),
        (500, "TTS service error: 500"),
    ])
    async def test_http_errors(self, status, message):
        backend = _backend(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(VendorError) as exc_info:
            await backend.synthesize("Hello")
        assert exc_info.value.status_code == status
        assert exc_info.value.message == message

    @pytest.mark.asyncio
    async def test_missing_audio_data(self):
        backend = _backend(lambda request: httpx.Response(200, json={"foo": "bar"}))
        with pytest.raises(VendorError, match="Invalid response"):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        backend = _backend(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(VendorError):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_bad_base64(self):
        backend = _backend(lambda request: httpx.Response(200, json={"audio_data": "***"}))
        with pytest.raises(VendorError):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)
        backend = _backend(handler)
        with pytest.raises(VendorError, match="timed out"):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)
        backend = _backend(handler)
        with pytest.raises(VendorError):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_failures_not_cached(self):
        cache = AudioCache(max_entries=10)
        backend = _backend(lambda request: httpx.Response(500), cache=cache)
        with pytest.raises(VendorError):
            await backend.synthesize("Hello")
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_not_configured(self):
        backend = SpeechifyBackend(api_key=None)
        assert not backend.is_available()
        with pytest.raises(VendorError):
            await backend.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_unknown_voice_makes_no_call(self):
        calls = []
        backend = _backend(_ok_handler(calls))
        with pytest.raises(SynthesisError):
            await backend.synthesize("Hello", VoiceConfig(voice_id="robot"))
        assert calls == []

    @pytest.mark.asyncio
    async def test_empty_text(self):
        calls = []
        backend = _backend(_ok_handler(calls))
        with pytest.raises(SynthesisError):
            await backend.synthesize("🎉🎉")
        assert calls == []

    @pytest.mark.asyncio
    async def test_shutdown_keeps_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(_ok_handler([])))
        backend = SpeechifyBackend(api_key="k", client=client)
        await backend.shutdown()
        assert not client.is_closed
        await client.aclose()
