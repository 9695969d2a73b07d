"""
HTTP service for premium speech and subscription actions.

Routes:
- POST /tts           Premium synthesis proxy; answers FALLBACK_TO_WEB_TTS
                      when the student is not entitled
- POST /subscription  Student and operator subscription actions
- GET  /status        Health, cache statistics and vendor availability

Operator actions require ``Authorization: Bearer <operator token>`` when an
operator token is configured.
"""

import asyncio
import base64
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import VoiceSettings
from .exceptions import (
    LedgerUnavailableError,
    NotFoundError,
    SubscriptionError,
    SynthesisError,
    UnauthorizedError,
    ValidationError,
    VendorError,
)
from .models import (
    Plan,
    PlanStatus,
    RouteReason,
    Subscription,
    UpgradeRequest,
    UpgradeStatus,
    UsageInfo,
)
from .plans.operations import SubscriptionService
from .plans.resolver import PlanResolver
from .storage.database import SubscriptionStore
from .storage.ledger import UsageLedger
from .voice.cache import AudioCache
from .voice.engines.base import VoiceConfig
from .voice.engines.premium import SpeechifyBackend

logger = logging.getLogger("studybuddy-voice.server")

FALLBACK_SIGNAL = "FALLBACK_TO_WEB_TTS"

OPERATOR_ACTIONS = frozenset({
    "get_requests",
    "approve_request",
    "reject_request",
    "block_student",
    "cancel_pro",
    "reset_usage",
    "check_expiry",
})


def _subscription_json(sub: Subscription) -> dict[str, Any]:
    return sub.model_dump(mode="json")


def _request_json(req: Optional[UpgradeRequest]) -> Optional[dict[str, Any]]:
    return req.model_dump(mode="json") if req is not None else None


def _status_json(status: PlanStatus) -> dict[str, Any]:
    data = status.model_dump(mode="json")
    data["label_display"] = status.label.display
    return data


class VoiceServer:
    """
    Starlette application wiring the premium backend, the plan resolver,
    the usage ledger and the subscription service.

    Attributes:
        settings: Service configuration
        store: Subscription store shared by resolver, ledger and service
        premium: Premium backend with the server-side audio cache
        app: The Starlette application
    """

    def __init__(
        self,
        settings: VoiceSettings,
        store: Optional[SubscriptionStore] = None,
        premium: Optional[SpeechifyBackend] = None,
    ) -> None:
        self.settings = settings
        self.store = store or SubscriptionStore(
            settings.database_url, default_limit=settings.monthly_character_limit
        )
        self.resolver = PlanResolver(self.store)
        self.ledger = UsageLedger(self.store)
        self.service = SubscriptionService(self.store, pro_term_days=settings.pro_term_days)
        self.cache = AudioCache(
            max_entries=settings.server_cache_size,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix_chars=settings.cache_key_prefix_chars,
        )
        self.premium = premium or SpeechifyBackend(
            api_key=settings.speechify_api_key,
            api_url=settings.speechify_api_url,
            model=settings.tts_model,
            cache=self.cache,
            timeout=settings.premium_timeout_seconds,
            max_input_chars=settings.max_input_chars,
        )
        self.start_time = datetime.now()

        self._actions: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "get_subscription": self._get_subscription,
            "request_upgrade": self._request_upgrade,
            "increment_tts": self._increment_tts,
            "get_requests": self._get_requests,
            "approve_request": self._approve_request,
            "reject_request": self._reject_request,
            "block_student": self._block_student,
            "cancel_pro": self._cancel_pro,
            "reset_usage": self._reset_usage,
            "check_expiry": self._check_expiry,
        }

        self.app = self._build_app()
        logger.info("VoiceServer initialized (premium %s)",
                    "enabled" if self.premium.is_available() else "disabled")

    def _build_app(self) -> Starlette:
        routes = [
            Route("/tts", self.post_tts, methods=["POST"]),
            Route("/subscription", self.post_subscription, methods=["POST"]),
            Route("/status", self.get_status, methods=["GET"]),
        ]
        return Starlette(routes=routes, lifespan=self._lifespan)

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        yield
        await self.premium.shutdown()
        logger.info("VoiceServer shut down")

    # ------------------------------------------------------------------
    # /tts
    # ------------------------------------------------------------------

    def _fallback(self, reason: RouteReason, status: PlanStatus) -> JSONResponse:
        # HTTP 200: the client switches to on-device speech, not an error
        return JSONResponse({
            "error": FALLBACK_SIGNAL,
            "reason": reason.value,
            "usageInfo": UsageInfo.from_status(status).to_wire(),
        })

    async def post_tts(self, request: Request) -> Response:
        """
        Synthesize premium audio for one utterance.

        When ``studentId`` is given, entitlement is checked before the vendor
        call and usage is committed after it succeeded.
        """
        try:
            body = await request.json()
        except ValueError as e:
            return JSONResponse({"error": f"Invalid request: {e}"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid request"}, status_code=400)

        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            return JSONResponse({"error": "Text is required"}, status_code=400)

        prepared = self.premium.prepare_text(text)
        if not prepared:
            return JSONResponse({"error": "No speakable text"}, status_code=400)

        if not self.premium.is_available():
            logger.error("Premium TTS requested but no API key is configured")
            return JSONResponse({"error": "TTS service not configured"}, status_code=503)

        student_id = body.get("studentId") or None
        if student_id:
            check = await asyncio.to_thread(self.resolver.check, student_id, len(prepared))
            if not check.entitled:
                status = await asyncio.to_thread(self.resolver.resolve, student_id)
                logger.info("Student %s not entitled to premium: %s", student_id, check.reason.value)
                return self._fallback(check.reason, status)

        try:
            speed = float(body.get("speed") or 1.0)
        except (TypeError, ValueError):
            return JSONResponse({"error": "Invalid speed"}, status_code=400)
        config = VoiceConfig(
            voice_id=body.get("voiceId") or self.settings.default_voice,
            language=body.get("language") or self.settings.default_language,
            speed=speed,
        )

        try:
            result = await self.premium.synthesize(prepared, config)
        except VendorError as exc:
            if exc.status_code in (401, 429):
                return JSONResponse({"error": exc.message}, status_code=exc.status_code)
            logger.error("Premium TTS failed: %s", exc)
            return JSONResponse({"error": "TTS service error"}, status_code=502)
        except SynthesisError as exc:
            return JSONResponse({"error": exc.message}, status_code=400)

        usage_wire = None
        if student_id:
            try:
                reserve = await asyncio.to_thread(
                    self.ledger.check_and_reserve, student_id, len(result.text)
                )
            except LedgerUnavailableError:
                return self._fallback(RouteReason.LEDGER_UNAVAILABLE, PlanStatus.safe_default(student_id))
            if not reserve.granted:
                status = await asyncio.to_thread(self.resolver.resolve, student_id)
                return self._fallback(reserve.reason or RouteReason.QUOTA_EXHAUSTED, status)
            usage_wire = UsageInfo(
                plan=Plan.PRO,
                tts_used=reserve.characters_used,
                tts_limit=reserve.characters_limit,
                tts_remaining=reserve.remaining,
                can_use_premium=reserve.remaining > 0,
                using_premium=True,
            ).to_wire()

        return JSONResponse({
            "audio": base64.b64encode(result.audio_data).decode("ascii"),
            "cached": result.cached,
            "format": result.format.value,
            "textLength": len(result.text),
            "audioSize": len(result.audio_data),
            "model": result.model,
            "language": result.language,
            "voiceId": result.voice_id,
            "usageInfo": usage_wire,
        })

    # ------------------------------------------------------------------
    # /subscription
    # ------------------------------------------------------------------

    def _check_operator(self, request: Request) -> None:
        expected = self.settings.operator_token
        if not expected:
            return
        token = request.headers.get("Authorization", "").replace("Bearer ", "", 1)
        if not hmac.compare_digest(token.encode(), expected.encode()):
            raise UnauthorizedError("Unauthorized")

    async def post_subscription(self, request: Request) -> Response:
        """Dispatch one subscription action."""
        try:
            body = await request.json()
        except ValueError as e:
            return JSONResponse({"success": False, "error": f"Invalid request: {e}"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"success": False, "error": "Invalid request"}, status_code=400)

        action = body.get("action")
        handler = self._actions.get(action)
        if handler is None:
            return JSONResponse({"success": False, "error": "Invalid action"}, status_code=400)

        try:
            if action in OPERATOR_ACTIONS:
                self._check_operator(request)
            payload = await handler(body)
        except SubscriptionError as exc:
            return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code)
        except LedgerUnavailableError as exc:
            return JSONResponse({"success": False, "error": exc.message}, status_code=503)

        logger.debug("Subscription action %s completed", action)
        return JSONResponse({"success": True, **payload})

    async def _get_subscription(self, body: dict[str, Any]) -> dict[str, Any]:
        sub, latest, status = await asyncio.to_thread(
            self.service.get_subscription, _student_id(body)
        )
        return {
            "subscription": _subscription_json(sub),
            "latestRequest": _request_json(latest),
            "status": _status_json(status),
        }

    async def _request_upgrade(self, body: dict[str, Any]) -> dict[str, Any]:
        req = await asyncio.to_thread(self.service.request_upgrade, _student_id(body))
        return {"request": _request_json(req)}

    async def _increment_tts(self, body: dict[str, Any]) -> dict[str, Any]:
        student_id = _student_id(body)
        characters = body.get("characters")
        if not isinstance(characters, int) or isinstance(characters, bool) or characters <= 0:
            raise ValidationError("characters must be a positive integer")
        reserve = await asyncio.to_thread(self.ledger.check_and_reserve, student_id, characters)
        return {
            "granted": reserve.granted,
            "reason": reserve.reason.value if reserve.reason else None,
            "ttsUsed": reserve.characters_used,
            "ttsLimit": reserve.characters_limit,
            "ttsRemaining": reserve.remaining,
        }

    async def _get_requests(self, body: dict[str, Any]) -> dict[str, Any]:
        status = body.get("status")
        try:
            status_filter = UpgradeStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Unknown request status: {status}") from None
        requests = await asyncio.to_thread(self.service.list_requests, status_filter)
        return {"requests": [_request_json(r) for r in requests]}

    async def _approve_request(self, body: dict[str, Any]) -> dict[str, Any]:
        sub = await asyncio.to_thread(
            self.service.approve_request, _request_id(body), body.get("operatorId")
        )
        return {"subscription": _subscription_json(sub)}

    async def _reject_request(self, body: dict[str, Any]) -> dict[str, Any]:
        req = await asyncio.to_thread(
            self.service.reject_request, _request_id(body), body.get("reason"), body.get("operatorId")
        )
        return {"request": _request_json(req)}

    async def _block_student(self, body: dict[str, Any]) -> dict[str, Any]:
        sub = await asyncio.to_thread(
            self.service.block_student, _student_id(body), body.get("operatorId")
        )
        return {"subscription": _subscription_json(sub)}

    async def _cancel_pro(self, body: dict[str, Any]) -> dict[str, Any]:
        sub = await asyncio.to_thread(self.service.cancel_pro, _student_id(body))
        return {"subscription": _subscription_json(sub)}

    async def _reset_usage(self, body: dict[str, Any]) -> dict[str, Any]:
        student_id = _student_id(body)
        if not await asyncio.to_thread(self.ledger.reset_usage, student_id):
            raise NotFoundError("Subscription not found")
        return {"studentId": student_id}

    async def _check_expiry(self, body: dict[str, Any]) -> dict[str, Any]:
        expired = await asyncio.to_thread(self.service.expire_subscriptions)
        return {"expired": expired, "count": len(expired)}

    # ------------------------------------------------------------------
    # /status
    # ------------------------------------------------------------------

    async def get_status(self, request: Request) -> Response:
        uptime_seconds = (datetime.now() - self.start_time).total_seconds()
        return JSONResponse({
            "status": "running",
            "uptime_seconds": uptime_seconds,
            "premium_available": self.premium.is_available(),
            "model": self.premium.model,
            "cache": asdict(self.cache.get_stats()),
        })


def _student_id(body: dict[str, Any]) -> str:
    student_id = body.get("studentId")
    if not isinstance(student_id, str) or not student_id:
        raise ValidationError("studentId is required")
    return student_id


def _request_id(body: dict[str, Any]) -> int:
    request_id = body.get("requestId")
    if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
        raise ValidationError("requestId is required")
    try:
        return int(request_id)
    except ValueError:
        raise ValidationError("requestId must be an integer") from None
