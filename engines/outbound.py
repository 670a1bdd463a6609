"""Reply envelopes and image delivery through the chat platform."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from engines import complexity, renderers
from engines.caching import TTLCache
from engines.formatting import decorate_math, layout
from engines.resilience import CircuitBreaker
from schemas import ImagePayload, ReplyEnvelope

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.manychat.com"
SEND_IMAGE_PATH = "/fb/sending/sendImage"
DEFAULT_IMAGE_ENDPOINTS = (DEFAULT_API_BASE + SEND_IMAGE_PATH,)
DEDUP_MAX_ENTRIES = 50
DEDUP_TTL_SECONDS = 5 * 60
MAX_BACKOFF_SECONDS = 1.0
DUPLICATE_MARKER = "[shown in previous image]"


def image_endpoints(configured: Optional[Sequence[str]] = None, api_base: Optional[str] = None) -> Tuple[str, ...]:
    """Explicit endpoint list if given, else the sendImage endpoint under ``api_base``."""

    if configured:
        return tuple(configured)
    if api_base:
        return (api_base.rstrip("/") + SEND_IMAGE_PATH,)
    return DEFAULT_IMAGE_ENDPOINTS


@dataclass
class FlowReply:
    """What a flow step produces: body, menu tail and the text worth rendering."""

    content: str
    menu: str
    status: str = "success"
    render_text: Optional[str] = None
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


@dataclass
class UploadOutcome:
    status: str
    endpoint: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    image_id: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == "sent"


def image_id(payload: ImagePayload) -> str:
    """md5 of the decoded image bytes."""

    return hashlib.md5(base64.b64decode(payload.data)).hexdigest()


class ImageSender:
    """Uploads rendered images, trying each endpoint candidate in order.

    Owns the recently-sent map (50 entries, 5 minutes) and the media circuit
    breaker. The breaker counts every failed send, transient or not, and any
    2xx closes it again.
    """

    def __init__(
        self,
        endpoints: Optional[Sequence[str]] = None,
        token: Optional[str] = None,
        *,
        attempt_timeout: float = 5.0,
        total_budget: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        recent: Optional[TTLCache[float]] = None,
        enabled: bool = True,
        post: Callable[..., Any] = requests.post,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rasterizer: Callable[[ImagePayload], Optional[bytes]] = renderers.rasterize,
    ) -> None:
        self.endpoints: Tuple[str, ...] = tuple(endpoints or DEFAULT_IMAGE_ENDPOINTS)
        self.token = token or ""
        self.attempt_timeout = attempt_timeout
        self.total_budget = total_budget
        self.breaker = breaker if breaker is not None else CircuitBreaker("media", threshold=3, cooldown=120.0, count_transient=True)
        self.recent: TTLCache[float] = recent if recent is not None else TTLCache(DEDUP_MAX_ENTRIES, DEDUP_TTL_SECONDS, clock=clock)
        self.enabled = enabled
        self._post = post
        self._sleep = sleep
        self._clock = clock
        self._rasterize = rasterizer

    @staticmethod
    def _key(subscriber_id: str, digest: str) -> str:
        return f"{subscriber_id}:{digest}"

    def was_recently_sent(self, subscriber_id: str, digest: str) -> bool:
        return self._key(subscriber_id, digest) in self.recent

    def encode(self, payload: ImagePayload) -> Tuple[bytes, str, str]:
        """Bytes, MIME type and extension; SVG becomes PNG when rasterisation works."""

        try:
            png = self._rasterize(payload)
        except (OSError, ValueError, RuntimeError) as exc:
            logger.warning("Rasterisation failed, sending %s as-is: %s", payload.format, exc)
            png = None
        if png:
            return png, "image/png", "png"
        raw = base64.b64decode(payload.data)
        if payload.format == "svg":
            return raw, "image/svg+xml", "svg"
        return raw, f"image/{payload.format}", payload.format

    def send(self, subscriber_id: str, payload: ImagePayload, caption: str = "") -> UploadOutcome:
        digest = image_id(payload)
        if self.was_recently_sent(subscriber_id, digest):
            logger.info("Image %s already sent to %s; skipping upload", digest[:8], subscriber_id)
            return UploadOutcome("duplicate", image_id=digest)
        if not self.enabled or not self.token:
            return UploadOutcome("disabled", image_id=digest, error="media delivery not configured")
        if self.breaker.is_open:
            logger.info("Media breaker open; not uploading for %s", subscriber_id)
            return UploadOutcome("breaker_open", image_id=digest)

        body, mime, ext = self.encode(payload)
        deadline = self._clock() + self.total_budget
        headers = {"Authorization": f"Bearer {self.token}"}
        data = {"subscriber_id": subscriber_id}
        if caption:
            data["caption"] = caption

        last_error: Optional[str] = None
        attempts = 0
        for index, endpoint in enumerate(self.endpoints):
            remaining = deadline - self._clock()
            if remaining <= 0:
                last_error = last_error or "upload budget exhausted"
                break
            attempts += 1
            try:
                resp = self._post(
                    endpoint,
                    files={"file": (f"goat-{digest[:12]}.{ext}", body, mime)},
                    data=data,
                    headers=headers,
                    timeout=min(self.attempt_timeout, remaining),
                )
            except requests.RequestException as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if 200 <= resp.status_code < 300:
                    self.breaker.record_success()
                    self.recent.add(self._key(subscriber_id, digest), time.time())
                    logger.info("Image %s sent to %s via %s", digest[:8], subscriber_id, endpoint)
                    return UploadOutcome("sent", endpoint=endpoint, attempts=attempts, image_id=digest)
                last_error = f"HTTP {resp.status_code}"
            logger.warning("Image upload attempt %s to %s failed: %s", attempts, endpoint, last_error)
            if index < len(self.endpoints) - 1:
                pause = min(MAX_BACKOFF_SECONDS, 0.25 * (2 ** index), max(0.0, deadline - self._clock()))
                if pause > 0:
                    self._sleep(pause)

        self.breaker.record_failure(RuntimeError(last_error or "upload failed"))
        return UploadOutcome("failed", attempts=attempts, error=last_error, image_id=digest)

    async def send_async(self, subscriber_id: str, payload: ImagePayload, caption: str = "") -> UploadOutcome:
        return await asyncio.to_thread(self.send, subscriber_id, payload, caption)


class OutboundAdapter:
    """Builds the reply envelope for a flow step.

    The renderable text is classified; image-worthy content is rendered and
    uploaded, and the text body gets a marker saying where the image went.
    """

    def __init__(self, sender: ImageSender) -> None:
        self.sender = sender

    async def build(
        self,
        subscriber_id: str,
        reply: FlowReply,
        *,
        device_type: Optional[str] = "mobile",
    ) -> ReplyEnvelope:
        content = reply.content
        metadata: Dict[str, Any] = {"device_type": device_type or "mobile"}
        payload: Optional[ImagePayload] = None

        if reply.render_text:
            result = complexity.classify(reply.render_text)
            metadata["content_format"] = result.format
            if result.format == "text_with_unicode":
                content = decorate_math(content)
            elif result.needs_image:
                marker, payload, outcome = await self._deliver(subscriber_id, reply.render_text, result)
                content = f"{content}\n\n{marker}"
                metadata["image"] = outcome

        message = layout(content, reply.menu, device_type)
        return ReplyEnvelope(
            message=message,
            echo=message,
            status=reply.status,  # type: ignore[arg-type]
            user=subscriber_id,
            metadata=metadata,
            image=payload,
        )

    async def _deliver(
        self,
        subscriber_id: str,
        text: str,
        result: complexity.ComplexityResult,
    ) -> Tuple[str, Optional[ImagePayload], str]:
        try:
            payload = renderers.render_for(text, result.format)
        except ValueError as exc:
            logger.warning("Render failed for %s content: %s", result.label, exc)
            payload = None
        if payload is None:
            return f"[{result.label} detected]", None, "not_rendered"

        outcome = await self.sender.send_async(subscriber_id, payload, caption=payload.alt)
        if outcome.status == "duplicate":
            return DUPLICATE_MARKER, payload, outcome.status
        if outcome.sent:
            return f"[{result.label} sent as image]", payload, outcome.status
        logger.info("Falling back to text marker for %s (%s)", subscriber_id, outcome.status)
        return f"[{result.label} detected]", payload, outcome.status


WELCOME_MENU = """1️⃣ 📝 Topic Practice Questions
2️⃣ 📚 Homework Help 🫶 ⚡
3️⃣ 🧮 Tips & Hacks

Just pick a number! ✨"""


def welcome_reply(last_subject: Optional[str] = None) -> FlowReply:
    welcome_back = f"\n\n👋 *Welcome back!* Ready to master more *{last_subject}*?" if last_subject else ""
    content = (
        f"*Welcome to The GOAT.* I'm here to help you study with calm and clarity.{welcome_back}\n\n"
        "*What do you need right now?*"
    )
    return FlowReply(content, WELCOME_MENU, events=[("welcome_shown", {"returning": bool(last_subject)})])


def apology_envelope(subscriber_id: str, menu: str = "", device_type: Optional[str] = "mobile") -> ReplyEnvelope:
    text = "Sorry, I encountered an error. Please try typing 'menu' to restart! 🔄"
    message = layout(text, menu, device_type) if menu else text
    return ReplyEnvelope(message=message, echo=message, status="error", user=subscriber_id)
