"""Turn dispatcher: inbound parsing, routing to a flow and turn bookkeeping."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
import time
from typing import Any, Mapping, Optional, Set

from engines.formatting import detect_device_type
from engines.homework import HomeworkFlow
from engines.outbound import FlowReply, OutboundAdapter, apology_envelope, welcome_reply
from engines.state_store import StateStore
from engines.topic_practice import TopicPracticeFlow
from memory_hacks import MemoryHacksFlow
from schemas import ImageRef, InboundEvent, ReplyEnvelope, Subscriber, context_for_menu

logger = logging.getLogger(__name__)

_TURN_LOGGER = logging.getLogger("goat.turn")
if not _TURN_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _TURN_LOGGER.addHandler(_handler)
_TURN_LOGGER.setLevel(logging.INFO)
_TURN_LOGGER.propagate = False

MAX_SEARCH_DEPTH = 6
EXIT_WORDS = {"menu", "main menu", "home", "back", "restart"}

_IMAGE_URL = re.compile(r"^https?://\S+\.(?:png|jpe?g|gif|bmp|webp)(?:\?\S*)?$", re.IGNORECASE)
_DATA_URI = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)
_HTTP_URL = re.compile(r"^https?://\S+$", re.IGNORECASE)

# Free-text synonyms for the welcome menu numbers.
_WELCOME_CHOICES = (
    ("1", re.compile(r"^1$|\bpracti[cs]e\b|\btopic|\bexam\b|\btest\b")),
    ("2", re.compile(r"^2$|\bhomework\b")),
    ("3", re.compile(r"^3$|\bhacks?\b|\bmemory\b|\btips?\b")),
)


# ----------------------------------------------------------------------
# inbound parsing
# ----------------------------------------------------------------------
def _looks_like_base64_image(value: str) -> bool:
    try:
        return len(base64.b64decode(value, validate=True)) > 100
    except (binascii.Error, ValueError):
        return False


def _direct_ref(value: Any, *, explicit: bool) -> Optional[ImageRef]:
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    if _DATA_URI.match(value):
        return ImageRef(kind="direct", data=value)
    if _HTTP_URL.match(value):
        return ImageRef(kind="url", data=value)
    if explicit or _looks_like_base64_image(value):
        return ImageRef(kind="direct", data=value)
    return None


def _dig(body: Mapping[str, Any], *path: Any) -> Any:
    node: Any = body
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
        elif not isinstance(node, Mapping):
            return None
        node = node[key] if isinstance(key, int) else node.get(key)
    return node


def find_image_url(node: Any, depth: int = 0) -> Optional[str]:
    """First image URL or data URI anywhere in ``node``, at most six levels deep."""

    if depth > MAX_SEARCH_DEPTH:
        return None
    if isinstance(node, str):
        value = node.strip()
        if _IMAGE_URL.match(value) or _DATA_URI.match(value):
            return value
        return None
    if isinstance(node, Mapping):
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = find_image_url(child, depth + 1)
        if found:
            return found
    return None


def extract_image_ref(body: Mapping[str, Any]) -> Optional[ImageRef]:
    """Locate an image in a webhook body: inline base64 first, then known URL
    fields, then a recursive search."""

    for key in ("imageData", "image_base64"):
        ref = _direct_ref(body.get(key), explicit=True)
        if ref:
            return ref
    for key in ("image", "data"):
        ref = _direct_ref(body.get(key), explicit=False)
        if ref:
            return ref

    message = body.get("message")
    candidates = [
        _dig(body, "message", "attachments", 0, "payload", "url"),
        _dig(body, "message", "attachments", 0, "url"),
        body.get("last_received_attachment_url"),
        body.get("attachment_url"),
        body.get("image_url"),
        body.get("imageUrl"),
        _dig(body, "media", "url"),
        _dig(body, "payload", "url"),
        _dig(body, "message", "attachment_url"),
    ]
    if isinstance(message, Mapping) and message.get("type") == "image":
        candidates.append(_dig(body, "message", "image", "link"))
    for attachment in _dig(body, "message", "attachments") or []:
        if isinstance(attachment, Mapping):
            candidates.extend([attachment.get("url"), _dig(attachment, "payload", "url")])
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            value = candidate.strip()
            if _DATA_URI.match(value):
                return ImageRef(kind="direct", data=value)
            return ImageRef(kind="url", data=value)

    found = find_image_url(body)
    if found:
        kind = "direct" if _DATA_URI.match(found) else "url"
        return ImageRef(kind=kind, data=found)
    return None


def parse_inbound(body: Mapping[str, Any], headers: Optional[Mapping[str, str]] = None) -> InboundEvent:
    headers = headers or {}
    subscriber_id = body.get("psid") or body.get("subscriber_id") or "default_user"
    text = body.get("message") if isinstance(body.get("message"), str) else body.get("user_input")
    last_menu = body.get("last_menu") or body.get("current_menu")
    return InboundEvent(
        subscriber_id=str(subscriber_id),
        text=text if isinstance(text, str) else "",
        image=extract_image_ref(body),
        device_hint=headers.get("user-agent"),
        last_menu=last_menu if isinstance(last_menu, str) else None,
    )


# ----------------------------------------------------------------------
# dispatcher
# ----------------------------------------------------------------------
class Dispatcher:
    """Runs one inbound event to completion and returns the reply envelope."""

    def __init__(
        self,
        store: StateStore,
        outbound: OutboundAdapter,
        practice: TopicPracticeFlow,
        homework: HomeworkFlow,
        memory: MemoryHacksFlow,
    ) -> None:
        self.store = store
        self.outbound = outbound
        self.practice = practice
        self.homework = homework
        self.memory = memory
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, event: InboundEvent) -> ReplyEnvelope:
        started = time.perf_counter()
        subscriber, created = await self.store.get_or_create(event.subscriber_id)
        if subscriber.preferences.device_type is None:
            subscriber.preferences.device_type = detect_device_type(event.device_hint)  # type: ignore[assignment]
        self._reconcile(subscriber, created, event.last_menu)
        menu_before = subscriber.current_menu
        device = subscriber.preferences.device_type

        reply: Optional[FlowReply] = None
        command = "image" if event.image else "text"
        try:
            reply, command = await self._route(subscriber, event)
            envelope = await self.outbound.build(subscriber.id, reply, device_type=device)
        except Exception:
            logger.error("Turn failed for %s in %s", subscriber.id, subscriber.current_menu, exc_info=True)
            envelope = apology_envelope(subscriber.id)
            reply = None

        subscriber.append_turn("user", event.text or ("[image]" if event.image else ""))
        subscriber.append_turn("assistant", envelope.message)
        self.store.menu_tracker.track(subscriber.id, subscriber.current_menu)
        self.store.persist(subscriber.id, subscriber)
        if reply is not None:
            for event_type, payload in reply.events:
                self._spawn(self.store.track_event(subscriber.id, event_type, payload))

        record = {
            "event": "turn",
            "subscriber": subscriber.id,
            "command": command,
            "menu_before": menu_before,
            "menu_after": subscriber.current_menu,
            "status": envelope.status,
            "has_image": event.image is not None,
            "latency_ms": int((time.perf_counter() - started) * 1000),
        }
        _TURN_LOGGER.info(json.dumps(record, ensure_ascii=False, sort_keys=True))
        return envelope

    def _reconcile(self, subscriber: Subscriber, created: bool, last_menu: Optional[str]) -> None:
        hinted = self.store.known_menu(last_menu)
        if hinted is None and created:
            tracked = self.store.menu_tracker.last_menu(subscriber.id)
            if tracked and tracked != "welcome":
                hinted = tracked
        if hinted is None or hinted == subscriber.current_menu:
            return
        logger.info("Reconciling menu for %s: %s -> %s", subscriber.id, subscriber.current_menu, hinted)
        subscriber.current_menu = hinted  # type: ignore[assignment]
        if subscriber.context.flow != hinted:
            subscriber.context = context_for_menu(hinted)

    async def _route(self, subscriber: Subscriber, event: InboundEvent) -> tuple[FlowReply, str]:
        if event.image is not None:
            if subscriber.current_menu != "homework":
                subscriber.enter("homework")
            return await self.homework.handle_image(subscriber, event.image), "image"

        text = (event.text or "").strip()
        lowered = text.lower()
        if lowered in EXIT_WORDS:
            subscriber.enter("welcome")
            return welcome_reply(subscriber.preferences.last_subject), "exit"

        menu = subscriber.current_menu
        if menu == "welcome":
            for choice, pattern in _WELCOME_CHOICES:
                if pattern.search(lowered):
                    return self._start_flow(subscriber, choice), "menu_choice"
            return welcome_reply(subscriber.preferences.last_subject), "welcome"
        if menu == "topic_practice":
            return await self.practice.handle(subscriber, text), "flow_input"
        if menu == "homework":
            return await self.homework.handle(subscriber, text), "flow_input"
        if menu == "memory_hacks":
            return await self.memory.handle(subscriber, text), "flow_input"
        subscriber.enter("welcome")
        return welcome_reply(), "welcome"

    def _start_flow(self, subscriber: Subscriber, choice: str) -> FlowReply:
        if choice == "1":
            return self.practice.start(subscriber)
        if choice == "2":
            return self.homework.start(subscriber)
        return self.memory.start(subscriber)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for outstanding analytics writes (shutdown and tests)."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
