# app.py - GOAT study companion webhook service
# - One POST per learner message, one JSON reply envelope back
# - Services are built once in the lifespan and shared by every turn

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

import db
import tutor
from env_validation import get_env_bool, get_env_float, get_env_int, get_env_list
from engines.dispatcher import Dispatcher, parse_inbound
from engines.hints import HintEngine
from engines.homework import HomeworkFlow
from engines.ocr import OcrService, VisionOcrClient
from engines.outbound import ImageSender, OutboundAdapter, apology_envelope, image_endpoints
from engines.resilience import CircuitBreaker, RetryQueue
from engines.state_store import SQLiteSubscriberBackend, StateStore
from engines.topic_practice import TopicPracticeFlow
from memory_hacks import MemoryHacksFlow
from question_bank import QuestionBank

logger = logging.getLogger(__name__)

SERVICE_NAME = "goat-study-companion"
SERVICE_VERSION = "2.0.0"
_STARTED_AT = time.monotonic()


@dataclass
class Services:
    store: StateStore
    sender: ImageSender
    outbound: OutboundAdapter
    questions: QuestionBank
    hints: HintEngine
    ocr: OcrService
    dispatcher: Dispatcher


def build_services(backend: Optional[Any] = None) -> Services:
    """Wire the object graph from environment settings."""

    store = StateStore(
        backend if backend is not None else SQLiteSubscriberBackend(),
        debounce_seconds=get_env_int("STATE_DEBOUNCE_MS", 500) / 1000.0,
        upsert_timeout=get_env_float("STATE_UPSERT_TIMEOUT", 12.0),
        retrieve_timeout=get_env_float("STATE_RETRIEVE_TIMEOUT", 3.0),
        ttl_hours=get_env_float("SUBSCRIBER_TTL_HOURS", 10.0),
        retry_interval=get_env_float("RETRY_INTERVAL", 30.0),
        breaker=CircuitBreaker(
            "state",
            threshold=get_env_int("STATE_BREAKER_THRESHOLD", 5),
            cooldown=get_env_float("STATE_BREAKER_COOLDOWN", 60.0),
        ),
        retry_queue=RetryQueue(max_size=get_env_int("RETRY_QUEUE_MAX", 200)),
    )
    sender = ImageSender(
        image_endpoints(get_env_list("MANYCHAT_IMAGE_ENDPOINTS"), os.getenv("MANYCHAT_API_BASE")),
        token=os.getenv("MANYCHAT_API_TOKEN", ""),
        attempt_timeout=get_env_float("MEDIA_ATTEMPT_TIMEOUT", 5.0),
        total_budget=get_env_float("MEDIA_TOTAL_BUDGET", 10.0),
        breaker=CircuitBreaker(
            "media",
            threshold=get_env_int("MEDIA_BREAKER_THRESHOLD", 3),
            cooldown=get_env_float("MEDIA_BREAKER_COOLDOWN", 120.0),
            count_transient=True,
        ),
        enabled=get_env_bool("MEDIA_ENABLED", True),
    )
    outbound = OutboundAdapter(sender)
    llm_timeout = get_env_float("LLM_TIMEOUT", 20.0)
    questions = QuestionBank(timeout=llm_timeout)
    hints = HintEngine()
    ocr_timeout = get_env_float("OCR_TIMEOUT", 15.0)
    ocr = OcrService(VisionOcrClient(timeout=ocr_timeout), timeout=ocr_timeout)

    practice = TopicPracticeFlow(questions)
    dispatcher = Dispatcher(
        store,
        outbound,
        practice,
        HomeworkFlow(ocr, hints),
        MemoryHacksFlow(practice),
    )
    return Services(store, sender, outbound, questions, hints, ocr, dispatcher)


@asynccontextmanager
async def _lifespan(app_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        services = build_services()
        services.store.start()
        app_.state.services = services
        logger.info(
            "LLM configured: %s | model: %s | image endpoints: %s",
            tutor.is_configured(),
            tutor.MODEL_ID,
            ", ".join(services.sender.endpoints),
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        await services.dispatcher.drain()
        await services.store.stop()


app = FastAPI(title="GOAT Study Companion", version=SERVICE_VERSION, lifespan=_lifespan)


def _services() -> Services:
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services
    return services


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {}
    return body if isinstance(body, dict) else {}


@app.get("/webhook")
def webhook_status():
    message = "GOAT webhook is operational"
    return {"message": message, "echo": message, "status": "success"}


@app.post("/webhook")
@app.post("/api/index")
async def webhook(request: Request):
    body = await _read_body(request)
    event = parse_inbound(body, request.headers)
    logger.info("Inbound from %s: %r (%s chars, image=%s)", event.subscriber_id, event.text[:60], len(event.text), bool(event.image))
    try:
        envelope = await _services().dispatcher.dispatch(event)
    except Exception:
        logger.error("Webhook failed for %s", event.subscriber_id, exc_info=True)
        envelope = apology_envelope(event.subscriber_id)
    return envelope.model_dump(mode="json")


@app.get("/health")
def health():
    services = _services()
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "uptime_seconds": int(time.monotonic() - _STARTED_AT),
        "breakers": {
            "state": services.store.breaker.snapshot(),
            "media": services.sender.breaker.snapshot(),
        },
        "retry_queue": services.store.retry_stats(),
    }
