"""In-memory collaborators shared by the flow, dispatcher and endpoint tests."""

import asyncio
import base64
from types import SimpleNamespace

from engines.dispatcher import Dispatcher
from engines.hints import HintEngine
from engines.homework import HomeworkFlow
from engines.ocr import OcrService
from engines.outbound import ImageSender, OutboundAdapter
from engines.state_store import StateStore
from engines.topic_practice import TopicPracticeFlow
from memory_hacks import MemoryHacksFlow
from question_bank import QuestionBank
from tutor import LLMReply

UPLOAD_URL = "https://media.example.test/sendImage"


class FakeBackend:
    def __init__(self, rows=None):
        self.rows = dict(rows or {})
        self.upserts = []
        self.events = []
        self.fetches = 0
        self.fail_upserts = 0
        self.fail_fetch = None
        self.fetch_delay = 0.0

    async def fetch(self, subscriber_id):
        self.fetches += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fail_fetch is not None:
            raise self.fail_fetch
        row = self.rows.get(subscriber_id)
        return dict(row) if row else None

    async def upsert(self, row):
        if self.fail_upserts:
            self.fail_upserts -= 1
            raise RuntimeError("database is locked")
        self.upserts.append(dict(row))
        self.rows[row["id"]] = dict(row)

    async def insert_event(self, subscriber_id, event_type, payload):
        self.events.append((subscriber_id, event_type, dict(payload)))


class FakeLLM:
    def __init__(self, replies=(), error=None):
        self.replies = list(replies)
        self.error = error
        self.calls = []

    async def __call__(self, messages, max_tokens, **kwargs):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, **kwargs})
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else "Think about which rule links the given values."
        return LLMReply(text)


class FakeOcrClient:
    def __init__(self, text=""):
        self.text = text
        self.calls = 0

    def detect(self, raw):
        self.calls += 1
        return {
            "textAnnotations": [
                {"description": self.text},
                {"description": "token", "confidence": 0.9},
            ]
        }


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakePost:
    """Stands in for ``requests.post``; each call consumes the next status or exception."""

    def __init__(self, outcomes=(200,)):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


def image_bytes(seed: int = 0) -> bytes:
    return b"\x89PNG\r\n\x1a\n" + bytes((i + seed) % 256 for i in range(512))


def image_base64(seed: int = 0) -> str:
    return base64.b64encode(image_bytes(seed)).decode("ascii")


def build_dispatcher(*, ocr_text="", backend=None, llm=None, post=None, token="test-token"):
    backend = backend if backend is not None else FakeBackend()
    post = post if post is not None else FakePost()
    store = StateStore(backend, debounce_seconds=0.01)
    sender = ImageSender(
        [UPLOAD_URL],
        token=token,
        post=post,
        sleep=lambda seconds: None,
        rasterizer=lambda payload: b"\x89PNG rendered",
    )
    llm_on = llm is not None
    questions = QuestionBank(llm=llm, llm_available=lambda: llm_on)
    hints = HintEngine(llm=llm, llm_available=lambda: llm_on)
    ocr_client = FakeOcrClient(ocr_text)
    practice = TopicPracticeFlow(questions)
    dispatcher = Dispatcher(
        store,
        OutboundAdapter(sender),
        practice,
        HomeworkFlow(OcrService(ocr_client), hints),
        MemoryHacksFlow(practice),
    )
    return SimpleNamespace(
        dispatcher=dispatcher,
        store=store,
        backend=backend,
        sender=sender,
        post=post,
        ocr_client=ocr_client,
        llm=llm,
    )
