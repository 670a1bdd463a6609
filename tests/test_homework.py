import unittest

from engines.hints import HintEngine
from engines.homework import (
    IMAGE_ONLY,
    INVALID_PICK,
    NO_QUESTIONS,
    OCR_ERRORS,
    HomeworkFlow,
    is_follow_up,
)
from engines.ocr import OcrError, OcrService
from fakes import FakeLLM, FakeOcrClient, image_base64
from schemas import HomeworkContext, ImageRef, Subscriber

HOMEWORK_TEXT = "1. Solve 2x+3=9\n2. Find the area of a triangle with base 6 cm and height 4 cm."


class _FailingClient:
    def __init__(self, kind):
        self.kind = kind

    def detect(self, raw):
        raise OcrError(self.kind, "upstream said no")


def _flow(client, llm=None):
    hints = HintEngine(llm=llm or FakeLLM(), llm_available=lambda: llm is not None)
    return HomeworkFlow(OcrService(client), hints)


class HomeworkFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.subscriber = Subscriber(id="learner-1")
        self.image = ImageRef(kind="direct", data=image_base64())

    async def test_image_lists_detected_questions(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)

        reply = await flow.handle_image(self.subscriber, self.image)

        self.assertIn("Found 2 questions!", reply.content)
        self.assertIn("*1.* Solve 2x+3=9", reply.content)
        self.assertIn("*2.* Find the area", reply.content)
        self.assertIn("Which question here is giving you a hard time?", reply.content)
        self.assertEqual(self.subscriber.context.state, "questions_detected")
        self.assertEqual(reply.events[0][0], "homework_questions_detected")

    async def test_pick_gives_hint_without_answer(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)
        await flow.handle_image(self.subscriber, self.image)

        reply = await flow.handle(self.subscriber, "1")

        self.assertIn("🧩 *Hint:*", reply.content)
        self.assertNotIn("x = 3", reply.content)
        ctx = self.subscriber.context
        self.assertEqual(ctx.state, "providing_hint")
        self.assertEqual(ctx.selected_question.number, 1)
        self.assertEqual(ctx.hint_count, 1)

    async def test_follow_up_rotates_hint(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)
        await flow.handle_image(self.subscriber, self.image)
        first = await flow.handle(self.subscriber, "1")

        second = await flow.handle(self.subscriber, "I don't understand")

        self.assertIn("🧩 *Another Hint:*", second.content)
        self.assertNotEqual(first.render_text, second.render_text)
        self.assertEqual(self.subscriber.context.hint_count, 2)

    async def test_invalid_pick_keeps_state(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)
        await flow.handle_image(self.subscriber, self.image)

        reply = await flow.handle(self.subscriber, "5")

        self.assertEqual(reply.content, INVALID_PICK)
        self.assertEqual(reply.status, "invalid_selection")
        self.assertEqual(self.subscriber.context.state, "questions_detected")

    async def test_text_before_image_asks_for_photo(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)

        reply = await flow.handle(self.subscriber, "what is 2+2")

        self.assertEqual(reply.content, IMAGE_ONLY)

    async def test_no_questions_found(self):
        flow = _flow(FakeOcrClient("ok"))
        flow.start(self.subscriber)

        reply = await flow.handle_image(self.subscriber, self.image)

        self.assertEqual(reply.content, NO_QUESTIONS)
        self.assertEqual(reply.status, "no_questions")

    async def test_ocr_quota_error_message(self):
        flow = _flow(_FailingClient("quota"))
        flow.start(self.subscriber)

        reply = await flow.handle_image(self.subscriber, self.image)

        self.assertEqual(reply.content, OCR_ERRORS["quota"])
        self.assertEqual(reply.status, "error")
        self.assertEqual(self.subscriber.context.state, "awaiting_image")

    async def test_invalid_image_reports_reason(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)

        reply = await flow.handle_image(self.subscriber, ImageRef(kind="direct", data="aGVsbG8="))

        self.assertIn("Image too small or invalid", reply.content)
        self.assertEqual(reply.status, "error")

    async def test_new_image_replaces_previous_questions(self):
        client = FakeOcrClient(HOMEWORK_TEXT)
        flow = _flow(client)
        flow.start(self.subscriber)
        await flow.handle_image(self.subscriber, self.image)
        await flow.handle(self.subscriber, "2")

        client.text = "1. Factorise completely: x^2 - 9"
        reply = await flow.handle_image(self.subscriber, ImageRef(kind="direct", data=image_base64(3)))

        ctx = self.subscriber.context
        self.assertIn("Found 1 question!", reply.content)
        self.assertEqual(len(ctx.questions), 1)
        self.assertIsNone(ctx.selected_question)
        self.assertEqual(ctx.hint_count, 0)


    async def test_failed_image_clears_previous_selection(self):
        flow = _flow(FakeOcrClient(HOMEWORK_TEXT))
        flow.start(self.subscriber)
        await flow.handle_image(self.subscriber, self.image)
        await flow.handle(self.subscriber, "1")

        flow.ocr.client = _FailingClient("timeout")
        reply = await flow.handle_image(self.subscriber, ImageRef(kind="direct", data=image_base64(5)))

        ctx = self.subscriber.context
        self.assertEqual(reply.content, OCR_ERRORS["timeout"])
        self.assertEqual(ctx.state, "awaiting_image")
        self.assertIsNone(ctx.selected_question)
        self.assertEqual(ctx.questions, [])
        self.assertEqual(ctx.hint_count, 0)
        self.assertEqual(HomeworkContext.model_validate(ctx.model_dump()), ctx)


def test_follow_up_phrases():
    assert is_follow_up("I don't understand")
    assert is_follow_up("more")
    assert is_follow_up("still stuck")
    assert not is_follow_up("2")
