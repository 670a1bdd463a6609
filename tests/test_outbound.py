import unittest

import requests

from engines import renderers
from engines.outbound import (
    DUPLICATE_MARKER,
    FlowReply,
    ImageSender,
    OutboundAdapter,
    apology_envelope,
    image_id,
    welcome_reply,
)
from fakes import FakePost

PRIMARY = "https://media.example.test/primary"
SECONDARY = "https://media.example.test/secondary"


def _sender(post, **kwargs):
    kwargs.setdefault("token", "secret")
    return ImageSender(
        [PRIMARY, SECONDARY],
        post=post,
        sleep=lambda seconds: None,
        rasterizer=lambda payload: b"\x89PNG fake",
        **kwargs,
    )


class ImageSenderTests(unittest.TestCase):
    def setUp(self):
        self.payload = renderers.render_formula("\\frac{a}{b}")

    def test_falls_back_to_next_endpoint(self):
        post = FakePost([500, 200])
        sender = _sender(post)

        outcome = sender.send("u1", self.payload, caption="Mathematical formula")

        self.assertTrue(outcome.sent)
        self.assertEqual(outcome.endpoint, SECONDARY)
        self.assertEqual([url for url, _ in post.calls], [PRIMARY, SECONDARY])
        _, kwargs = post.calls[0]
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer secret"})
        self.assertEqual(kwargs["data"]["subscriber_id"], "u1")
        name, body, mime = kwargs["files"]["file"]
        self.assertTrue(name.endswith(".png"))
        self.assertEqual(mime, "image/png")

    def test_same_image_within_window_is_not_uploaded_twice(self):
        post = FakePost([200])
        sender = _sender(post)

        sender.send("u1", self.payload)
        second = sender.send("u1", self.payload)

        self.assertEqual(second.status, "duplicate")
        self.assertEqual(len(post.calls), 1)
        self.assertTrue(sender.was_recently_sent("u1", image_id(self.payload)))
        # another learner still gets the upload
        self.assertTrue(sender.send("u2", self.payload).sent)

    def test_all_endpoints_failing_counts_one_breaker_failure(self):
        post = FakePost([requests.ConnectionError("connection refused")])
        sender = _sender(post)

        outcome = sender.send("u1", self.payload)

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(sender.breaker.failures, 1)

    def test_open_breaker_skips_upload(self):
        post = FakePost([500])
        sender = _sender(post)
        for seed in range(3):
            sender.send(f"u{seed}", self.payload)
        calls_before = len(post.calls)

        outcome = sender.send("u9", self.payload)

        self.assertEqual(outcome.status, "breaker_open")
        self.assertEqual(len(post.calls), calls_before)

    def test_disabled_without_token(self):
        post = FakePost()
        sender = _sender(post, token="")

        self.assertEqual(sender.send("u1", self.payload).status, "disabled")
        self.assertEqual(post.calls, [])

    def test_svg_sent_when_rasterisation_unavailable(self):
        sender = ImageSender([PRIMARY], token="t", rasterizer=lambda payload: None)

        body, mime, ext = sender.encode(self.payload)

        self.assertEqual((mime, ext), ("image/svg+xml", "svg"))
        self.assertTrue(body.startswith(b"<?xml"))


class OutboundAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_plain_text_reply_is_laid_out(self):
        adapter = OutboundAdapter(_sender(FakePost()))

        envelope = await adapter.build("u1", FlowReply("Hello", "1️⃣ Go"), device_type="desktop")

        self.assertEqual(envelope.message, envelope.echo)
        self.assertIn("─" * 60, envelope.message)
        self.assertEqual(envelope.status, "success")
        self.assertEqual(envelope.user, "u1")

    async def test_simple_math_is_decorated_not_rendered(self):
        post = FakePost()
        adapter = OutboundAdapter(_sender(post))
        reply = FlowReply("Solve x^2 = 16", "menu", render_text="Solve x^2 = 16")

        envelope = await adapter.build("u1", reply)

        self.assertIn("x² = 16", envelope.message)
        self.assertEqual(envelope.metadata["content_format"], "text_with_unicode")
        self.assertEqual(post.calls, [])

    async def test_complex_math_is_sent_as_image_with_marker(self):
        post = FakePost()
        adapter = OutboundAdapter(_sender(post))
        reply = FlowReply("Simplify \\frac{x^2 - 9}{x - 3}", "menu", render_text="Simplify \\frac{x^2 - 9}{x - 3}")

        first = await adapter.build("u1", reply)
        second = await adapter.build("u1", reply)

        self.assertIn("[equation sent as image]", first.message)
        self.assertIsNotNone(first.image)
        self.assertIn(DUPLICATE_MARKER, second.message)
        self.assertEqual(len(post.calls), 1)
        self.assertNotIn("image", first.model_dump(mode="json"))

    async def test_upload_failure_falls_back_to_detected_marker(self):
        adapter = OutboundAdapter(_sender(FakePost([503])))
        reply = FlowReply("Sketch the graph of y = x^2", "menu", render_text="Sketch the graph of y = x^2")

        envelope = await adapter.build("u1", reply)

        self.assertIn("[graph detected]", envelope.message)
        self.assertEqual(envelope.metadata["image"], "failed")
        self.assertEqual(envelope.status, "success")


class ReplyHelpersTests(unittest.TestCase):
    def test_welcome_reply_lists_three_options(self):
        reply = welcome_reply()

        for option in ("1️⃣", "2️⃣", "3️⃣"):
            self.assertIn(option, reply.menu)
        self.assertEqual(reply.events, [("welcome_shown", {"returning": False})])

    def test_returning_learner_is_greeted_with_subject(self):
        reply = welcome_reply("Geography")

        self.assertIn("Welcome back", reply.content)
        self.assertIn("*Geography*", reply.content)

    def test_apology_envelope(self):
        envelope = apology_envelope("u1")

        self.assertEqual(envelope.status, "error")
        self.assertIn("menu", envelope.message)
