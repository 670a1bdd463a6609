"""Homework Help: photo in, detected questions out, then hints only.

The learner picks the question that is giving them trouble and gets
rotating hints. Full solutions are never part of a homework reply.
"""

from __future__ import annotations

import logging
import re

from engines.hints import HintEngine
from engines.ocr import OcrOutcome, OcrService
from engines.outbound import FlowReply
from engines.question_detector import detect_questions
from engines.topic_practice import read_pick
from schemas import HomeworkContext, ImageRef, Subscriber

logger = logging.getLogger(__name__)

FOOTER = "📸 Upload a photo of your homework • 🔢 Reply with question number • 🏠 Type 'menu' for Main Menu"

UPLOAD_PROMPT = (
    "📚 *Homework Help*\n\n"
    "Upload a clear photo of your homework. I'll extract the questions so you can pick "
    "the number and I'll share hints to get you unstuck."
)
IMAGE_ONLY = "📸 Homework is image-only. Please upload a clear photo of your homework question."
NO_QUESTIONS = (
    "📸 I couldn't find a clear question in the image. "
    "Please retake the photo closer to the question and try again."
)
INVALID_PICK = "Please reply with a valid question number from the list above."
HINT_NUDGE = "If you're still stuck, reply 'more' or 'I don't understand' and I'll try a different angle."

OCR_ERRORS = {
    "timeout": "📸 *Image processing timed out.* Please try again with a clearer photo.",
    "quota": "📸 *Service temporarily busy.* Please try again in a moment.",
    "generic": "📸 *Image processing failed.* Please try a clearer photo (good lighting, steady camera, fill the frame).",
}

_FOLLOW_UP = re.compile(
    r"(don'?t|do not)\s*understand|confused|still stuck|lost|"
    r"more|another|next|different|hint|clue|explain|simpler|break.*down",
    re.IGNORECASE,
)


def is_follow_up(text: str) -> bool:
    return bool(text and _FOLLOW_UP.search(text.strip()))


class HomeworkFlow:
    """State machine over :class:`HomeworkContext`."""

    def __init__(self, ocr: OcrService, hints: HintEngine) -> None:
        self.ocr = ocr
        self.hints = hints

    @staticmethod
    def _context(subscriber: Subscriber) -> HomeworkContext:
        if not isinstance(subscriber.context, HomeworkContext):
            subscriber.enter("homework")
        return subscriber.context  # type: ignore[return-value]

    def start(self, subscriber: Subscriber) -> FlowReply:
        subscriber.enter("homework")
        return FlowReply(UPLOAD_PROMPT, FOOTER)

    # ------------------------------------------------------------------
    # image turn
    # ------------------------------------------------------------------
    async def handle_image(self, subscriber: Subscriber, image: ImageRef) -> FlowReply:
        self._context(subscriber)
        outcome = await self.ocr.extract(image)
        if not outcome.success:
            # Earlier questions and hints belong to the photo that was replaced.
            subscriber.context = HomeworkContext(image_hash=outcome.image_hash)
            return self._ocr_failure(outcome)

        questions = detect_questions(outcome.text)
        fresh = HomeworkContext(
            extracted_text=outcome.text,
            questions=questions,
            image_hash=outcome.image_hash,
        )
        subscriber.context = fresh
        if not questions:
            logger.info("No questions found in image %s for %s", (outcome.image_hash or "")[:8], subscriber.id)
            return FlowReply(NO_QUESTIONS, FOOTER, status="no_questions")

        fresh.state = "questions_detected"
        listing = "\n\n".join(f"*{q.number}.* {q.display_text}" for q in questions)
        plural = "s" if len(questions) > 1 else ""
        content = (
            f"📚 *Found {len(questions)} question{plural}!*\n\n{listing}\n\n"
            "👉 *Which question here is giving you a hard time?* Reply with the number only."
        )
        events = [
            (
                "homework_questions_detected",
                {"count": len(questions), "image_hash": outcome.image_hash, "cached": outcome.cached},
            )
        ]
        return FlowReply(content, FOOTER, render_text="\n".join(q.text for q in questions), events=events)

    @staticmethod
    def _ocr_failure(outcome: OcrOutcome) -> FlowReply:
        if outcome.error_kind == "validation":
            content = f"📸 *Image issue:* {outcome.error}\n\nPlease try uploading again with a clearer image."
        else:
            content = OCR_ERRORS.get(outcome.error_kind or "generic", OCR_ERRORS["generic"])
        return FlowReply(content, FOOTER, status="error")

    # ------------------------------------------------------------------
    # text turns
    # ------------------------------------------------------------------
    async def handle(self, subscriber: Subscriber, text: str) -> FlowReply:
        ctx = self._context(subscriber)

        if ctx.state == "questions_detected":
            pick = read_pick(text, len(ctx.questions))
            if pick is None:
                return FlowReply(INVALID_PICK, FOOTER, status="invalid_selection")
            return await self._select(subscriber, ctx, pick)

        if ctx.state == "providing_hint":
            if is_follow_up(text):
                hint = await self.hints.next_hint(ctx, text, user_id=subscriber.id)
                content = f"🧩 *Another Hint:*\n\n{hint.text}\n\nReply 'more' if you want one more nudge."
                return FlowReply(content, FOOTER, render_text=hint.text, events=[self._hint_event(ctx)])
            pick = read_pick(text, len(ctx.questions))
            if pick is not None:
                return await self._select(subscriber, ctx, pick)
            return FlowReply(HINT_NUDGE, FOOTER)

        return FlowReply(IMAGE_ONLY, FOOTER)

    async def _select(self, subscriber: Subscriber, ctx: HomeworkContext, pick: int) -> FlowReply:
        ctx.selected_question = ctx.questions[pick - 1]
        ctx.state = "providing_hint"
        ctx.hint_count = 0
        ctx.last_hint_type = "none"
        ctx.hint_history = []
        hint = await self.hints.next_hint(ctx, "", user_id=subscriber.id)
        content = f"🧩 *Hint:*\n\n{hint.text}\n\nReply 'more' or 'I don't understand' for a different approach."
        return FlowReply(content, FOOTER, render_text=hint.text, events=[self._hint_event(ctx)])

    @staticmethod
    def _hint_event(ctx: HomeworkContext):
        return ("homework_hint_served", {"hint_type": ctx.last_hint_type, "hint_count": ctx.hint_count})
