"""Topic Practice: subject and grade, topic, sub-topic, then a question loop
with progressive difficulty."""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from curriculum import CATALOG, CurriculumCatalog
from engines.formatting import emoji_list
from engines.hints import first_hint
from engines.outbound import FlowReply, welcome_reply
from question_bank import QuestionBank, tier_for
from schemas import Subscriber, TopicPracticeContext

logger = logging.getLogger(__name__)

LOOP_MENU = """1️⃣ 📚 View solution
2️⃣ 💡 Hint
3️⃣ ➡️ Next question
4️⃣ 📈 Harder
5️⃣ 📉 Easier
6️⃣ 🔄 Change topic
7️⃣ 🏠 Main menu"""

PICK_MENU = "Reply with a number (e.g., 1)"

EXAMPLE_TOPICS = {
    "Mathematics": ("Algebra", "Functions & Graphs", "Trigonometry", "Geometry"),
    "Mathematical Literacy": ("Finance", "Measurement", "Maps & Plans", "Data & Probability"),
    "Physical Sciences": ("Mechanics", "Electricity", "Matter & Materials", "Waves & Sound"),
    "Life Sciences": ("Cells & Tissues", "Transport Systems", "Population Ecology", "Human Impact"),
    "Geography": ("Mapwork", "Population", "Development & Inequality", "Resources & Sustainability"),
    "History": ("World War II", "Cold War", "Apartheid SA (overview)", "Nationalisms"),
}


class PracticeIntent(Enum):
    CHANGE_TOPIC = "change_topic"
    HARDER = "harder"
    EASIER = "easier"
    SOLUTION = "solution"
    HINT = "hint"
    NEXT = "next"
    EXIT = "exit"
    NUDGE = "nudge"


# Checked in order; the first synonym that matches names the intent.
_INTENT_SYNONYMS: Sequence[Tuple[PracticeIntent, re.Pattern]] = (
    (PracticeIntent.CHANGE_TOPIC, re.compile(r"^6$|change\s*topic|new\s+topic|different\s+topic")),
    (PracticeIntent.HARDER, re.compile(r"^4$|harder|advance|tougher|difficult")),
    (PracticeIntent.EASIER, re.compile(r"^5$|easier|simpler|basic|foundation")),
    (PracticeIntent.SOLUTION, re.compile(r"^1$|solution|answer")),
    (PracticeIntent.HINT, re.compile(r"^2$|hint|help me|clue")),
    (PracticeIntent.NEXT, re.compile(r"^3$|next|another")),
    (PracticeIntent.EXIT, re.compile(r"^7$|menu|main|home|exit|quit")),
)


def parse_intent(text: str) -> PracticeIntent:
    lowered = (text or "").strip().lower()
    for intent, pattern in _INTENT_SYNONYMS:
        if pattern.search(lowered):
            return intent
    return PracticeIntent.NUDGE


def read_pick(text: str, maximum: int) -> Optional[int]:
    """Integer in ``1..maximum`` or ``None``."""

    raw = (text or "").strip().rstrip(".)")
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if 1 <= value <= maximum else None


def next_progression(progression: int, intent: PracticeIntent, help_used: bool) -> int:
    """Difficulty after ``intent``; a hint or solution holds the level on ``next``."""

    if intent is PracticeIntent.HARDER:
        return min(3, progression + 1)
    if intent is PracticeIntent.EASIER:
        return max(0, progression - 1)
    if intent is PracticeIntent.NEXT and not help_used:
        return min(3, progression + 1)
    return progression


class TopicPracticeFlow:
    """State machine over :class:`TopicPracticeContext`."""

    def __init__(self, questions: QuestionBank, catalog: CurriculumCatalog = CATALOG) -> None:
        self.questions = questions
        self.catalog = catalog

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------
    def start(self, subscriber: Subscriber) -> FlowReply:
        subscriber.enter("topic_practice")
        content = (
            "📝 *Topic Practice*\n"
            "Unlimited practice to master any topic.\n\n"
            "What subject and grade?\n"
            'Examples: "Mathematics 10", "Physical Sciences 11", "Geography 9"'
        )
        return FlowReply(content, 'Reply: Subject + Grade (e.g., "Mathematics 10")')

    def start_with_subject(self, subscriber: Subscriber, subject: str) -> FlowReply:
        subscriber.enter("topic_practice")
        subscriber.context.subject = subject
        content = f"📝 *Topic Practice*\n\nGreat, let's practise *{subject}*. Which grade are you in?"
        return FlowReply(content, "Reply with your grade (8-11)")

    async def handle(self, subscriber: Subscriber, text: str) -> FlowReply:
        ctx = subscriber.context
        if not isinstance(ctx, TopicPracticeContext):
            return self.start(subscriber)

        if ctx.state == "subject_grade":
            return self._choose_subject(subscriber, ctx, text)
        if ctx.state == "topic_select":
            return await self._choose_topic(subscriber, ctx, text)
        if ctx.state == "topic_free":
            return await self._free_topic(subscriber, ctx, text)
        if ctx.state == "subtopic_select":
            return await self._choose_subtopic(subscriber, ctx, text)
        return await self._loop(subscriber, ctx, text)

    # ------------------------------------------------------------------
    # selection states
    # ------------------------------------------------------------------
    def _choose_subject(self, subscriber: Subscriber, ctx: TopicPracticeContext, text: str) -> FlowReply:
        parsed = self.catalog.parse_subject_grade(text)
        subject = parsed.subject
        note = ""
        if not parsed.subject_recognised:
            if ctx.subject:
                subject = ctx.subject
            else:
                note = f"\n_I couldn't match that subject, so we'll start with {subject}._"
        grade = self.catalog.nearest_grade(subject, parsed.grade)
        ctx.subject = subject
        ctx.grade = grade
        subscriber.preferences.last_subject = subject
        subscriber.preferences.last_grade = grade

        topics = self.catalog.topics(subject, grade)
        if not topics:
            ctx.state = "topic_free"
            examples = ", ".join(f'"{t}"' for t in EXAMPLE_TOPICS.get(subject, EXAMPLE_TOPICS["Mathematics"]))
            content = (
                f"Got it: *{subject} Grade {grade}*{note}\n\n"
                f"What topic would you like to practice?\nExamples: {examples}"
            )
            return FlowReply(content, "Reply with the topic name")

        ctx.topics = topics
        ctx.state = "topic_select"
        content = (
            f"Got it: *{subject} Grade {grade}*{note}\n\n"
            f"Choose a topic to master:\n\n{emoji_list(topics)}\n\n"
            "Pick a number to start."
        )
        return FlowReply(content, f"Reply with a number (1-{len(topics)})")

    async def _choose_topic(self, subscriber: Subscriber, ctx: TopicPracticeContext, text: str) -> FlowReply:
        pick = read_pick(text, len(ctx.topics))
        if pick is None:
            content = f"Please pick a topic by number (1-{len(ctx.topics)}).\n\n{emoji_list(ctx.topics)}"
            return FlowReply(content, PICK_MENU, status="invalid_selection")
        topic = ctx.topics[pick - 1]
        return await self._enter_topic(subscriber, ctx, topic, self.catalog.subtopics(ctx.subject, ctx.grade, topic))

    async def _free_topic(self, subscriber: Subscriber, ctx: TopicPracticeContext, text: str) -> FlowReply:
        raw = (text or "").strip() or "Algebra"
        topic = self.catalog.match_topic(ctx.subject, ctx.grade, raw) or raw[:1].upper() + raw[1:]
        return await self._enter_topic(subscriber, ctx, topic, self.catalog.subtopics(ctx.subject, ctx.grade, topic))

    async def _enter_topic(
        self,
        subscriber: Subscriber,
        ctx: TopicPracticeContext,
        topic: str,
        subtopics: List[str],
    ) -> FlowReply:
        ctx.topic = topic
        if not subtopics:
            ctx.sub_topic = topic
            return await self._begin_loop(subscriber, ctx)
        ctx.subtopics = subtopics
        ctx.state = "subtopic_select"
        content = f"Nice. {topic}.\n\nPick a sub-topic:\n\n{emoji_list(subtopics)}"
        return FlowReply(content, PICK_MENU)

    async def _choose_subtopic(self, subscriber: Subscriber, ctx: TopicPracticeContext, text: str) -> FlowReply:
        pick = read_pick(text, len(ctx.subtopics))
        if pick is None:
            content = f"Please pick a sub-topic by number (1-{len(ctx.subtopics)}).\n\n{emoji_list(ctx.subtopics)}"
            return FlowReply(content, PICK_MENU, status="invalid_selection")
        ctx.sub_topic = ctx.subtopics[pick - 1]
        return await self._begin_loop(subscriber, ctx)

    async def _begin_loop(self, subscriber: Subscriber, ctx: TopicPracticeContext) -> FlowReply:
        ctx.state = "loop"
        ctx.q_index = 0
        ctx.current_question = None
        return await self._serve_question(subscriber, ctx, fresh=True)

    # ------------------------------------------------------------------
    # question loop
    # ------------------------------------------------------------------
    def header(self, ctx: TopicPracticeContext) -> str:
        tier = tier_for(ctx.progression)
        parts = [ctx.subject or "Mathematics"]
        if ctx.topic:
            parts.append(ctx.topic)
        if ctx.sub_topic and ctx.sub_topic != ctx.topic:
            parts.append(ctx.sub_topic)
        return f"🎯 {' • '.join(parts)}\n💪 {tier.label}: {tier.description}"

    @staticmethod
    def banner(ctx: TopicPracticeContext) -> str:
        tier = tier_for(ctx.progression)
        return f"Q{ctx.q_index} • {tier.label} • {tier.marks} marks • Master this concept • {tier.time_label}"

    async def _serve_question(self, subscriber: Subscriber, ctx: TopicPracticeContext, *, fresh: bool) -> FlowReply:
        events = []
        if fresh or ctx.current_question is None:
            question = await self.questions.generate(
                subject=ctx.subject or "Mathematics",
                grade=ctx.grade or 10,
                topic=ctx.topic or "Algebra",
                sub_topic=ctx.sub_topic or ctx.topic or "Algebra",
                progression=ctx.progression,
                user_id=subscriber.id,
            )
            ctx.current_question = question
            ctx.q_index += 1
            ctx.last_help_used = False
            events.append(
                (
                    "topic_question_served",
                    {"content_id": question.content_id, "source": question.source, "progression": ctx.progression},
                )
            )
            logger.info(
                "Served %s question %s to %s at level %s",
                question.source,
                question.content_id,
                subscriber.id,
                ctx.progression,
            )
        question = ctx.current_question
        content = f"{self.header(ctx)}\n\n{self.banner(ctx)}\n\n{question.text}"
        return FlowReply(content, LOOP_MENU, render_text=question.text, events=events)

    async def _loop(self, subscriber: Subscriber, ctx: TopicPracticeContext, text: str) -> FlowReply:
        intent = parse_intent(text)

        if intent is PracticeIntent.CHANGE_TOPIC:
            topics = self.catalog.topics(ctx.subject or "Mathematics", ctx.grade or 10)
            if not topics:
                ctx.state = "topic_free"
                return FlowReply("Okay, which topic would you like next?", "Reply with the topic name")
            ctx.topics = topics
            ctx.state = "topic_select"
            ctx.current_question = None
            return FlowReply(f"Okay, pick a CAPS-aligned topic:\n\n{emoji_list(topics)}", PICK_MENU)

        if intent in (PracticeIntent.HARDER, PracticeIntent.EASIER, PracticeIntent.NEXT):
            ctx.progression = next_progression(ctx.progression, intent, ctx.last_help_used)
            ctx.last_help_used = False
            return await self._serve_question(subscriber, ctx, fresh=True)

        if intent is PracticeIntent.SOLUTION:
            if ctx.current_question is None:
                return await self._serve_question(subscriber, ctx, fresh=False)
            ctx.last_help_used = True
            solution = ctx.current_question.solution or "Solution available after attempt."
            content = f"{self.header(ctx)}\n\n🧩 *Solution (steps):*\n\n{solution}"
            events = [("topic_solution_viewed", {"content_id": ctx.current_question.content_id})]
            return FlowReply(content, LOOP_MENU, render_text=solution, events=events)

        if intent is PracticeIntent.HINT:
            if ctx.current_question is None:
                return await self._serve_question(subscriber, ctx, fresh=False)
            ctx.last_help_used = True
            hint = first_hint(ctx.current_question.solution)
            return FlowReply(f"{self.header(ctx)}\n\n💡 *Hint:* {hint}", LOOP_MENU, render_text=hint)

        if intent is PracticeIntent.EXIT:
            subscriber.enter("welcome")
            return welcome_reply(subscriber.preferences.last_subject)

        content = f"{self.header(ctx)}\n\nI can show the solution or give a hint, or send the next question."
        return FlowReply(content, LOOP_MENU)
