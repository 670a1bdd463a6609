import unittest

from engines.formatting import NUMBER_EMOJI
from engines.topic_practice import (
    LOOP_MENU,
    PracticeIntent,
    TopicPracticeFlow,
    next_progression,
    parse_intent,
    read_pick,
)
from fakes import FakeLLM
from question_bank import QuestionBank
from schemas import Subscriber, TopicPracticeContext


def _flow(llm=None):
    return TopicPracticeFlow(QuestionBank(llm=llm or FakeLLM(), llm_available=lambda: llm is not None))


class IntentTests(unittest.TestCase):
    def test_numbers_and_synonyms(self):
        self.assertIs(parse_intent("1"), PracticeIntent.SOLUTION)
        self.assertIs(parse_intent("Show me the answer"), PracticeIntent.SOLUTION)
        self.assertIs(parse_intent("give me a hint"), PracticeIntent.HINT)
        self.assertIs(parse_intent("3"), PracticeIntent.NEXT)
        self.assertIs(parse_intent("make it harder"), PracticeIntent.HARDER)
        self.assertIs(parse_intent("5"), PracticeIntent.EASIER)
        self.assertIs(parse_intent("change topic"), PracticeIntent.CHANGE_TOPIC)
        self.assertIs(parse_intent("7"), PracticeIntent.EXIT)
        self.assertIs(parse_intent("banana"), PracticeIntent.NUDGE)

    def test_progression_clamps_and_holds_after_help(self):
        self.assertEqual(next_progression(3, PracticeIntent.HARDER, False), 3)
        self.assertEqual(next_progression(0, PracticeIntent.EASIER, False), 0)
        self.assertEqual(next_progression(1, PracticeIntent.NEXT, False), 2)
        self.assertEqual(next_progression(1, PracticeIntent.NEXT, True), 1)
        self.assertEqual(next_progression(3, PracticeIntent.NEXT, False), 3)

    def test_read_pick_bounds(self):
        self.assertEqual(read_pick("2", 3), 2)
        self.assertEqual(read_pick("3.", 3), 3)
        self.assertIsNone(read_pick("4", 3))
        self.assertIsNone(read_pick("0", 3))
        self.assertIsNone(read_pick("two", 3))


class TopicPracticeFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.flow = _flow()
        self.subscriber = Subscriber(id="learner-1")

    async def _to_loop(self):
        self.flow.start(self.subscriber)
        await self.flow.handle(self.subscriber, "Mathematics 10")
        await self.flow.handle(self.subscriber, "1")
        return await self.flow.handle(self.subscriber, "3")

    async def test_start_asks_for_subject_and_grade(self):
        reply = self.flow.start(self.subscriber)

        self.assertIn("What subject and grade?", reply.content)
        self.assertEqual(self.subscriber.current_menu, "topic_practice")
        self.assertIsInstance(self.subscriber.context, TopicPracticeContext)

    async def test_subject_grade_lists_numbered_topics(self):
        self.flow.start(self.subscriber)

        reply = await self.flow.handle(self.subscriber, "Mathematics 10")

        self.assertTrue(reply.content.startswith("Got it: *Mathematics Grade 10*"))
        numbered = [line for line in reply.content.splitlines() if line[:3].startswith(NUMBER_EMOJI)]
        self.assertGreaterEqual(len(numbered), 4)
        self.assertEqual(self.subscriber.preferences.last_subject, "Mathematics")
        self.assertEqual(self.subscriber.context.state, "topic_select")

    async def test_unrecognised_subject_defaults_with_note(self):
        self.flow.start(self.subscriber)

        reply = await self.flow.handle(self.subscriber, "Astrology 9")

        self.assertIn("*Mathematics Grade 9*", reply.content)
        self.assertIn("couldn't match that subject", reply.content)

    async def test_topic_then_subtopic_serves_first_question(self):
        reply = await self._to_loop()
        ctx = self.subscriber.context

        self.assertEqual(ctx.topic, "Algebra")
        self.assertEqual(ctx.sub_topic, "Quadratic equations (solve)")
        self.assertEqual(ctx.state, "loop")
        self.assertIn("Q1 • Foundation • 2 marks • Master this concept • ~2 min", reply.content)
        self.assertIn("x² − 5x + 6 = 0", reply.content)
        self.assertEqual(reply.menu, LOOP_MENU)
        self.assertEqual(reply.events[0][0], "topic_question_served")
        self.assertEqual(ctx.current_question.source, "offline")

    async def test_invalid_pick_reprompts_without_state_change(self):
        self.flow.start(self.subscriber)
        await self.flow.handle(self.subscriber, "Mathematics 10")

        first = await self.flow.handle(self.subscriber, "42")
        second = await self.flow.handle(self.subscriber, "42")

        self.assertEqual(first.status, "invalid_selection")
        self.assertEqual(first.content, second.content)
        self.assertEqual(self.subscriber.context.state, "topic_select")

    async def test_next_without_help_raises_level_and_help_holds_it(self):
        await self._to_loop()
        ctx = self.subscriber.context

        reply = await self.flow.handle(self.subscriber, "3")
        self.assertEqual(ctx.progression, 1)
        self.assertIn("💪 Standard:", reply.content)
        self.assertIn("Q2 • Standard", reply.content)

        hint = await self.flow.handle(self.subscriber, "2")
        self.assertIn("💡 *Hint:*", hint.content)
        self.assertTrue(ctx.last_help_used)

        await self.flow.handle(self.subscriber, "3")
        self.assertEqual(ctx.progression, 1)
        self.assertFalse(ctx.last_help_used)

    async def test_harder_and_easier_are_clamped(self):
        await self._to_loop()
        ctx = self.subscriber.context

        for _ in range(5):
            await self.flow.handle(self.subscriber, "4")
        self.assertEqual(ctx.progression, 3)
        for _ in range(5):
            await self.flow.handle(self.subscriber, "easier")
        self.assertEqual(ctx.progression, 0)

    async def test_solution_is_shown_with_steps(self):
        await self._to_loop()

        reply = await self.flow.handle(self.subscriber, "1")

        self.assertIn("🧩 *Solution (steps):*", reply.content)
        self.assertIn("(x − 2)(x − 3) = 0", reply.content)
        self.assertEqual(reply.events[0][0], "topic_solution_viewed")

    async def test_change_topic_and_exit(self):
        await self._to_loop()

        change = await self.flow.handle(self.subscriber, "6")
        self.assertEqual(self.subscriber.context.state, "topic_select")
        self.assertIn("Algebra", change.content)

        await self.flow.handle(self.subscriber, "1")
        await self.flow.handle(self.subscriber, "1")
        exit_reply = await self.flow.handle(self.subscriber, "7")
        self.assertEqual(self.subscriber.current_menu, "welcome")
        self.assertIn("Welcome back", exit_reply.content)

    async def test_unrelated_text_gets_a_nudge(self):
        await self._to_loop()

        reply = await self.flow.handle(self.subscriber, "banana")

        self.assertIn("solution", reply.content)
        self.assertEqual(self.subscriber.context.q_index, 1)

    async def test_start_with_subject_only_needs_grade(self):
        self.flow.start_with_subject(self.subscriber, "Life Sciences")

        reply = await self.flow.handle(self.subscriber, "11")

        self.assertIn("*Life Sciences Grade 11*", reply.content)
        self.assertNotIn("couldn't match", reply.content)

    async def test_llm_questions_used_when_configured(self):
        flow = _flow(FakeLLM(["Solve for x: 5x = 20", "**Step 1:** x = 20 ÷ 5 = 4"]))
        subscriber = Subscriber(id="learner-2")
        flow.start(subscriber)
        await flow.handle(subscriber, "Mathematics 10")
        await flow.handle(subscriber, "1")

        reply = await flow.handle(subscriber, "3")

        self.assertIn("Solve for x: 5x = 20", reply.content)
        self.assertEqual(subscriber.context.current_question.source, "llm")
