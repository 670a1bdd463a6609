"""Non-revealing hint generation for homework questions.

Three strategies exist: ``instant`` (templates keyed by question type),
``dynamic`` (text-pattern heuristics) and ``ai`` (the LLM). The first hint for
a question tries instant, then ai, then dynamic; later hints rotate to a type
different from the previous one. Every candidate passes through
:func:`validate_hint` so no hint states the final answer or walks through a
full solution.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import tutor
from schemas import DetectedQuestion, HomeworkContext

logger = logging.getLogger(__name__)

AI_HINT_MAX_TOKENS = 350
AI_HINT_TEMPERATURE = 0.3
AI_HINT_TIMEOUT = 10.0

DEFAULT_PRACTICE_HINT = (
    "Start by writing what's given vs what's required, then pick the rule that links them."
)
LAST_RESORT_HINT = (
    "Focus on identifying what you need to find, what information you have, "
    "and then apply the appropriate method or formula."
)

# (hint, worked pattern without a final value)
INSTANT_HINTS: Dict[str, Tuple[str, str]] = {
    "linear_equation": (
        "Move numbers to one side, x to the other.",
        "In 2x + 5 = 15, undo the +5 on both sides first, then undo the ×2.",
    ),
    "quadratic_equation": (
        "Factor, or use the quadratic formula: x = (−b ± √(b² − 4ac)) ÷ 2a.",
        "Write it as ax² + bx + c = 0 first, then read off a, b and c.",
    ),
    "triangle_area": (
        "Area = ½ × base × height.",
        "The height must be perpendicular to the base you choose.",
    ),
    "circle_area": (
        "Area = π × radius².",
        "If you are given the diameter, halve it before squaring.",
    ),
    "rectangle_area": (
        "Area = length × width.",
        "Check both sides are in the same unit before multiplying.",
    ),
    "perimeter": (
        "Perimeter is the total distance around the outside: add every side.",
        "For a rectangle that is 2 × (length + width).",
    ),
    "factoring": (
        "Take out the highest common factor first, then look for a trinomial or difference of squares.",
        "For x² + bx + c, find two numbers that multiply to c and add to b.",
    ),
    "simplifying": (
        "Group like terms and apply the exponent laws one at a time.",
        "Only terms with exactly the same variable part can be added.",
    ),
    "trigonometry": (
        "Label the sides opposite, adjacent and hypotenuse from the angle you care about. Then pick SOH CAH TOA.",
        "If you know two sides, the ratio that uses exactly those two is your tool.",
    ),
    "geometry_angles": (
        "List the angle facts you can use: angles on a straight line, in a triangle, and between parallel lines.",
        "Mark every angle you can find on the diagram before aiming for the one asked.",
    ),
    "calculus_derivative": (
        "Use the power rule: bring the exponent down and reduce it by one.",
        "Rewrite roots and fractions as powers of x before differentiating.",
    ),
    "statistics": (
        "Order the data first; the median needs it and the others are easier with it.",
        "Mean = sum of values ÷ number of values.",
    ),
    "probability": (
        "Probability = favourable outcomes ÷ total possible outcomes.",
        "Count the total first; a table or Venn diagram helps.",
    ),
    "biology_concept": (
        "Name the process, say where it happens, then what goes in and what comes out.",
        "Link the structure to its function in one sentence.",
    ),
    "definition": (
        "Give the key term, then one precise sentence, then an example.",
        "Use the wording from your textbook's glossary where you can.",
    ),
}
GENERIC_INSTANT = (
    "Underline the key words in the question, write down what is given and what is asked.",
    "Then choose the rule or formula that connects them.",
)

_DYNAMIC_RULES: Sequence[Tuple[Callable[[str], bool], Tuple[str, ...]]] = (
    (
        lambda q: "solve" in q and ("=" in q or "equation" in q),
        (
            "Isolate the variable by doing the same operation on both sides. Reverse the operations: "
            "addition becomes subtraction, multiplication becomes division.",
            "Check which operation was applied to the variable last and undo that one first.",
        ),
    ),
    (
        lambda q: any(w in q for w in ("area", "perimeter", "volume")),
        (
            "Identify the shape and use the matching formula. Keep your units consistent.",
            "Sketch the shape and label every measurement you are given.",
        ),
    ),
    (
        lambda q: "factor" in q,
        (
            "Look for the greatest common factor first, then patterns such as a difference of squares.",
            "Try splitting the middle term so you can group in pairs.",
        ),
    ),
    (
        lambda q: "graph" in q or "sketch" in q,
        (
            "Find key points first: where the graph cuts each axis, plus any turning point or asymptote.",
            "Decide the shape from the equation type before plotting anything.",
        ),
    ),
)
_DYNAMIC_BY_STRUGGLE = {
    "formula_knowledge": (
        "Identify what type of problem this is, then recall the relevant formula. "
        "Keywords in the question usually point to it."
    ),
    "getting_started": (
        "Write down what you know and what you need to find. "
        "Then look for the formula or method that links them."
    ),
}
_DYNAMIC_DEFAULTS = (
    "Break the problem into smaller steps. Identify the information given and what you're trying to find.",
    "Try a simpler version of the same question first, then use the same approach here.",
    "Re-read the question and circle the numbers and units. Which ones does the question actually need?",
)

def _given_values_hint(numbers: Mapping[str, float]) -> Optional[str]:
    """Point at the quantities already in the question without combining them."""

    if not numbers:
        return None
    if "base" in numbers and "height" in numbers:
        return (
            f"You are given a base of {numbers['base']:g} and a height of {numbers['height']:g}. "
            "Which area formula uses exactly those two measurements?"
        )
    if "length" in numbers and "width" in numbers:
        return (
            f"Label the length ({numbers['length']:g}) and the width ({numbers['width']:g}) on a sketch, "
            "then decide whether the question wants area or perimeter."
        )
    if "radius" in numbers:
        return (
            f"With a radius of {numbers['radius']:g}, first decide whether you need the area formula "
            "or the circumference formula, then substitute."
        )
    if "coefficient" in numbers and "constant" in numbers:
        return (
            f"Undo the constant term ({numbers['constant']:g}) on both sides first, "
            f"then deal with the {numbers['coefficient']:g} multiplying the variable."
        )
    return None


_DIRECT_ANSWER_PATTERNS = (
    re.compile(r"\b(?:the\s+)?(?:final\s+)?answer\s+is\s*:?\s*[-−]?\d", re.IGNORECASE),
    # a single-letter unknown given a value that ends the clause: "x = 3", "y = -2."
    re.compile(r"(?<![\w(])[a-z]\s*=\s*[-−]?\d+(?:[.,]\d+)?(?=\s*(?:$|[.;,!?)]|\band\b|\bor\b))", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\bequals\s+[-−]?\d", re.IGNORECASE),
)
_STEP_MARKER = re.compile(r"\bstep\s*(\d+)", re.IGNORECASE)
_EDUCATIONAL = re.compile(
    r"formula|\brule\b|\blaw\b|theorem|isolate|substitut|factoris|factoriz|\bmethod\b|"
    r"both sides|SOH\s*CAH\s*TOA|½|√|\b[A-Z]\s*=\s*[^\d\s]",
)


@dataclass
class HintValidation:
    ok: bool
    severity: str = "none"
    reasons: List[str] = field(default_factory=list)


def _has_consecutive_steps(text: str, run: int = 3) -> bool:
    numbers = [int(m.group(1)) for m in _STEP_MARKER.finditer(text)]
    streak = 1
    for prev, cur in zip(numbers, numbers[1:]):
        streak = streak + 1 if cur == prev + 1 else 1
        if streak >= run:
            return True
    return False


def validate_hint(text: str, solution: Optional[str] = None) -> HintValidation:
    """Classify a hint candidate.

    ``major`` means reject it; ``minor`` means it quotes a value but is
    clearly teaching a method, so the value is masked instead.
    """

    reasons: List[str] = []
    if solution and solution.strip() and solution.strip() in text:
        return HintValidation(False, "major", ["contains the full solution"])
    if _has_consecutive_steps(text):
        return HintValidation(False, "major", ["three consecutive solution steps"])
    for pattern in _DIRECT_ANSWER_PATTERNS:
        if pattern.search(text):
            reasons.append("direct numerical answer")
            break
    if not reasons:
        return HintValidation(True)
    if _EDUCATIONAL.search(text):
        return HintValidation(False, "minor", reasons)
    return HintValidation(False, "major", reasons)


def mask_answers(text: str) -> str:
    """Replace stated values (``x = 3``, ``the answer is 12``) with ``?``."""

    masked = re.sub(
        r"(\b(?:the\s+)?(?:final\s+)?answer\s+is\s*:?\s*)[-−]?\d+(?:[.,]\d+)?",
        r"\1?",
        text,
        flags=re.IGNORECASE,
    )
    masked = _DIRECT_ANSWER_PATTERNS[1].sub(lambda m: m.group(0).split("=")[0].rstrip() + " = ?", masked)
    masked = re.sub(r"(\bequals\s+)[-−]?\d+(?:[.,]\d+)?", r"\1?", masked, flags=re.IGNORECASE)
    return masked


def struggle_type(learner_text: str) -> str:
    t = (learner_text or "").lower()
    if "formula" in t or "don't know how" in t or "dont know how" in t:
        return "formula_knowledge"
    if "start" in t or "begin" in t:
        return "getting_started"
    if any(w in t for w in ("calculate", "work out", "numbers", "calculation")):
        return "calculation"
    if any(w in t for w in ("understand", "concept", "why", "confused")):
        return "conceptual"
    return "general"


def first_hint(solution: Optional[str]) -> str:
    """Opening hint for a practice question: its Step 1 line, never the whole solution."""

    if not solution or not solution.strip():
        return DEFAULT_PRACTICE_HINT
    lines = [line.strip() for line in solution.splitlines() if line.strip()]
    for line in lines:
        if re.search(r"Step\s*1", line, re.IGNORECASE):
            return line.replace("**", "").strip()
    return lines[0].replace("**", "").strip() if lines else DEFAULT_PRACTICE_HINT


@dataclass
class HintResult:
    text: str
    type: str
    source: str


class HintEngine:
    """Rotating hint strategies over a :class:`HomeworkContext`."""

    ROTATION: Dict[str, Tuple[str, ...]] = {
        "instant": ("dynamic", "ai"),
        "dynamic": ("ai", "instant"),
        "ai": ("dynamic", "instant"),
    }

    def __init__(
        self,
        *,
        llm: Optional[Callable[..., object]] = None,
        llm_available: Optional[Callable[[], bool]] = None,
        timeout: float = AI_HINT_TIMEOUT,
    ) -> None:
        self._llm = llm or tutor.complete
        self._llm_available = llm_available or tutor.is_configured
        self.timeout = timeout

    async def next_hint(
        self,
        context: HomeworkContext,
        learner_text: str = "",
        *,
        user_id: Optional[str] = None,
    ) -> HintResult:
        """Produce the next hint and record it on ``context``."""

        question = context.selected_question
        if question is None:
            return HintResult(
                "Please select a question number first, then I'll share a hint to get you unstuck.",
                "none",
                "system",
            )

        context.hint_count += 1
        last = context.last_hint_type
        if context.hint_count == 1 or last == "none":
            order: Tuple[str, ...] = ("instant_specific", "ai", "dynamic")
        else:
            order = self.ROTATION[last]

        struggle = struggle_type(learner_text)
        result: Optional[HintResult] = None
        for mode in order:
            candidate = await self._attempt(mode, question, struggle, learner_text, context, user_id)
            if candidate is not None:
                result = candidate
                break
        if result is None:
            fallback_type = "dynamic" if last != "dynamic" else "instant"
            result = HintResult(LAST_RESORT_HINT, fallback_type, "fallback")

        context.last_hint_type = result.type  # type: ignore[assignment]
        context.hint_history.append(result.text)
        logger.info(
            "Hint %s for %s via %s (%s)", context.hint_count, question.type, result.type, result.source
        )
        return result

    async def _attempt(
        self,
        mode: str,
        question: DetectedQuestion,
        struggle: str,
        learner_text: str,
        context: HomeworkContext,
        user_id: Optional[str],
    ) -> Optional[HintResult]:
        if mode == "instant_specific":
            text = self.instant(question.type, struggle, allow_generic=False)
            hint_type = "instant"
        elif mode == "instant":
            text = self.instant(question.type, struggle, allow_generic=True)
            hint_type = "instant"
        elif mode == "dynamic":
            text = self.dynamic(question.text, struggle, context.hint_history, numbers=question.numbers)
            hint_type = "dynamic"
        else:
            text = await self.ai(question, learner_text, context, user_id)
            hint_type = "ai"
        if not text:
            return None

        verdict = validate_hint(text)
        if verdict.severity == "major":
            logger.warning("Discarded %s hint: %s", hint_type, ", ".join(verdict.reasons))
            return None
        if verdict.severity == "minor":
            text = mask_answers(text)
        return HintResult(text, hint_type, "template" if hint_type == "instant" else hint_type)

    @staticmethod
    def instant(question_type: str, struggle: str, *, allow_generic: bool = True) -> Optional[str]:
        entry = INSTANT_HINTS.get(question_type)
        if entry is None:
            if not allow_generic:
                return None
            entry = GENERIC_INSTANT
        hint, pattern = entry
        if struggle == "formula_knowledge":
            return f"*Formula:* {hint}\n\n{pattern}"
        if struggle == "calculation":
            return f"{hint}\n\n*Step-by-step:* {pattern}"
        if struggle == "conceptual":
            return f"*Concept:* {hint}\n\nThink of it as a pattern or rule to follow."
        return f"{hint}\n\n{pattern}"

    @staticmethod
    def dynamic(
        question_text: str,
        struggle: str,
        history: Sequence[str] = (),
        numbers: Optional[Mapping[str, float]] = None,
    ) -> str:
        q = (question_text or "").lower()
        options: Tuple[str, ...] = ()
        for matches, hints in _DYNAMIC_RULES:
            if matches(q):
                options = hints
                break
        if not options:
            by_struggle = _DYNAMIC_BY_STRUGGLE.get(struggle)
            options = ((by_struggle,) if by_struggle else ()) + _DYNAMIC_DEFAULTS
        given = _given_values_hint(numbers or {})
        if given:
            options = (given,) + options
        for option in options:
            if option not in history:
                return option
        return options[len(history) % len(options)]

    async def ai(
        self,
        question: DetectedQuestion,
        learner_text: str,
        context: HomeworkContext,
        user_id: Optional[str],
    ) -> Optional[str]:
        if not self._llm_available():
            return None
        intent = learner_text.strip() or "Give a different, simpler angle without solving"
        try:
            reply = await self._llm(
                tutor.hint_messages(
                    question.text,
                    classification=question.type,
                    depth=context.hint_count,
                    intent=intent,
                    previous_hints=context.hint_history[-3:],
                ),
                AI_HINT_MAX_TOKENS,
                temperature=AI_HINT_TEMPERATURE,
                purpose="hint",
                user_id=user_id,
                timeout=self.timeout,
            )
        except tutor.LLMUnavailableError as exc:
            logger.warning("AI hint unavailable: %s", exc)
            return None
        return reply.text.strip() or None
