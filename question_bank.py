"""Practice question production: LLM pathway with deterministic subject fallbacks."""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import tutor
from engines import complexity
from engines.question_detector import classify_question
from schemas import PracticeQuestion

logger = logging.getLogger(__name__)

QUESTION_MAX_TOKENS = 200
QUESTION_TEMPERATURE = 0.4
SOLUTION_MAX_TOKENS = 400
SOLUTION_TEMPERATURE = 0.3

_BASE36 = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class DifficultyTier:
    level: int
    key: str
    label: str
    description: str
    marks: int
    minutes: int

    @property
    def time_label(self) -> str:
        return f"~{self.minutes} min"


TIERS: Tuple[DifficultyTier, ...] = (
    DifficultyTier(0, "simplified", "Foundation", "Building understanding", 2, 2),
    DifficultyTier(1, "mixed", "Standard", "Typical exam level", 3, 3),
    DifficultyTier(2, "challenging", "Advanced", "Challenge yourself", 5, 5),
    DifficultyTier(3, "expert", "Expert", "Master level", 6, 6),
)


def tier_for(progression: int) -> DifficultyTier:
    return TIERS[max(0, min(len(TIERS) - 1, int(progression or 0)))]


@dataclass
class QuestionDraft:
    """Question text plus private solution; ``source`` records which path produced it."""

    text: str
    solution: str
    source: str = "fallback"


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _slug3(value: str) -> str:
    letters = "".join(ch for ch in (value or "").lower() if ch.isalnum())
    return (letters or "gen")[:3]


def new_content_id(
    subject: str,
    topic: str,
    *,
    now: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """``qst_{subj3}{topic3}_{ts36}{rand5}``, e.g. ``qst_matalg_lx2k9f0ab12c``."""

    chooser = rng or random
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(chooser.choice(_BASE36) for _ in range(5))
    return f"qst_{_slug3(subject)}{_slug3(topic)}_{_to_base36(millis)}{suffix}"


# ----------------------------------------------------------------------
# deterministic fallbacks
# ----------------------------------------------------------------------
# Each entry: (keywords matched against "topic sub_topic", drafts by rising difficulty).
_Template = Tuple[Tuple[str, ...], Tuple[Tuple[str, str], ...]]

_MATHEMATICS: Sequence[_Template] = (
    (
        ("probab",),
        (
            (
                "A bag has 3 red and 5 blue beads. One bead is drawn at random.\n"
                "What is the probability that it is red?",
                "**Step 1:** Total beads = 3 + 5 = 8\n**Step 2:** P(red) = 3/8",
            ),
            (
                "In a class, 12 learners play soccer and 8 play netball. 5 play both. There are 20 learners.\n"
                "Find the probability that a learner chosen at random plays neither sport.",
                "**Step 1:** Only soccer = 12 − 5 = 7, only netball = 8 − 5 = 3\n"
                "**Step 2:** Neither = 20 − (7 + 5 + 3) = 5\n"
                "**Step 3:** P(neither) = 5/20 = 1/4",
            ),
        ),
    ),
    (
        ("factor", "expression"),
        (
            (
                "Factorise completely: x² + 5x + 6",
                "**Step 1:** Find two numbers that multiply to 6 and add to 5 → 2 and 3\n"
                "**Step 2:** x² + 5x + 6 = (x + 2)(x + 3)",
            ),
            (
                "Factorise completely: 2x² − 5x − 12",
                "**Step 1:** Multiply to (2)(−12) = −24 and add to −5 → −8 and 3\n"
                "**Step 2:** Split the middle term: 2x² − 8x + 3x − 12\n"
                "**Step 3:** Group: 2x(x − 4) + 3(x − 4)\n"
                "**Step 4:** = (x − 4)(2x + 3)",
            ),
        ),
    ),
    (
        ("quadratic",),
        (
            (
                "Solve for x: x² − 5x + 6 = 0",
                "**Step 1:** Factorise: (x − 2)(x − 3) = 0\n**Step 2:** x = 2 or x = 3",
            ),
            (
                "Solve for x: 2x² − 7x + 3 = 0",
                "**Step 1:** Factorise: (2x − 1)(x − 3) = 0\n**Step 2:** x = 1/2 or x = 3",
            ),
            (
                "Solve for x, correct to two decimal places: x² − 4x − 7 = 0",
                "**Step 1:** Use x = (−b ± √(b² − 4ac)) / 2a with a = 1, b = −4, c = −7\n"
                "**Step 2:** x = (4 ± √44) / 2\n"
                "**Step 3:** x ≈ 5.32 or x ≈ −1.32",
            ),
        ),
    ),
    (
        ("function", "graph"),
        (
            (
                "Given f(x) = x² − 4x + 3,\na) Find the x-intercepts\nb) Find the turning point",
                "**Step 1:** Set f(x) = 0: (x − 1)(x − 3) = 0 → x = 1 or x = 3\n"
                "**Step 2:** x = −b/(2a) = 2; f(2) = −1 → turning point (2; −1)",
            ),
        ),
    ),
    (
        ("trig",),
        (
            (
                "In right-angled triangle ABC, angle B = 90°, AB = 3 and BC = 4. Find sin A.",
                "**Step 1:** AC = √(3² + 4²) = 5\n**Step 2:** sin A = opposite/hypotenuse = BC/AC = 4/5",
            ),
            (
                "Solve for x in 0° ≤ x < 360°: sin x = 1/2",
                "**Step 1:** Reference angle where sin θ = 1/2 is 30°\n"
                "**Step 2:** sin is positive in quadrants I and II\n"
                "**Step 3:** x = 30° or x = 150°",
            ),
        ),
    ),
    (
        ("geometry", "angle", "triangle"),
        (
            (
                "In triangle ABC, the exterior angle at C is 115°. Angles A and B are equal. Find angle A.",
                "**Step 1:** Exterior angle = sum of the two opposite interior angles\n"
                "**Step 2:** 2A = 115° → A = 57.5°",
            ),
        ),
    ),
    (
        ("sequence", "pattern"),
        (
            (
                "Find the next two terms and the general term of: 3; 7; 11; 15; ...",
                "**Step 1:** Common difference d = 4\n**Step 2:** Next terms: 19; 23\n**Step 3:** Tₙ = 4n − 1",
            ),
        ),
    ),
    (
        (),
        (
            (
                "Solve for x: 2x + 5 = 15",
                "**Step 1:** 2x = 10\n**Step 2:** x = 5",
            ),
            (
                "Solve for x: 3x − 7 = 2x + 5",
                "**Step 1:** Group like terms: 3x − 2x = 5 + 7\n**Step 2:** x = 12\n"
                "**Check:** 3(12) − 7 = 29 and 2(12) + 5 = 29",
            ),
            (
                "Solve simultaneously: x + y = 7 and 2x − y = 5",
                "**Step 1:** Add the equations: 3x = 12 → x = 4\n**Step 2:** Substitute: 4 + y = 7 → y = 3",
            ),
        ),
    ),
)

_MATH_LIT: Sequence[_Template] = (
    (
        ("finance", "interest", "budget"),
        (
            (
                "Thabo deposits R4 000 at 8% simple interest per year.\n"
                "How much interest does he earn after 2 years, and what is the total amount?",
                "**Step 1:** I = P × r × t = 4 000 × 0.08 × 2 = R640\n**Step 2:** A = 4 000 + 640 = R4 640",
            ),
        ),
    ),
    (
        ("measurement", "convert"),
        (
            (
                "A rectangular room measures 4.5 m by 3.2 m.\na) Calculate the area in m².\nb) Convert the area to cm².",
                "**Step 1:** Area = 4.5 × 3.2 = 14.4 m²\n**Step 2:** 1 m² = 10 000 cm² → 144 000 cm²",
            ),
        ),
    ),
    (
        (),
        (
            (
                "A budget shows income of R5 500 and expenses of: Rent R2 200, Transport R800, Food R1 200, "
                "Other R900.\na) Calculate the total expenses\nb) Determine the savings",
                "**Step 1:** Total expenses = 2 200 + 800 + 1 200 + 900 = R5 100\n"
                "**Step 2:** Savings = 5 500 − 5 100 = R400",
            ),
        ),
    ),
)

_PHYSICAL_SCIENCES: Sequence[_Template] = (
    (
        ("mechanic", "motion", "velocity", "acceleration", "newton"),
        (
            (
                "A car accelerates uniformly from rest to 20 m·s⁻¹ in 5 s.\n"
                "a) Calculate its acceleration\nb) Calculate the distance covered in this time",
                "**Step 1:** a = Δv/Δt = (20 − 0)/5 = 4 m·s⁻²\n**Step 2:** Δx = ½at² = 0.5 × 4 × 5² = 50 m",
            ),
        ),
    ),
    (
        ("electric", "circuit", "ohm"),
        (
            (
                "A 12 V battery is connected across a 4 Ω resistor.\n"
                "Calculate the current through the resistor and the power dissipated.",
                "**Step 1:** I = V/R = 12/4 = 3 A\n**Step 2:** P = VI = 12 × 3 = 36 W",
            ),
        ),
    ),
    (
        (),
        (
            (
                "State Newton's First Law and give a real-life example.",
                "**Step 1:** An object stays at rest or moves at constant velocity unless a net force acts on it\n"
                "**Step 2:** Example: passengers lurch forward when a taxi brakes suddenly (inertia)",
            ),
        ),
    ),
)

_LIFE_SCIENCES: Sequence[_Template] = (
    (
        ("cell", "mitosis", "meiosis"),
        (
            (
                "Differentiate between mitosis and meiosis: number of divisions, number of daughter cells and "
                "genetic similarity.",
                "**Step 1:** Mitosis: 1 division, 2 identical daughter cells\n"
                "**Step 2:** Meiosis: 2 divisions, 4 genetically different daughter cells",
            ),
        ),
    ),
    (
        (),
        (
            (
                "Explain diffusion and osmosis, and give one example of each in the human body.",
                "**Step 1:** Diffusion: particles move from high to low concentration (O₂ from alveoli to blood)\n"
                "**Step 2:** Osmosis: water moves across a selectively permeable membrane from high to low water "
                "potential (water reabsorption in the kidneys)",
            ),
        ),
    ),
)

_GEOGRAPHY: Sequence[_Template] = (
    (
        ("map", "scale"),
        (
            (
                "On a 1:50 000 map, two towns are 7.2 cm apart. Calculate the real distance in km.",
                "**Step 1:** 1 cm represents 50 000 cm = 0.5 km\n**Step 2:** 7.2 × 0.5 = 3.6 km",
            ),
        ),
    ),
    (
        ("climate", "weather"),
        (
            (
                "Explain the difference between weather and climate, and give one example for South Africa.",
                "**Step 1:** Weather is the short-term state of the atmosphere\n"
                "**Step 2:** Climate is the average over 30+ years, e.g. the Western Cape's winter rainfall",
            ),
        ),
    ),
    (
        (),
        (
            (
                "Define a topographic map and state two features commonly shown on it.",
                "**Step 1:** A topographic map shows physical and human features at an accurate scale\n"
                "**Step 2:** Contour lines and roads/rivers/settlements",
            ),
        ),
    ),
)

_HISTORY: Sequence[_Template] = (
    (
        ("apartheid", "soweto", "resistance"),
        (
            (
                "Explain the significance of the 1976 Soweto Uprising in the struggle against apartheid.",
                "**Step 1:** It drew international attention and led to more sanctions\n"
                "**Step 2:** It energised youth activism and internal resistance",
            ),
        ),
    ),
    (
        (),
        (
            (
                "Explain one internal and one external factor that weakened the apartheid government in the 1980s.",
                "**Step 1:** Internal: mass mobilisation by the UDF and COSATU\n"
                "**Step 2:** External: international sanctions and disinvestment",
            ),
        ),
    ),
)

FALLBACKS: Dict[str, Sequence[_Template]] = {
    "Mathematics": _MATHEMATICS,
    "Mathematical Literacy": _MATH_LIT,
    "Physical Sciences": _PHYSICAL_SCIENCES,
    "Life Sciences": _LIFE_SCIENCES,
    "Geography": _GEOGRAPHY,
    "History": _HISTORY,
}


def generic_fallback(sub_topic: str) -> QuestionDraft:
    return QuestionDraft(
        text=f"Practice: Master {sub_topic}\n\nSolve: 2x + 5 = 15",
        solution="**Step 1:** 2x = 10\n**Step 2:** x = 5\n**Mastery Check:** Try 3x + 7 = 22.",
        source="fallback",
    )


def fallback_question(
    subject: str,
    topic: str,
    sub_topic: str,
    progression: int = 0,
    *,
    source: str = "fallback",
) -> QuestionDraft:
    """Pick a bundled question for the subject; topic keywords choose the family."""

    templates = FALLBACKS.get(subject)
    if not templates:
        draft = generic_fallback(sub_topic or topic or subject)
        draft.source = source
        return draft

    haystack = f"{topic} {sub_topic}".lower()
    chosen = templates[-1]
    for keywords, drafts in templates:
        if keywords and any(k in haystack for k in keywords):
            chosen = (keywords, drafts)
            break
    drafts = chosen[1]
    text, solution = drafts[min(max(0, progression), len(drafts) - 1)]
    return QuestionDraft(text=text, solution=solution, source=source)


class QuestionBank:
    """Produces :class:`PracticeQuestion` objects for a practice profile.

    The LLM is asked for a stem and then a worked solution. When the endpoint
    is not configured the bundled questions are used with ``source="offline"``;
    when it fails or times out they are used with ``source="fallback"``.
    """

    def __init__(
        self,
        *,
        llm: Optional[Callable[..., object]] = None,
        llm_available: Optional[Callable[[], bool]] = None,
        timeout: float = 20.0,
    ) -> None:
        self._llm = llm or tutor.complete
        self._llm_available = llm_available or tutor.is_configured
        self.timeout = timeout

    async def generate(
        self,
        *,
        subject: str,
        grade: int,
        topic: str,
        sub_topic: str,
        progression: int = 0,
        user_id: Optional[str] = None,
    ) -> PracticeQuestion:
        tier = tier_for(progression)
        profile = {
            "subject": subject,
            "grade": grade,
            "topic": topic,
            "sub_topic": sub_topic,
            "difficulty_key": tier.key,
            "difficulty_label": tier.label,
        }
        draft = await self._draft(profile, progression, user_id)
        return self._finalise(draft, subject, topic)

    async def _draft(self, profile: Dict[str, object], progression: int, user_id: Optional[str]) -> QuestionDraft:
        subject = str(profile["subject"])
        topic = str(profile["topic"])
        sub_topic = str(profile["sub_topic"])
        if not self._llm_available():
            return fallback_question(subject, topic, sub_topic, progression, source="offline")
        try:
            question = await self._llm(
                tutor.question_messages(profile),
                QUESTION_MAX_TOKENS,
                temperature=QUESTION_TEMPERATURE,
                purpose="question",
                user_id=user_id,
                timeout=self.timeout,
            )
            solution = await self._llm(
                tutor.solution_messages(profile, question.text),
                SOLUTION_MAX_TOKENS,
                temperature=SOLUTION_TEMPERATURE,
                purpose="solution",
                user_id=user_id,
                timeout=self.timeout,
            )
        except tutor.LLMUnavailableError as exc:
            logger.warning("Question generation fell back for %s/%s: %s", subject, topic, exc)
            return fallback_question(subject, topic, sub_topic, progression)
        return QuestionDraft(text=question.text.strip(), solution=solution.text.strip(), source="llm")

    @staticmethod
    def _finalise(draft: QuestionDraft, subject: str, topic: str) -> PracticeQuestion:
        text = draft.text.strip() or generic_fallback(topic).text
        return PracticeQuestion(
            text=text,
            solution=draft.solution,
            source=draft.source,
            content_id=new_content_id(subject, topic),
            classification=classify_question(text),
            complexity=complexity.classify(text).flags(),
        )