"""Split OCR text into individual homework questions and classify them."""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence

from engines.formatting import truncate
from schemas import DetectedQuestion

logger = logging.getLogger(__name__)

MAX_QUESTIONS = 10
MIN_CONFIDENCE = 0.3
DISPLAY_LENGTH = 80
MAX_SENTENCE_QUESTIONS = 5

_NUMBERED = re.compile(r"^[ \t]*(\d+)[.)][ \t]*(.*?)(?=^[ \t]*\d+[.)]|\Z)", re.MULTILINE | re.DOTALL)
_LETTERED = re.compile(r"^[ \t]*([a-z])[.)][ \t]*(.*?)(?=^[ \t]*[a-z][.)]|\Z)", re.MULTILINE | re.DOTALL | re.IGNORECASE)
_KEYWORD = re.compile(
    r"(question|problem|exercise)\s+(\d+)[:.]?\s*(.*?)(?=(?:question|problem|exercise)\s+\d+|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_SENTENCE = re.compile(r"[^.!?]*[.!?]")
_MEANINGFUL = re.compile(r"[a-zA-Z]{3,}|[\d+\-*/=]{2,}")

_HOMEWORK_INDICATORS = (
    re.compile(r"solve|find|calculate|determine|evaluate", re.IGNORECASE),
    re.compile(r"what\s+is|how\s+much|how\s+many", re.IGNORECASE),
    re.compile(r"area|perimeter|volume|circumference", re.IGNORECASE),
    re.compile(r"\d+\s*[x-z]|[x-z]\s*\d+", re.IGNORECASE),
    re.compile(r"=\s*\d+|\d+\s*="),
    re.compile(r"triangle|circle|rectangle|square", re.IGNORECASE),
)

_MATH_CONTENT = (
    re.compile(r"\d+\s*[x-z]\s*[+\-*/=]", re.IGNORECASE),
    re.compile(r"[x-z]\s*[+\-*/]\s*\d+", re.IGNORECASE),
    re.compile(r"=\s*\d+"),
    re.compile(r"area|perimeter|volume|circumference", re.IGNORECASE),
    re.compile(r"sin|cos|tan|sine|cosine|tangent", re.IGNORECASE),
    re.compile(r"factor|simplify|expand", re.IGNORECASE),
    re.compile(r"\^\d+|²|³"),
    re.compile(r"√|\bsqrt\b", re.IGNORECASE),
    re.compile(r"π|\bpi\b", re.IGNORECASE),
    re.compile(r"triangle|circle|rectangle|square", re.IGNORECASE),
)
_QUESTION_WORDS = re.compile(r"\b(find|solve|calculate|determine|what|how)\b", re.IGNORECASE)

# Ordered; the first matching pattern names the question type.
CLASSIFICATIONS = (
    ("linear_equation", re.compile(r"solve.*x|find.*x|x\s*=|\d*x\s*[+\-]")),
    ("quadratic_equation", re.compile(r"x\^?2|x²|quadratic|ax²")),
    ("triangle_area", re.compile(r"area.*triangle|triangle.*area")),
    ("circle_area", re.compile(r"area.*circle|circle.*area|πr²")),
    ("rectangle_area", re.compile(r"area.*rectangle|rectangle.*area|length.*width")),
    ("perimeter", re.compile(r"perimeter|around|border")),
    ("factoring", re.compile(r"factor|factorise|factorize")),
    ("simplifying", re.compile(r"simplify|reduce|combine")),
    ("trigonometry", re.compile(r"\bsin|\bcos|\btan|sine|cosine|tangent")),
    ("geometry_angles", re.compile(r"angle|degrees")),
    ("calculus_derivative", re.compile(r"\bderivative\b|\bd/dx\b|\bdy/dx\b|\brate of change\b|\bdifferentiat")),
    ("statistics", re.compile(r"\bmean\b|average|median|\bmode\b|standard deviation")),
    ("probability", re.compile(r"probability|chance|odds")),
    (
        "biology_concept",
        re.compile(
            r"photosynthesis|respiration|\bcells?\b|mitosis|meiosis|ecosystem|ecology|chlorophyll|enzyme|"
            r"digestion|osmosis|diffusion"
        ),
    ),
    ("definition", re.compile(r"\bwhat is\b|\bdefine\b|\bexplain\b|\bdescribe\b|\bdifference between\b")),
)

_NUMBER_FIELDS = {
    "base": re.compile(r"base\s*(?:[=:]|of|is)?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    "height": re.compile(r"height\s*(?:[=:]|of|is)?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    "length": re.compile(r"length\s*(?:[=:]|of|is)?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    "width": re.compile(r"width\s*(?:[=:]|of|is)?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    "radius": re.compile(r"radius\s*(?:[=:]|of|is)?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    "coefficient": re.compile(r"(\d+)\s*x"),
    "constant": re.compile(r"[+\-]\s*(\d+)(?!\s*x)"),
    "equals": re.compile(r"=\s*(\d+)"),
}


def classify_question(text: str) -> str:
    lowered = (text or "").lower()
    for name, pattern in CLASSIFICATIONS:
        if pattern.search(lowered):
            return name
    return "general_academic"


def extract_numbers(text: str) -> Dict[str, float]:
    """Named quantities in a question, e.g. ``{"base": 6.0, "height": 4.0}``."""

    found: Dict[str, float] = {}
    for key, pattern in _NUMBER_FIELDS.items():
        match = pattern.search(text or "")
        if match:
            found[key] = float(match.group(1))
    return found


def has_math_content(text: str) -> bool:
    return any(p.search(text) for p in _MATH_CONTENT)


def question_confidence(text: str) -> float:
    confidence = 0.5
    if has_math_content(text):
        confidence += 0.3
    if _QUESTION_WORDS.search(text):
        confidence += 0.2
    if re.search(r"\d", text):
        confidence += 0.1
    if len(text) < 20:
        confidence -= 0.2
    if len(text) > 200:
        confidence -= 0.1
    return round(max(0.1, min(1.0, confidence)), 2)


def is_valid_question_text(text: str) -> bool:
    if not text or len(text) < 10 or len(text) > 500:
        return False
    return bool(_MEANINGFUL.search(text))


def looks_like_homework_question(sentence: str) -> bool:
    return len(sentence) > 15 and any(p.search(sentence) for p in _HOMEWORK_INDICATORS)


def _clean(text: str) -> str:
    return " ".join(text.split())


def _numbered(text: str) -> List[tuple[int, str]]:
    found = [(int(m.group(1)), _clean(m.group(2))) for m in _NUMBERED.finditer(text)]
    return sorted([(n, t) for n, t in found if is_valid_question_text(t)], key=lambda item: item[0])


def _lettered(text: str) -> List[tuple[int, str]]:
    found = [_clean(m.group(2)) for m in _LETTERED.finditer(text)]
    return [(i, t) for i, t in enumerate((t for t in found if is_valid_question_text(t)), start=1)]


def _keyword(text: str) -> List[tuple[int, str]]:
    found = [(int(m.group(2)), _clean(m.group(3))) for m in _KEYWORD.finditer(text)]
    return sorted([(n, t) for n, t in found if is_valid_question_text(t)], key=lambda item: item[0])


def _sentences(text: str) -> List[tuple[int, str]]:
    found = [_clean(m.group(0)) for m in _SENTENCE.finditer(text)]
    kept = [s for s in found if looks_like_homework_question(s)][:MAX_SENTENCE_QUESTIONS]
    return list(enumerate(kept, start=1))


def _single(text: str) -> List[tuple[int, str]]:
    cleaned = _clean(text)
    return [(1, cleaned)] if is_valid_question_text(cleaned) else []


_TIERS: Sequence[tuple[str, Callable[[str], List[tuple[int, str]]]]] = (
    ("numbered", _numbered),
    ("lettered", _lettered),
    ("keyword", _keyword),
    ("sentence", _sentences),
    ("single", _single),
)


def detect_questions(text: Optional[str]) -> List[DetectedQuestion]:
    """Detect questions in OCR text; the first tier that finds any wins.

    Items below the confidence floor are dropped, at most ten are kept, and
    the survivors are renumbered so each displayed index equals its position.
    """

    source = (text or "").strip()
    if not source:
        return []

    method = "none"
    raw: List[tuple[int, str]] = []
    for name, tier in _TIERS:
        raw = tier(source)
        if raw:
            method = name
            break

    kept = [(t, question_confidence(t)) for _, t in raw]
    kept = [(t, c) for t, c in kept if c >= MIN_CONFIDENCE][:MAX_QUESTIONS]
    questions = [
        DetectedQuestion(
            number=i,
            text=t,
            type=classify_question(t),
            confidence=c,
            display_text=truncate(t, DISPLAY_LENGTH),
            numbers=extract_numbers(t),
        )
        for i, (t, c) in enumerate(kept, start=1)
    ]
    logger.info("Detected %s questions using %s tier", len(questions), method)
    return questions
