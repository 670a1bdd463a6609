"""Text layout helpers: device classes, separators and Unicode decoration."""

from __future__ import annotations

import re
from typing import Optional, Sequence

SEPARATOR_WIDTHS = {"mobile": 20, "tablet": 45, "desktop": 60}
NUMBER_EMOJI = ("1️⃣", "2️⃣", "3️⃣", "4️⃣", "5️⃣", "6️⃣", "7️⃣", "8️⃣", "9️⃣", "🔟")

_SUPERSCRIPTS = (("^2", "²"), ("^3", "³"), ("^4", "⁴"), ("^5", "⁵"))
_WORD_GLYPHS = (
    (re.compile(r"\binfinity\b", re.IGNORECASE), "∞"),
    (re.compile(r"\bpi\b", re.IGNORECASE), "π"),
    (re.compile(r"\btheta\b", re.IGNORECASE), "θ"),
)
_SQRT = re.compile(r"sqrt\(([^)]+)\)")
_STEP = re.compile(r"(?<!\*)\bStep (\d+)[:.](?!\*)")


def detect_device_type(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "tablet" in ua or "ipad" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "mobile"


def separator(device_type: Optional[str] = "mobile") -> str:
    return "─" * SEPARATOR_WIDTHS.get(device_type or "mobile", SEPARATOR_WIDTHS["mobile"])


def decorate_math(text: str) -> str:
    """Swap ASCII math for display glyphs (``x^2`` -> ``x²``, ``<=`` -> ``≤``)."""

    out = text
    for ascii_form, glyph in _SUPERSCRIPTS:
        out = out.replace(ascii_form, glyph)
    out = _SQRT.sub(r"√(\1)", out)
    out = out.replace("+-", "±")
    for pattern, glyph in _WORD_GLYPHS:
        out = pattern.sub(glyph, out)
    out = out.replace("<=", "≤").replace(">=", "≥").replace("!=", "≠")
    out = _STEP.sub(r"*Step \1:*", out)
    return out


def layout(content: str, menu: str, device_type: Optional[str] = "mobile") -> str:
    """``content``, a device-width separator, then the menu block."""

    return f"{content}\n\n{separator(device_type)}\n\n{menu}"


def number_emoji(index: int) -> str:
    if 1 <= index <= len(NUMBER_EMOJI):
        return NUMBER_EMOJI[index - 1]
    return f"{index}."


def emoji_list(items: Sequence[str]) -> str:
    return "\n".join(f"{number_emoji(i)} {item}" for i, item in enumerate(items, start=1))


def truncate(text: str, limit: int = 80) -> str:
    clean = " ".join((text or "").split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3].rstrip() + "..."
