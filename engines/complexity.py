"""Decide how a piece of outbound content should be presented.

Priority, highest first: tables/matrices, graphs, LaTeX-only math, simple
Unicode math, plain text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Literal

ComplexityClass = Literal["text_only", "text_with_unicode", "math_image", "graph_image", "table_image"]

_TABLE_PATTERNS = (
    re.compile(r"<table[\s\S]*?</table>", re.IGNORECASE),
    re.compile(r"\\begin\{(array|tabular|matrix|pmatrix|bmatrix|vmatrix)\}", re.IGNORECASE),
    re.compile(r"^\s*\+[-=]+\+", re.MULTILINE),
)
_PIPE_ROW = re.compile(r"^[^|\n]*\|[^|\n]*(\|[^|\n]*)*$")

_MATRIX_PATTERNS = (
    re.compile(r"\\begin\{(matrix|pmatrix|bmatrix|vmatrix|Vmatrix)\}", re.IGNORECASE),
    # [1 2; 3 4] or rows split over lines
    re.compile(r"\[\s*-?[\w.]+(\s+-?[\w.]+)+\s*(;|\n)\s*-?[\w.]+(\s+-?[\w.]+)+\s*\]"),
    # [a b][c d]
    re.compile(r"\[\s*-?[\w.]+(\s+-?[\w.]+)+\s*\]\s*\[\s*-?[\w.]+(\s+-?[\w.]+)+\s*\]"),
    # |a b| over two rows
    re.compile(r"\|\s*-?[\w.]+(\s+-?[\w.]+)+\s*\|\s*\n\s*\|\s*-?[\w.]+(\s+-?[\w.]+)+\s*\|"),
    # augmented [1 2 | 3]
    re.compile(r"\[\s*-?[\w.]+(\s+-?[\w.]+)+\s*\|\s*-?[\w.]+\s*(;|\n|\])"),
)

_GRAPH_MENTION = re.compile(r"(sketch|draw|plot).*(graph|curve)|graph\s+of|sketch\s+the\s+graph")
_FUNCTION_DEF = re.compile(r"(y\s*=|f\s*\(\s*x\s*\)\s*=)")

_LATEX_PATTERNS = (
    re.compile(r"\\\[.*?\\\]", re.DOTALL),
    re.compile(r"\\\(.*?\\\)", re.DOTALL),
    re.compile(r"\$\$.*?\$\$", re.DOTALL),
    re.compile(r"\$[^$]+\$", re.DOTALL),
    re.compile(r"\\begin\{(equation|align|matrix|pmatrix|bmatrix|cases|array)", re.IGNORECASE),
    re.compile(r"\\frac\{.*?\}\{.*?\}", re.IGNORECASE),
    re.compile(r"\\sqrt\{.*?\}", re.IGNORECASE),
    re.compile(r"\\int|\\sum|\\lim", re.IGNORECASE),
    re.compile(r"\\left|\\right", re.IGNORECASE),
    re.compile(r"\^\{[^}]+\}"),
    re.compile(r"_\{[^}]+\}"),
    re.compile(r"\\overline\{.*?\}|\\underline\{.*?\}|\\vec\{.*?\}|\\hat\{.*?\}", re.IGNORECASE),
    re.compile(r"\\cdot|\\times|\\div", re.IGNORECASE),
    re.compile(r"\\sin|\\cos|\\tan|\\log|\\ln", re.IGNORECASE),
    re.compile(r"\\alpha|\\beta|\\gamma|\\theta|\\pi", re.IGNORECASE),
)

_SIMPLE_ALLOWED = re.compile(r"^[\s0-9a-zA-Z+\-−*×÷=<>≤≥≠()\[\]{}.,:;/|^²³√πθ∞%±∓?!'\"]+$")
_LATEX_ESCAPE = re.compile(r"\\[a-z]+|\\begin\{|\\end\{", re.IGNORECASE)
_MATH_INDICATOR = re.compile(r"[=<>≤≥≠×÷√π²³^±∞θ]|\d\s*[+\-−*/]\s*\d|\d[a-z]\b", re.IGNORECASE)


@dataclass(frozen=True)
class ComplexityResult:
    format: ComplexityClass
    has_table: bool = False
    has_matrix: bool = False
    has_graph: bool = False
    has_latex: bool = False
    has_simple_unicode: bool = False

    @property
    def needs_image(self) -> bool:
        return self.format in ("math_image", "graph_image", "table_image")

    @property
    def label(self) -> str:
        """Short noun used in text markers such as ``[equation detected]``."""

        return {
            "table_image": "table",
            "graph_image": "graph",
            "math_image": "equation",
        }.get(self.format, "content")

    def flags(self) -> Dict[str, bool]:
        return {
            "has_table": self.has_table,
            "has_matrix": self.has_matrix,
            "has_graph": self.has_graph,
            "has_latex": self.has_latex,
            "has_simple_unicode": self.has_simple_unicode,
        }


def has_table(text: str) -> bool:
    if any(p.search(text) for p in _TABLE_PATTERNS):
        return True
    rows = [line for line in text.splitlines() if line.strip() and _PIPE_ROW.match(line.strip())]
    if not rows:
        return False
    max_columns = max(len([c for c in row.strip().strip("|").split("|")]) for row in rows)
    return max_columns >= 3 or len(rows) >= 4


def has_matrix(text: str) -> bool:
    return any(p.search(text) for p in _MATRIX_PATTERNS)


def has_graph(text: str) -> bool:
    lowered = (text or "").lower()
    return bool(_GRAPH_MENTION.search(lowered) and _FUNCTION_DEF.search(lowered))


def is_simple_unicode_math(text: str) -> bool:
    """True when ``text`` reads fine as plain text with a few math glyphs."""

    stripped = (text or "").strip()
    if not stripped or _LATEX_ESCAPE.search(stripped):
        return False
    if not _SIMPLE_ALLOWED.match(stripped):
        return False
    return bool(_MATH_INDICATOR.search(stripped))


def has_complex_math(text: str) -> bool:
    if not text or is_simple_unicode_math(text):
        return False
    return any(p.search(text) for p in _LATEX_PATTERNS)


def classify(text: str) -> ComplexityResult:
    if not text or not text.strip():
        return ComplexityResult("text_only")

    table = has_table(text)
    matrix = has_matrix(text)
    graph = has_graph(text)
    latex = has_complex_math(text)
    simple = is_simple_unicode_math(text)

    if table or matrix:
        fmt: ComplexityClass = "table_image"
    elif graph:
        fmt = "graph_image"
    elif latex:
        fmt = "math_image"
    elif simple:
        fmt = "text_with_unicode"
    else:
        fmt = "text_only"
    return ComplexityResult(fmt, table, matrix, graph, latex, simple)
