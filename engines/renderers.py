"""Formula and graph renderers.

Both produce an SVG ``ImagePayload``. Graphs are drawn once with matplotlib and
saved as SVG, or as PNG by ``rasterize`` for channels that reject SVG uploads;
formulas are rasterised with Pillow.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.font_manager as font_manager
import matplotlib.pyplot as plt
from PIL import Image, ImageDraw, ImageFont

from engines.caching import LRUCache
from schemas import ImagePayload

logger = logging.getLogger(__name__)

RENDER_CACHE_SIZE = 200
FORMULA_WIDTH = 900
FORMULA_PADDING = 24
FORMULA_FONT_SIZE = 28
GRAPH_WIDTH = 900
GRAPH_HEIGHT = 600
GRAPH_SAMPLES = 400
CURVE_COLOUR = "#0B84F3"

_SANITIZE_RULES: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\\cdot"), "·"),
    (re.compile(r"\\times"), "×"),
    (re.compile(r"\\div"), "÷"),
    (re.compile(r"\\pi\b", re.IGNORECASE), "π"),
    (re.compile(r"\\theta\b", re.IGNORECASE), "θ"),
    (re.compile(r"\\alpha\b"), "α"),
    (re.compile(r"\\beta\b"), "β"),
    (re.compile(r"\\gamma\b"), "γ"),
    (re.compile(r"\\sqrt\{([^}]+)\}"), r"√(\1)"),
    (re.compile(r"\\frac\{([^}]+)\}\{([^}]+)\}"), r"(\1)/(\2)"),
    (re.compile(r"\\left"), ""),
    (re.compile(r"\\right"), ""),
    (re.compile(r"\\overline\{([^}]+)\}"), r"‾\1"),
    (re.compile(r"\\underline\{([^}]+)\}"), r"\1"),
    (re.compile(r"\^\{\s*([^}]+?)\s*\}"), r"^(\1)"),
    (re.compile(r"_\{\s*([^}]+?)\s*\}"), r"_(\1)"),
    (re.compile(r"\^2"), "²"),
    (re.compile(r"\^3"), "³"),
    (re.compile(r"<="), "≤"),
    (re.compile(r">="), "≥"),
    (re.compile(r"\\\\"), " "),
    (re.compile(r"\$"), ""),
    (re.compile(r"\\[\[\]()]"), ""),
)

_LATEX_SEGMENTS = (
    re.compile(r"\$\$([\s\S]+?)\$\$"),
    re.compile(r"\\\[([\s\S]+?)\\\]"),
    re.compile(r"\\\(([\s\S]+?)\\\)"),
    re.compile(r"\$([^$]+)\$"),
)

_render_cache: LRUCache[ImagePayload] = LRUCache(max_size=RENDER_CACHE_SIZE)


def _cache_key(content: str, options: Dict[str, Any]) -> str:
    blob = json.dumps({"latex": content, "options": options}, sort_keys=True, ensure_ascii=False)
    return hashlib.md5(blob.encode("utf-8")).hexdigest()


def _xml_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _b64(svg: str) -> str:
    return base64.b64encode(svg.encode("utf-8")).decode("ascii")


# ----------------------------------------------------------------------
# formulas
# ----------------------------------------------------------------------
def sanitize_latex(latex: str) -> str:
    """Turn LaTeX-ish input into display text (``\\frac{a}{b}`` -> ``(a)/(b)``)."""

    text = str(latex or "")
    for pattern, replacement in _SANITIZE_RULES:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s+", " ", text).strip()


def extract_latex_segment(text: str) -> str:
    """First delimited LaTeX expression in ``text``, else the first 240 chars."""

    for pattern in _LATEX_SEGMENTS:
        match = pattern.search(text or "")
        if match and match.group(1).strip():
            return match.group(1).strip()
    return (text or "").strip()[:240]


def wrap_words(text: str, max_chars: int) -> List[str]:
    lines: List[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines or [""]


def _formula_svg(lines: List[str], width: int, font_size: int) -> Tuple[str, int]:
    line_height = round(font_size * 1.4)
    height = FORMULA_PADDING * 2 + line_height * len(lines)
    rows = "\n    ".join(
        f'<text x="{round(width / 2)}" y="{FORMULA_PADDING + (i + 1) * line_height - round(line_height * 0.25)}" '
        f'text-anchor="middle">{_xml_escape(line)}</text>'
        for i, line in enumerate(lines)
    )
    svg = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<svg width="{width}" height="{height}" viewBox="0 0 {width} {height}" '
        'xmlns="http://www.w3.org/2000/svg" role="img">\n'
        f'  <rect x="0" y="0" width="{width}" height="{height}" fill="#FFFFFF" rx="8" ry="8"/>\n'
        "  <g font-family=\"ui-monospace, Menlo, Consolas, 'DejaVu Sans Mono', 'Courier New', monospace\" "
        f'font-size="{font_size}" fill="#000000">\n    {rows}\n  </g>\n</svg>'
    )
    return svg, height


def render_formula(latex: str, *, width: int = FORMULA_WIDTH, font_size: int = FORMULA_FONT_SIZE,
                   kind: str = "formula", preformatted: bool = False) -> ImagePayload:
    """Render ``latex`` as a word-wrapped monospace SVG.

    ``preformatted`` keeps the input's own line breaks (used for tables).
    Results are cached by md5 of the input and options.
    """

    if not latex or not latex.strip():
        raise ValueError("No formula content provided")

    options = {"width": width, "font_size": font_size, "kind": kind, "preformatted": preformatted}
    key = _cache_key(latex, options)
    cached = _render_cache.get(key)
    if cached is not None:
        return cached

    max_chars = max(20, math.floor((width - FORMULA_PADDING * 2) / (font_size * 0.62)))
    if preformatted:
        lines = []
        for raw_line in latex.splitlines():
            line = sanitize_latex(raw_line) if "\\" in raw_line else raw_line.rstrip()
            lines.extend(wrap_words(line, max_chars) if len(line) > max_chars else [line])
        lines = [line for line in lines if line.strip()] or [""]
    else:
        lines = wrap_words(sanitize_latex(latex), max_chars)

    svg, height = _formula_svg(lines, width, font_size)
    payload = ImagePayload(
        data=_b64(svg),
        format="svg",
        width=width,
        height=height,
        alt="Table" if kind == "table" else "Mathematical formula",
        kind=kind,
        source={"lines": lines, "font_size": font_size},
    )
    _render_cache.add(key, payload)
    return payload


# ----------------------------------------------------------------------
# graphs
# ----------------------------------------------------------------------
_NUM = r"[+\-]?\d*\.?\d*"
_QUADRATIC = re.compile(rf"^({_NUM})?x\^?2(?:([+\-]\d*\.?\d*)x)?(?:([+\-]\d*\.?\d*))?$")
_LINEAR = re.compile(rf"^({_NUM})?x(?:([+\-]\d*\.?\d*))?$")
_HYPERBOLA = re.compile(rf"^({_NUM})?/x$")
_EXPONENTIAL = re.compile(rf"^({_NUM})?\*?([+\-]?\d*\.?\d+)\^x(?:([+\-]\d*\.?\d*))?$")


def _coef(raw: Optional[str], default: float) -> float:
    """Parse a regex-captured coefficient; bare signs mean +/-1."""

    if raw is None or raw in ("", "+"):
        return default
    if raw == "-":
        return -default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class FunctionDefinition:
    type: str
    params: Dict[str, float]
    expr: str

    def evaluate(self, x: float) -> float:
        p = self.params
        if self.type == "quadratic":
            return p["a"] * x * x + p["b"] * x + p["c"]
        if self.type == "linear":
            return p["m"] * x + p["c"]
        if self.type == "hyperbola":
            return math.nan if x == 0 else p["k"] / x
        if self.type == "exponential":
            try:
                return p["a"] * math.pow(p["b"], x) + p["c"]
            except (OverflowError, ValueError):
                return math.nan
        raise ValueError(f"Unknown function type {self.type}")


def normalize_function(raw: str) -> Optional[FunctionDefinition]:
    expr = re.sub(r"\s+", "", raw or "").replace("−", "-").replace("²", "^2")
    expr = expr.rstrip(".,")

    match = _QUADRATIC.match(expr)
    if match:
        a = _coef(match.group(1), 1.0)
        b = _coef(match.group(2) or "0", 0.0) if match.group(2) not in ("+", "-") else _coef(match.group(2), 1.0)
        c = _coef(match.group(3) or "0", 0.0)
        return FunctionDefinition("quadratic", {"a": a, "b": b, "c": c}, f"y={expr}")

    match = _LINEAR.match(expr)
    if match:
        m = _coef(match.group(1), 1.0)
        c = _coef(match.group(2) or "0", 0.0)
        return FunctionDefinition("linear", {"m": m, "c": c}, f"y={expr}")

    match = _HYPERBOLA.match(expr)
    if match:
        return FunctionDefinition("hyperbola", {"k": _coef(match.group(1), 1.0)}, f"y={expr}")

    match = _EXPONENTIAL.match(expr)
    if match:
        a = _coef(match.group(1), 1.0)
        b = float(match.group(2))
        c = _coef(match.group(3) or "0", 0.0)
        return FunctionDefinition("exponential", {"a": a, "b": b, "c": c}, f"y={expr}")
    return None


def extract_function(text: str) -> Optional[FunctionDefinition]:
    """Parse the first ``f(x)=...`` or ``y=...`` definition in ``text``."""

    for pattern in (r"f\s*\(\s*x\s*\)\s*=\s*([^\n;]+)", r"y\s*=\s*([^\n;]+)"):
        match = re.search(pattern, text or "", re.IGNORECASE)
        if match:
            candidate = re.split(r"\s+(?:for|on|where|and|from)\s+|,", match.group(1))[0]
            definition = normalize_function(candidate)
            if definition is not None:
                return definition
    return None


def compute_range(definition: FunctionDefinition) -> Tuple[float, float, float, float]:
    xmin, xmax, ymin, ymax = -10.0, 10.0, -10.0, 10.0
    if definition.type == "quadratic":
        a, b = definition.params["a"], definition.params["b"]
        xv = -b / (2 * a) if a != 0 else 0.0
        xmin = min(-10.0, math.floor(xv - 6))
        xmax = max(10.0, math.ceil(xv + 6))
        ymin, ymax = -12.0, 12.0
    elif definition.type in ("linear", "hyperbola"):
        ymin, ymax = -12.0, 12.0
    elif definition.type == "exponential":
        ymin, ymax = -2.0, 12.0
    return xmin, xmax, ymin, ymax


def sample_curve(definition: FunctionDefinition, samples: int = GRAPH_SAMPLES) -> List[Tuple[float, float]]:
    xmin, xmax, _, _ = compute_range(definition)
    points = []
    for i in range(samples + 1):
        x = xmin + (i / samples) * (xmax - xmin)
        points.append((x, definition.evaluate(x)))
    return points


def _draw_graph(source: Dict[str, Any], width: int, height: int, fmt: str) -> bytes:
    """Plot sampled points on a labelled grid and save the figure as ``fmt``."""

    xmin, xmax, ymin, ymax = source["range"]
    xs = [x for x, _ in source["points"]]
    # Breaks the line at asymptotes instead of joining the two branches.
    ys = [y if math.isfinite(y) and ymin - 50 <= y <= ymax + 50 else math.nan for _, y in source["points"]]

    fig, ax = plt.subplots(figsize=(width / 100, height / 100), dpi=100)
    try:
        ax.set_xlim(xmin, xmax)
        ax.set_ylim(ymin, ymax)
        ax.set_xticks(range(math.ceil(xmin), math.floor(xmax) + 1))
        ax.set_yticks(range(math.ceil(ymin), math.floor(ymax) + 1))
        ax.tick_params(labelsize=8, colors="#555555")
        ax.grid(True, color="#eeeeee", linewidth=1)
        ax.axhline(0, color="#333333", linewidth=2)
        ax.axvline(0, color="#333333", linewidth=2)
        ax.plot(xs, ys, color=CURVE_COLOUR, linewidth=3)
        ax.set_title(source.get("expr", ""), loc="right", fontsize=12)
        buf = io.BytesIO()
        metadata = {"Date": None} if fmt == "svg" else None
        fig.savefig(buf, format=fmt, facecolor="white", metadata=metadata)
    finally:
        plt.close(fig)
    return buf.getvalue()


def render_graph(text: str, *, width: int = GRAPH_WIDTH, height: int = GRAPH_HEIGHT) -> Optional[ImagePayload]:
    """Render the first function found in ``text``; ``None`` if none parses."""

    definition = extract_function(text)
    if definition is None:
        return None

    options = {"width": width, "height": height, "kind": "graph"}
    key = _cache_key(definition.expr, options)
    cached = _render_cache.get(key)
    if cached is not None:
        return cached

    source = {"points": sample_curve(definition), "range": compute_range(definition), "expr": definition.expr}
    svg = _draw_graph(source, width, height, "svg")
    payload = ImagePayload(
        data=base64.b64encode(svg).decode("ascii"),
        format="svg",
        width=width,
        height=height,
        alt=f"Graph of {definition.expr}",
        kind="graph",
        source=source,
    )
    _render_cache.add(key, payload)
    return payload


def render_for(text: str, fmt: str) -> Optional[ImagePayload]:
    """Render ``text`` according to a complexity class; ``None`` if nothing applies."""

    if fmt == "graph_image":
        return render_graph(text)
    if fmt == "math_image":
        return render_formula(extract_latex_segment(text))
    if fmt == "table_image":
        return render_formula(text, kind="table", preformatted=True)
    return None


def clear_cache() -> None:
    _render_cache.clear()


# ----------------------------------------------------------------------
# rasterisation
# ----------------------------------------------------------------------
def _monospace_font(size: int) -> ImageFont.FreeTypeFont:
    path = font_manager.findfont(font_manager.FontProperties(family="DejaVu Sans Mono"))
    return ImageFont.truetype(path, size)


def _rasterize_lines(payload: ImagePayload) -> bytes:
    lines: List[str] = payload.source.get("lines") or [payload.alt]
    font_size = int(payload.source.get("font_size") or FORMULA_FONT_SIZE)
    font = _monospace_font(font_size)
    canvas = Image.new("RGB", (payload.width, payload.height), (255, 255, 255))
    draw = ImageDraw.Draw(canvas)
    line_height = round(font_size * 1.4)
    for i, line in enumerate(lines):
        y = FORMULA_PADDING + i * line_height
        draw.text((payload.width // 2, y), line, fill=(0, 0, 0), font=font, anchor="ma")
    buf = io.BytesIO()
    canvas.save(buf, format="PNG")
    return buf.getvalue()


def _rasterize_graph(payload: ImagePayload) -> bytes:
    png = _draw_graph(payload.source, payload.width, payload.height, "png")
    img = Image.open(io.BytesIO(png)).convert("RGB")
    out = io.BytesIO()
    img.save(out, format="PNG", optimize=True)
    return out.getvalue()


def rasterize(payload: ImagePayload) -> Optional[bytes]:
    """PNG bytes for ``payload``; ``None`` when it carries no drawing primitives."""

    if payload.format == "png":
        return base64.b64decode(payload.data)
    if payload.kind == "graph" and payload.source.get("points"):
        return _rasterize_graph(payload)
    if payload.source.get("lines"):
        return _rasterize_lines(payload)
    return None

