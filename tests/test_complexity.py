import pytest

from engines.complexity import classify
from engines.formatting import decorate_math, detect_device_type, layout, separator, truncate


@pytest.mark.parametrize(
    "text, expected",
    [
        ("", "text_only"),
        ("Explain the causes of the Soweto Uprising.", "text_only"),
        ("Solve for x: 2x + 5 = 15", "text_with_unicode"),
        ("Simplify \\frac{x^2 - 9}{x - 3}", "math_image"),
        ("Sketch the graph of y = x^2 - 4", "graph_image"),
        ("| x | y | z |\n| 1 | 2 | 3 |", "table_image"),
        ("\\begin{pmatrix} 1 & 2 \\\\ 3 & 4 \\end{pmatrix}", "table_image"),
    ],
)
def test_classification(text, expected):
    assert classify(text).format == expected


def test_table_outranks_latex():
    text = "| a | b | c |\n| \\frac{1}{2} | 2 | 3 |"

    result = classify(text)

    assert result.format == "table_image"
    assert result.flags()["has_table"]
    assert result.label == "table"


def test_needs_image_only_for_image_classes():
    assert classify("Simplify \\sqrt{49}").needs_image
    assert not classify("x^2 + 3 = 7").needs_image


def test_decorate_math_swaps_ascii_forms():
    assert decorate_math("x^2 <= 9 and sqrt(16) != pi") == "x² ≤ 9 and √(16) ≠ π"
    assert decorate_math("Step 1: expand") == "*Step 1:* expand"


def test_device_detection_and_separator_width():
    assert detect_device_type("Mozilla/5.0 (iPad; CPU OS 16_0)") == "tablet"
    assert detect_device_type("Mozilla/5.0 (Linux; Android 13)") == "mobile"
    assert detect_device_type(None) == "mobile"
    assert len(separator("desktop")) == 60
    assert len(separator("unknown")) == 20


def test_layout_places_separator_between_content_and_menu():
    message = layout("Body", "1️⃣ Menu", "mobile")

    assert message == f"Body\n\n{'─' * 20}\n\n1️⃣ Menu"


def test_truncate():
    assert truncate("short") == "short"
    assert truncate("word " * 40, 20).endswith("...")
    assert len(truncate("word " * 40, 20)) <= 20
