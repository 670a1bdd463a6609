import json

import pytest

from curriculum import CATALOG, CurriculumCatalog, CurriculumConfigError


def test_parse_subject_and_grade():
    parsed = CATALOG.parse_subject_grade("Mathematics 10")

    assert parsed.subject == "Mathematics"
    assert parsed.grade == 10
    assert parsed.subject_recognised
    assert parsed.grade_given


@pytest.mark.parametrize(
    "text, subject, grade",
    [
        ("maths lit gr 11", "Mathematical Literacy", 11),
        ("physics, 11", "Physical Sciences", 11),
        ("Biology grade 9", "Life Sciences", 9),
        ("geo 8", "Geography", 8),
    ],
)
def test_aliases_resolve_to_catalog_subjects(text, subject, grade):
    parsed = CATALOG.parse_subject_grade(text)

    assert parsed.subject == subject
    assert parsed.grade == grade


def test_grade_is_clamped_and_defaulted():
    assert CATALOG.parse_subject_grade("Mathematics 12").grade == 11
    assert CATALOG.parse_subject_grade("Mathematics 5").grade == 8
    parsed = CATALOG.parse_subject_grade("History")
    assert parsed.grade == 10
    assert not parsed.grade_given


def test_unknown_subject_falls_back_to_mathematics():
    parsed = CATALOG.parse_subject_grade("Astrology 10")

    assert parsed.subject == "Mathematics"
    assert not parsed.subject_recognised
    assert CATALOG.parse_subject_grade("").subject == "Mathematics"


def test_topics_and_subtopics_for_grade_10_maths():
    topics = CATALOG.topics("Mathematics", 10)

    assert topics[0] == "Algebra"
    assert len(topics) >= 4
    assert "Quadratic equations (solve)" in CATALOG.subtopics("Mathematics", 10, "Algebra")
    assert CATALOG.subtopics("Mathematics", 10, "algebra") == CATALOG.subtopics("Mathematics", 10, "Algebra")
    assert CATALOG.topics("Mathematics", 12) == []


def test_nearest_grade_uses_offered_grades():
    # Physical Sciences is only offered for grades 10 and 11
    assert CATALOG.nearest_grade("Physical Sciences", 8) == 10
    assert CATALOG.nearest_grade("Mathematics", 9) == 9


def test_match_topic_partial_text():
    assert CATALOG.match_topic("Mathematics", 10, "trig") == "Trigonometry"
    assert CATALOG.match_topic("Mathematics", 10, "astronomy") is None


def test_invalid_catalog_is_rejected(tmp_path):
    path = tmp_path / "curriculum.json"
    path.write_text(json.dumps({"subjects": {"Mathematics": {"13": {"Algebra": []}}}}), encoding="utf-8")

    with pytest.raises(CurriculumConfigError):
        CurriculumCatalog(path)


def test_too_many_subtopics_rejected(tmp_path):
    path = tmp_path / "curriculum.json"
    subtopics = [f"Part {i}" for i in range(9)]
    path.write_text(json.dumps({"subjects": {"Mathematics": {"10": {"Algebra": subtopics}}}}), encoding="utf-8")

    with pytest.raises(CurriculumConfigError):
        CurriculumCatalog(path)
