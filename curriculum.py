"""Curriculum catalog (CAPS Grades 8-11) loaded from ``data/curriculum.json``."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

DEFAULT_SUBJECT = "Mathematics"
DEFAULT_GRADE = 10
MIN_GRADE = 8
MAX_GRADE = 11
MAX_SUBTOPICS = 8

_GRADE_PATTERN = re.compile(r"\b(gr(?:ade)?\s*)?(\d{1,2})\b", re.IGNORECASE)
_SEPARATORS = re.compile(r"[,|;:\-]")


class CurriculumConfigError(ValueError):
    """Raised when ``curriculum.json`` contains invalid data."""


@dataclass(frozen=True)
class SubjectGrade:
    """Result of parsing a learner's "subject + grade" reply."""

    subject: str
    grade: int
    subject_recognised: bool
    grade_given: bool


def clamp_grade(grade: int) -> int:
    return max(MIN_GRADE, min(MAX_GRADE, int(grade)))


class CurriculumCatalog:
    """Read-only subject -> grade -> topic -> sub-topics lookup."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "data" / "curriculum.json"
        self._subjects: Dict[str, Dict[int, Dict[str, Tuple[str, ...]]]] = {}
        self._aliases: List[Tuple[str, str]] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the catalog from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Curriculum file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict) or not isinstance(raw.get("subjects"), dict):
            raise CurriculumConfigError("Curriculum file must contain a 'subjects' object")

        subjects: Dict[str, Dict[int, Dict[str, Tuple[str, ...]]]] = {}
        for subject, grades in raw["subjects"].items():
            if not isinstance(grades, dict) or not grades:
                raise CurriculumConfigError(f"Subject {subject} must map grades to topics")
            by_grade: Dict[int, Dict[str, Tuple[str, ...]]] = {}
            for grade_key, topics in grades.items():
                try:
                    grade = int(grade_key)
                except (TypeError, ValueError) as exc:
                    raise CurriculumConfigError(
                        f"Subject {subject} has non-numeric grade {grade_key!r}"
                    ) from exc
                if not MIN_GRADE <= grade <= MAX_GRADE:
                    raise CurriculumConfigError(
                        f"Subject {subject} grade {grade} outside {MIN_GRADE}-{MAX_GRADE}"
                    )
                if not isinstance(topics, dict) or not topics:
                    raise CurriculumConfigError(f"{subject} grade {grade} has no topics")
                entries: Dict[str, Tuple[str, ...]] = {}
                for topic, subtopics in topics.items():
                    if not isinstance(subtopics, list):
                        raise CurriculumConfigError(f"{subject}/{grade}/{topic} sub-topics must be a list")
                    if len(subtopics) > MAX_SUBTOPICS:
                        raise CurriculumConfigError(
                            f"{subject}/{grade}/{topic} lists more than {MAX_SUBTOPICS} sub-topics"
                        )
                    entries[str(topic)] = tuple(str(s) for s in subtopics)
                by_grade[grade] = entries
            subjects[str(subject)] = by_grade

        if DEFAULT_SUBJECT not in subjects:
            raise CurriculumConfigError(f"Curriculum must define {DEFAULT_SUBJECT}")

        aliases: List[Tuple[str, str]] = []
        for subject, names in (raw.get("aliases") or {}).items():
            if subject not in subjects:
                raise CurriculumConfigError(f"Alias target {subject} is not a known subject")
            for name in names:
                aliases.append((str(name).lower(), subject))
        for subject in subjects:
            aliases.append((subject.lower(), subject))
        # Longest alias first so "maths lit" wins over "math".
        aliases.sort(key=lambda pair: len(pair[0]), reverse=True)

        self._subjects = subjects
        self._aliases = aliases

    # ------------------------------------------------------------------
    def subjects(self) -> Sequence[str]:
        return tuple(self._subjects)

    def grades(self, subject: str) -> Sequence[int]:
        return tuple(sorted(self._subjects.get(subject, {})))

    def topics(self, subject: str, grade: int) -> List[str]:
        """Return topics for ``(subject, grade)`` in display order; empty on a miss."""

        return list(self._subjects.get(subject, {}).get(int(grade), {}))

    def subtopics(self, subject: str, grade: int, topic: str) -> List[str]:
        topics = self._subjects.get(subject, {}).get(int(grade), {})
        if topic in topics:
            return list(topics[topic])
        lowered = topic.strip().lower()
        for name, subs in topics.items():
            if name.lower() == lowered:
                return list(subs)
        return []

    def match_topic(self, subject: str, grade: int, text: str) -> Optional[str]:
        """Resolve free text to a catalog topic by exact or partial match."""

        needle = (text or "").strip().lower()
        if not needle:
            return None
        topics = self.topics(subject, grade)
        for topic in topics:
            if topic.lower() == needle:
                return topic
        for topic in topics:
            if needle in topic.lower() or topic.lower() in needle:
                return topic
        return None

    def resolve_subject(self, text: str) -> Optional[str]:
        """Map learner input such as "maths" or "chemistry" to a subject name."""

        lowered = (text or "").lower()
        if not lowered.strip():
            return None
        for alias, subject in self._aliases:
            if re.search(rf"(?<![a-z]){re.escape(alias)}(?![a-z])", lowered):
                return subject
        return None

    def nearest_grade(self, subject: str, grade: int) -> int:
        """Return ``grade`` if offered for ``subject``, else the closest offered grade."""

        available = self.grades(subject)
        if not available or grade in available:
            return grade
        return min(available, key=lambda g: (abs(g - grade), -g))

    def parse_subject_grade(self, text: str) -> SubjectGrade:
        """Parse replies like "Mathematics 10" or "physics, gr 11".

        Grades are clamped to 8-11 and default to 10; unknown subjects fall back
        to Mathematics.
        """

        raw = (text or "").strip()
        if not raw:
            return SubjectGrade(DEFAULT_SUBJECT, DEFAULT_GRADE, False, False)

        parts = [p.strip() for p in _SEPARATORS.split(raw) if p.strip()]
        subject = self.resolve_subject(parts[0] if parts else raw) or self.resolve_subject(raw)

        match = _GRADE_PATTERN.search(raw)
        grade = clamp_grade(int(match.group(2))) if match else DEFAULT_GRADE
        return SubjectGrade(
            subject=subject or DEFAULT_SUBJECT,
            grade=grade,
            subject_recognised=subject is not None,
            grade_given=match is not None,
        )

    def __iter__(self) -> Iterable[str]:
        return iter(self._subjects)


CATALOG = CurriculumCatalog()
"""Singleton catalog used throughout the application."""
