"""Pydantic models for subscriber state, flow contexts and reply envelopes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

__all__ = [
    "CONVERSATION_TAIL",
    "MenuName",
    "ReplyStatus",
    "HintType",
    "DifficultyKey",
    "DeviceType",
    "ConversationTurn",
    "Preferences",
    "PracticeQuestion",
    "DetectedQuestion",
    "WelcomeContext",
    "TopicPracticeContext",
    "HomeworkContext",
    "MemoryHacksContext",
    "FlowContext",
    "Subscriber",
    "ImageRef",
    "InboundEvent",
    "ImagePayload",
    "ReplyEnvelope",
    "context_for_menu",
]

CONVERSATION_TAIL = 10

MenuName = Literal["welcome", "topic_practice", "homework", "memory_hacks"]
ReplyStatus = Literal["success", "error", "invalid_selection", "no_questions"]
HintType = Literal["none", "instant", "dynamic", "ai"]
DifficultyKey = Literal["simplified", "mixed", "challenging", "expert"]
QuestionSource = Literal["llm", "fallback", "offline"]
DeviceType = Literal["mobile", "tablet", "desktop"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)


class Preferences(BaseModel):
    device_type: DeviceType | None = Field(
        default=None,
        description="Device class detected from the first inbound user-agent.",
    )
    last_subject: str | None = None
    last_grade: int | None = None


class PracticeQuestion(BaseModel):
    """A generated practice question; ``solution`` stays server-side."""

    text: str
    solution: str = ""
    source: QuestionSource = "fallback"
    content_id: str
    classification: str = "general_academic"
    complexity: Dict[str, bool] = Field(
        default_factory=dict,
        description="Flags such as has_latex, has_graph, has_simple_unicode set by the classifier.",
    )


class DetectedQuestion(BaseModel):
    number: int = Field(ge=1)
    text: str
    type: str = "general_academic"
    confidence: float = Field(ge=0.0, le=1.0)
    display_text: str = ""
    numbers: Dict[str, float] = Field(default_factory=dict)


class WelcomeContext(BaseModel):
    flow: Literal["welcome"] = "welcome"


class TopicPracticeContext(BaseModel):
    flow: Literal["topic_practice"] = "topic_practice"
    state: Literal["subject_grade", "topic_select", "topic_free", "subtopic_select", "loop"] = "subject_grade"
    subject: str | None = None
    grade: int | None = None
    topic: str | None = None
    sub_topic: str | None = None
    progression: int = Field(default=0, ge=0, le=3)
    q_index: int = Field(default=0, ge=0)
    current_question: PracticeQuestion | None = None
    last_help_used: bool = False
    topics: List[str] = Field(default_factory=list, description="Topic list of the current prompt.")
    subtopics: List[str] = Field(default_factory=list, description="Sub-topic list of the current prompt.")

    model_config = {
        "validate_assignment": True,
    }


class HomeworkContext(BaseModel):
    flow: Literal["homework"] = "homework"
    state: Literal["awaiting_image", "questions_detected", "providing_hint"] = "awaiting_image"
    extracted_text: str | None = None
    questions: List[DetectedQuestion] = Field(default_factory=list, max_length=10)
    selected_question: DetectedQuestion | None = None
    hint_count: int = Field(default=0, ge=0)
    last_hint_type: HintType = "none"
    hint_history: List[str] = Field(
        default_factory=list,
        description="Hints already sent for the selected question, oldest first.",
    )
    image_hash: str | None = None

    @model_validator(mode="after")
    def _check_state(self) -> "HomeworkContext":
        if self.state == "questions_detected" and not self.questions:
            raise ValueError("questions_detected requires at least one detected question")
        if self.selected_question is not None and self.state != "providing_hint":
            raise ValueError("selected_question is only set while providing hints")
        return self


class MemoryHacksContext(BaseModel):
    flow: Literal["memory_hacks"] = "memory_hacks"
    state: Literal["subject_select", "browsing"] = "subject_select"
    subject: str | None = None
    topic_index: int = Field(default=0, ge=0)


FlowContext = Annotated[
    Union[WelcomeContext, TopicPracticeContext, HomeworkContext, MemoryHacksContext],
    Field(discriminator="flow"),
]

_CONTEXT_BY_MENU = {
    "welcome": WelcomeContext,
    "topic_practice": TopicPracticeContext,
    "homework": HomeworkContext,
    "memory_hacks": MemoryHacksContext,
}


def context_for_menu(menu: str) -> BaseModel:
    """Return a fresh initial context for ``menu``."""

    return _CONTEXT_BY_MENU.get(menu, WelcomeContext)()


class Subscriber(BaseModel):
    id: str
    current_menu: MenuName = "welcome"
    context: FlowContext = Field(default_factory=WelcomeContext)
    preferences: Preferences = Field(default_factory=Preferences)
    conversation_history: List[ConversationTurn] = Field(default_factory=list)
    last_active: datetime = Field(default_factory=_utcnow)

    def touch(self) -> None:
        self.last_active = _utcnow()

    def enter(self, menu: MenuName) -> None:
        """Switch to ``menu`` with that flow's initial context."""

        self.current_menu = menu
        self.context = context_for_menu(menu)

    def append_turn(self, role: Literal["user", "assistant"], text: str) -> None:
        self.conversation_history.append(ConversationTurn(role=role, text=text))
        if len(self.conversation_history) > CONVERSATION_TAIL:
            del self.conversation_history[:-CONVERSATION_TAIL]

    def to_row(self) -> Dict[str, Any]:
        """Snapshot in the column layout of the ``subscribers`` table."""

        data = self.model_dump(mode="json")
        return {
            "id": self.id,
            "current_menu": data["current_menu"],
            "context": data["context"],
            "preferences": data["preferences"],
            "conversation_history": data["conversation_history"][-CONVERSATION_TAIL:],
            "last_active": data["last_active"],
            "updated_at": _utcnow().isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Subscriber":
        """Materialise a stored row; an unreadable flow context resets to welcome."""

        payload = {
            "id": row["id"],
            "current_menu": row.get("current_menu") or "welcome",
            "context": row.get("context") or {"flow": "welcome"},
            "preferences": row.get("preferences") or {},
            "conversation_history": row.get("conversation_history") or [],
        }
        if row.get("last_active"):
            payload["last_active"] = row["last_active"]
        try:
            return cls.model_validate(payload)
        except ValidationError:
            payload["current_menu"] = "welcome"
            payload["context"] = {"flow": "welcome"}
            return cls.model_validate(payload)


class ImageRef(BaseModel):
    """Image found in an inbound event: inline base64 or a URL to download."""

    kind: Literal["direct", "url"]
    data: str


class InboundEvent(BaseModel):
    subscriber_id: str = "default_user"
    text: str = ""
    image: ImageRef | None = None
    device_hint: str | None = None
    last_menu: str | None = Field(
        default=None,
        description="Channel-side persisted menu name, used to reconcile state after restarts.",
    )


class ImagePayload(BaseModel):
    data: str = Field(description="Base64 encoded image bytes.")
    format: Literal["svg", "png"] = "svg"
    width: int
    height: int
    alt: str
    kind: Literal["formula", "graph", "table"] = "formula"
    source: Dict[str, Any] = Field(
        default_factory=dict,
        exclude=True,
        description="Drawing primitives kept for rasterisation.",
    )


class ReplyEnvelope(BaseModel):
    message: str
    echo: str
    status: ReplyStatus = "success"
    timestamp: datetime = Field(default_factory=_utcnow)
    user: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    image: ImagePayload | None = Field(default=None, exclude=True)
