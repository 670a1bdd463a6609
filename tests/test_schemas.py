import pytest
from pydantic import ValidationError

from schemas import (
    CONVERSATION_TAIL,
    DetectedQuestion,
    HomeworkContext,
    ImagePayload,
    ReplyEnvelope,
    Subscriber,
    TopicPracticeContext,
    WelcomeContext,
    context_for_menu,
)


def test_enter_resets_context_for_menu():
    subscriber = Subscriber(id="wa-1")
    subscriber.enter("topic_practice")
    subscriber.context.subject = "History"

    subscriber.enter("topic_practice")

    assert subscriber.current_menu == "topic_practice"
    assert isinstance(subscriber.context, TopicPracticeContext)
    assert subscriber.context.subject is None


def test_conversation_history_keeps_last_ten_turns():
    subscriber = Subscriber(id="wa-1")
    for index in range(14):
        subscriber.append_turn("user", f"message {index}")

    assert len(subscriber.conversation_history) == CONVERSATION_TAIL
    assert subscriber.conversation_history[0].text == "message 4"


def test_row_round_trip_keeps_flow_context():
    subscriber = Subscriber(id="wa-1")
    subscriber.enter("homework")
    subscriber.context.state = "questions_detected"
    subscriber.context.questions = [DetectedQuestion(number=1, text="Solve 2x+3=9", confidence=0.9)]
    subscriber.preferences.last_subject = "Mathematics"

    restored = Subscriber.from_row(subscriber.to_row())

    assert restored.current_menu == "homework"
    assert isinstance(restored.context, HomeworkContext)
    assert restored.context.questions[0].text == "Solve 2x+3=9"
    assert restored.preferences.last_subject == "Mathematics"


def test_unreadable_context_resets_to_welcome():
    row = {
        "id": "wa-1",
        "current_menu": "topic_practice",
        "context": {"flow": "topic_practice", "progression": 9},
        "preferences": {"last_subject": "Geography"},
    }

    restored = Subscriber.from_row(row)

    assert restored.current_menu == "welcome"
    assert isinstance(restored.context, WelcomeContext)
    assert restored.preferences.last_subject == "Geography"


def test_progression_is_bounded():
    ctx = TopicPracticeContext()
    with pytest.raises(ValidationError):
        ctx.progression = 4


def test_detected_question_confidence_bounds():
    with pytest.raises(ValidationError):
        DetectedQuestion(number=1, text="Solve", confidence=1.5)
    with pytest.raises(ValidationError):
        DetectedQuestion(number=0, text="Solve", confidence=0.5)


def test_homework_context_caps_questions():
    questions = [DetectedQuestion(number=i, text=f"Q{i}", confidence=0.5) for i in range(1, 12)]
    with pytest.raises(ValidationError):
        HomeworkContext(questions=questions)


def test_envelope_dump_leaves_out_image():
    image = ImagePayload(data="PHN2Zy8+", width=10, height=10, alt="equation")
    envelope = ReplyEnvelope(message="hi", echo="hi", user="wa-1", image=image)

    dumped = envelope.model_dump(mode="json")

    assert "image" not in dumped
    assert dumped["status"] == "success"
    assert envelope.image is image


def test_context_for_unknown_menu_is_welcome():
    assert isinstance(context_for_menu("nope"), WelcomeContext)


def test_homework_context_state_invariants():
    question = DetectedQuestion(number=1, text="Solve 2x+3=9", confidence=0.9)

    with pytest.raises(ValidationError):
        HomeworkContext(state="questions_detected")
    with pytest.raises(ValidationError):
        HomeworkContext(state="awaiting_image", questions=[question], selected_question=question)

    ctx = HomeworkContext(state="providing_hint", questions=[question], selected_question=question)
    assert ctx.selected_question.number == 1


def test_restored_homework_row_with_stray_selection_resets():
    row = {
        "id": "wa-1",
        "current_menu": "homework",
        "context": {
            "flow": "homework",
            "state": "awaiting_image",
            "selected_question": {"number": 1, "text": "Solve", "confidence": 0.5},
        },
    }

    restored = Subscriber.from_row(row)

    assert restored.current_menu == "welcome"
