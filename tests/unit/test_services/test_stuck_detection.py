import pytest

from prereq_tutor.models.schemas import ConversationMessage, MessageRole
from prereq_tutor.services.stuck_detection.prompts import HINT_LEVEL_2_PROMPT, HINT_LEVEL_3_PROMPT
from prereq_tutor.services.stuck_detection.service import (
    analyze_stuck_level,
    are_similar_messages,
    describe_stuck_level,
    get_hint_level_prompt,
)


@pytest.mark.unit
def test_no_learner_messages_is_level_zero():
    assert analyze_stuck_level([]) == 0
    assert analyze_stuck_level(
        [ConversationMessage(role=MessageRole.ASSISTANT, content="What do you notice?")]
    ) == 0


@pytest.mark.unit
def test_stuck_levels(user_messages):
    """Learner histories and the stuck level they produce"""
    cases = [
        (("ok",), 1),
        (("help",), 2),
        (("idk",), 2),
        (("?",), 3),
        (("I don't know", "I don't know"), 3),
        (("I'm stuck", "maybe"), 1),
    ]
    for texts, expected in cases:
        assert analyze_stuck_level(user_messages(*texts)) == expected, f"Failed for: {texts}"


@pytest.mark.unit
def test_short_replies_reach_max_level(user_messages):
    assert analyze_stuck_level(user_messages("ok", "no", "hm", "yes", "k")) == 3
    assert analyze_stuck_level(user_messages("idk", "idk", "idk")) == 3


@pytest.mark.unit
def test_clear_progress_resets_level(user_messages):
    messages = user_messages(
        "idk",
        "help",
        "I think I should subtract 3 from both sides because it undoes the addition",
    )
    assert analyze_stuck_level(messages) == 0


@pytest.mark.unit
def test_only_recent_window_counts(user_messages):
    stale = user_messages("??")
    later = [
        ConversationMessage(role=MessageRole.ASSISTANT, content=f"Hint {i}") for i in range(5)
    ]
    assert analyze_stuck_level(stale + later) == 0


@pytest.mark.unit
def test_mixed_conversation(conversation):
    assert analyze_stuck_level(conversation) == 3


@pytest.mark.unit
def test_analysis_failure_returns_zero():
    class Broken:
        role = MessageRole.USER
        content = None

    assert analyze_stuck_level([Broken()]) == 0


@pytest.mark.unit
def test_are_similar_messages():
    assert are_similar_messages("solve for x", "Solve for X")
    assert are_similar_messages("", "")
    assert not are_similar_messages("a b c d e", "a b c d f")
    assert not are_similar_messages("idk", "help")


@pytest.mark.unit
def test_hint_level_prompt():
    assert get_hint_level_prompt(0) == ""
    assert get_hint_level_prompt(1) == ""
    assert get_hint_level_prompt(2) == HINT_LEVEL_2_PROMPT
    assert get_hint_level_prompt(3) == HINT_LEVEL_3_PROMPT


@pytest.mark.unit
def test_describe_stuck_level():
    assert describe_stuck_level(0).startswith("Not stuck")
    assert describe_stuck_level(2).startswith("Stuck")
    assert "level 3" in describe_stuck_level(3)
