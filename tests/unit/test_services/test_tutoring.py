import json
from unittest.mock import AsyncMock, patch

import pytest

from prereq_tutor.errors import InvalidStateError, LLMTimeoutError, UpstreamError
from prereq_tutor.models.schemas import (
    BranchReason,
    ConversationMessage,
    MessageRole,
    SkillSummary,
    ViolationType,
)
from prereq_tutor.orchestrators.tutoring.prompts import (
    DIAGNOSTIC_FLOW_PROMPT,
    SOCRATIC_SYSTEM_PROMPT,
)
from prereq_tutor.orchestrators.tutoring.service import (
    analyze_branching,
    build_messages,
    handle_chat_turn,
)
from prereq_tutor.services.response_validation.prompts import (
    FALLBACK_CONTEXT_SUFFIX,
    FALLBACK_RESPONSES,
    STRICTER_PROMPT,
)
from prereq_tutor.services.selection import RoundRobinSelector
from prereq_tutor.services.stuck_detection.prompts import HINT_LEVEL_3_PROMPT

CHAT_COMPLETION = "prereq_tutor.orchestrators.tutoring.service.chat_completion"

LEAKED = json.dumps({"tutorResponse": "Great job, x = 5.", "needsPractice": False})


def _reply(text, skill_id=None, **extra):
    payload = {"tutorResponse": text, "needsPractice": skill_id is not None}
    if skill_id:
        payload["practiceSkillId"] = skill_id
    payload.update(extra)
    return json.dumps(payload)


# === Chat turns ===


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_chat_turn_with_recommendation(mock_chat, active_manager, resolver):
    mock_chat.return_value = _reply(
        "What could you undo first on the left side?",
        "one_step_equations",
        practiceReason="Unsure how to isolate x",
    )

    result = await handle_chat_turn(active_manager, resolver, "help")

    assert result.tutor_response == "What could you undo first on the left side?"
    assert result.stuck_level == 2
    assert not result.regenerated
    assert not result.used_fallback
    assert result.violation_type is None
    assert result.recommendation.skill_id == "one_step_equations"
    assert result.recommendation.skill_name == "One-Step Equations"
    assert result.recommendation.reason == "Unsure how to isolate x"

    messages = mock_chat.call_args.args[0]
    system = messages[0]["content"]
    assert system.startswith(SOCRATIC_SYSTEM_PROMPT)
    assert DIAGNOSTIC_FLOW_PROMPT in system
    assert "one_step_equations: One-Step Equations" in system
    assert "Solve 2x + 3 = 11" in system
    assert messages[1:] == [
        {"role": "assistant", "content": "Let's work on this together!"},
        {"role": "user", "content": "help"},
    ]
    assert mock_chat.call_args.kwargs["json_output"] is True

    log = active_manager.session.messages
    assert [(m.role, m.content) for m in log[-2:]] == [
        (MessageRole.USER, "help"),
        (MessageRole.ASSISTANT, "What could you undo first on the left side?"),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_plain_text_reply(mock_chat, active_manager, resolver):
    mock_chat.return_value = "What do you notice about the 3?"

    result = await handle_chat_turn(active_manager, resolver, "ok")

    assert result.tutor_response == "What do you notice about the 3?"
    assert result.recommendation is None


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_leaked_reply_is_regenerated(mock_chat, active_manager, resolver):
    mock_chat.side_effect = [LEAKED, _reply("Which operation undoes multiplying by 2?")]

    result = await handle_chat_turn(active_manager, resolver, "what is x")

    assert result.regenerated
    assert not result.used_fallback
    assert result.violation_type == ViolationType.NUMERIC_EQUATION
    assert result.tutor_response == "Which operation undoes multiplying by 2?"

    strict_call = mock_chat.call_args_list[1]
    assert strict_call.kwargs["purpose"] == "regenerate"
    strict_messages = strict_call.args[0]
    assert strict_messages[0]["content"].startswith(STRICTER_PROMPT)
    assert "SPECIFIC VIOLATION DETECTED: numeric_equation" in strict_messages[0]["content"]
    assert strict_messages[-1] == {"role": "user", "content": "what is x"}
    assert active_manager.session.messages[-1].content == result.tutor_response


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_fallback_when_regeneration_still_leaks(mock_chat, active_manager, resolver):
    mock_chat.side_effect = [LEAKED, _reply("The answer is 4", "one_step_equations")]

    result = await handle_chat_turn(
        active_manager, resolver, "just tell me", selector=RoundRobinSelector()
    )

    assert result.regenerated
    assert result.used_fallback
    assert result.tutor_response == FALLBACK_RESPONSES[0] + FALLBACK_CONTEXT_SUFFIX
    assert result.recommendation is None
    assert active_manager.session.messages[-1].content == result.tutor_response


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_fallback_when_regeneration_fails(mock_chat, active_manager, resolver):
    mock_chat.side_effect = [LEAKED, UpstreamError("model offline")]

    result = await handle_chat_turn(
        active_manager, resolver, "just tell me", selector=RoundRobinSelector()
    )

    assert result.used_fallback
    assert result.tutor_response == FALLBACK_RESPONSES[0] + FALLBACK_CONTEXT_SUFFIX


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_first_model_failure_propagates(mock_chat, active_manager, resolver):
    mock_chat.side_effect = LLMTimeoutError("Request timed out. Please try again.")

    with pytest.raises(LLMTimeoutError):
        await handle_chat_turn(active_manager, resolver, "hello?")

    # The learner's message is kept
    assert active_manager.session.messages[-1].content == "hello?"
    assert active_manager.session.messages[-1].role == MessageRole.USER


@pytest.mark.unit
@pytest.mark.asyncio
async def test_chat_turn_needs_session(manager, resolver):
    with pytest.raises(InvalidStateError):
        await handle_chat_turn(manager, resolver, "hello")


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_no_recommendation_for_practiced_or_unknown_skill(mock_chat, active_manager, resolver):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")

    mock_chat.return_value = _reply("What is being added to x?", "one_step_equations")
    result = await handle_chat_turn(active_manager, resolver, "ok")
    assert result.recommendation is None

    mock_chat.return_value = _reply("What is being added to x?", "calculus")
    result = await handle_chat_turn(active_manager, resolver, "ok")
    assert result.recommendation is None


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_no_recommendation_at_depth_limit(mock_chat, active_manager, resolver):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    mock_chat.return_value = _reply("What does adding 4 do?", "basic_arithmetic")

    result = await handle_chat_turn(active_manager, resolver, "ok")

    assert result.recommendation is None
    assert "basic_arithmetic: Basic Arithmetic" in mock_chat.call_args.args[0][0]["content"]


# === Prompt assembly ===


@pytest.mark.unit
def test_build_messages():
    history = [
        ConversationMessage(role=MessageRole.SYSTEM, content="internal note"),
        ConversationMessage(role=MessageRole.ASSISTANT, content="What do you see?"),
        ConversationMessage(role=MessageRole.USER, content="??"),
    ]
    messages = build_messages(
        "BASE",
        history,
        "still lost",
        stuck_level=3,
        problem_context="Solve x + 4 = 9",
        available_skills=[SkillSummary(id="basic_arithmetic", name="Basic Arithmetic")],
        recently_mastered=["Inverse Operations", "Basic Arithmetic"],
    )

    system = messages[0]["content"]
    assert messages[0]["role"] == "system"
    assert system.startswith("BASE" + HINT_LEVEL_3_PROMPT + DIAGNOSTIC_FLOW_PROMPT)
    assert system.index("basic_arithmetic: Basic Arithmetic") < system.index("Solve x + 4 = 9")
    assert "mastered: Inverse Operations, Basic Arithmetic" in system
    assert "Great job with Inverse Operations!" in system
    assert messages[1:] == [
        {"role": "assistant", "content": "What do you see?"},
        {"role": "user", "content": "??"},
        {"role": "user", "content": "still lost"},
    ]


@pytest.mark.unit
def test_build_messages_minimal():
    messages = build_messages("BASE", [], "hi")
    assert messages == [
        {"role": "system", "content": "BASE"},
        {"role": "user", "content": "hi"},
    ]


# === Branching analysis ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analyze_branching_after_repeated_mistakes(active_manager, resolver, tracker):
    recommendation = await analyze_branching(
        active_manager, resolver, tracker, "is it 6?", incorrect_attempts=2
    )

    assert recommendation.decision.should_branch
    assert recommendation.decision.reason == BranchReason.CONSISTENT_STRUGGLE
    assert recommendation.selection.skill_id == "one_step_equations"
    assert "one-step equations" in recommendation.message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analyze_branching_uses_foundations_one_level_down(active_manager, resolver, tracker):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")

    recommendation = await analyze_branching(active_manager, resolver, tracker, "I'm stuck")

    assert recommendation.decision.reason == BranchReason.EXPLICIT_CONFUSION
    assert recommendation.selection.skill_id == "basic_arithmetic"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analyze_branching_at_depth_limit(active_manager, resolver, tracker):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")

    recommendation = await analyze_branching(active_manager, resolver, tracker, "no idea")

    assert recommendation.offer_alternative_help
    assert recommendation.selection is None
    assert "inverse operations" in recommendation.message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_analyze_branching_no_signal(active_manager, resolver, tracker):
    recommendation = await analyze_branching(
        active_manager, resolver, tracker, "I think I subtract 3 first"
    )

    assert not recommendation.decision.should_branch
    assert recommendation.selection is None
    assert recommendation.message is None
