import json
from unittest.mock import AsyncMock, patch

import pytest

from prereq_tutor.errors import UpstreamError
from prereq_tutor.models.schemas import PracticeProblem, Skill
from prereq_tutor.orchestrators.practice.service import (
    check_answer,
    generate_practice_problems,
)

CHAT_COMPLETION = "prereq_tutor.orchestrators.practice.service.chat_completion"

SKILL = Skill(
    id="inverse_operations",
    name="Inverse Operations",
    description="Undoing addition with subtraction and multiplication with division",
)


def _problems(n):
    return [
        {"text": f"Solve x + {i} = {i + 5}", "hint": f"Undo the +{i}", "solution": "x = 5"}
        for i in range(1, n + 1)
    ]


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_generate_practice_problems(mock_chat):
    mock_chat.return_value = json.dumps({"problems": _problems(5)})

    problems = await generate_practice_problems(SKILL, count=4, grade_level="Grade 8")

    assert len(problems) == 4
    assert all(isinstance(p, PracticeProblem) for p in problems)
    assert problems[0].text == "Solve x + 1 = 6"
    assert problems[0].hint == "Undo the +1"

    messages = mock_chat.call_args.args[0]
    assert messages[0]["role"] == "system"
    assert "Inverse Operations" in messages[1]["content"]
    assert "Grade 8" in messages[1]["content"]
    assert mock_chat.call_args.kwargs["purpose"] == "practice"
    assert mock_chat.call_args.kwargs["json_output"] is True


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_problem_count_is_clamped(mock_chat):
    mock_chat.return_value = json.dumps({"problems": _problems(12)})

    assert len(await generate_practice_problems(SKILL, count=1)) == 3
    assert len(await generate_practice_problems(SKILL, count=50)) == 10
    assert len(await generate_practice_problems(SKILL)) == 5


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_fenced_list_payload(mock_chat):
    mock_chat.return_value = "```json\n" + json.dumps(_problems(2)) + "\n```"

    problems = await generate_practice_problems(SKILL, count=5)

    # Fewer than requested is accepted
    assert [p.text for p in problems] == ["Solve x + 1 = 6", "Solve x + 2 = 7"]


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_malformed_practice_output(mock_chat):
    for output in (
        "Here are some problems!",
        json.dumps({"problems": "none"}),
        json.dumps({"problems": []}),
        json.dumps([{"hint": "missing the problem text"}]),
    ):
        mock_chat.return_value = output
        with pytest.raises(UpstreamError):
            await generate_practice_problems(SKILL)


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_check_answer(mock_chat):
    mock_chat.return_value = json.dumps({"correct": True, "feedback": "Nicely done!"})
    problem = PracticeProblem(text="Solve x + 4 = 9", solution="x = 5")

    result = await check_answer(problem, "5")

    assert result.correct is True
    assert result.feedback == "Nicely done!"
    prompt = mock_chat.call_args.args[0][1]["content"]
    assert "Solve x + 4 = 9" in prompt
    assert "x = 5" in prompt
    assert mock_chat.call_args.kwargs["purpose"] == "check"


@pytest.mark.unit
@pytest.mark.asyncio
@patch(CHAT_COMPLETION, new_callable=AsyncMock)
async def test_check_answer_defaults_and_failures(mock_chat):
    problem = PracticeProblem(text="Solve 3x = 12", solution="x = 4")

    mock_chat.return_value = json.dumps({"feedback": None})
    result = await check_answer(problem, "3")
    assert result.correct is False
    assert result.feedback == ""

    for output in ("looks right to me", "[true]"):
        mock_chat.return_value = output
        with pytest.raises(UpstreamError):
            await check_answer(problem, "4")
