import json
import time
from typing import Optional

from pydantic import ValidationError

from prereq_tutor.clients.llm import chat_completion, parse_json_payload
from prereq_tutor.config import Config
from prereq_tutor.errors import UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import AnswerCheck, PracticeProblem, Skill
from prereq_tutor.orchestrators.practice.prompts import (
    ANSWER_CHECK_PROMPT,
    ANSWER_CHECK_SYSTEM_PROMPT,
    PROBLEM_GENERATION_PROMPT,
    PROBLEM_GENERATOR_SYSTEM_PROMPT,
)

logger = StructuredLogger("practice")


def _bounded_count(count: Optional[int]) -> int:
    requested = count or Config.PRACTICE.PROBLEM_COUNT
    return max(Config.PRACTICE.MIN_PROBLEMS, min(Config.PRACTICE.MAX_PROBLEMS, requested))


async def generate_practice_problems(
    skill: Skill,
    count: Optional[int] = None,
    grade_level: Optional[str] = None,
    request_id: Optional[str] = None,
) -> list[PracticeProblem]:
    """
    Generate a practice set for a prerequisite skill.

    Raises:
        UpstreamError: The model failed or returned no usable problems
        LLMTimeoutError: The model did not answer in time
    """
    start_time = time.time()
    count = _bounded_count(count)
    prompt = PROBLEM_GENERATION_PROMPT.format(
        skill_name=skill.name,
        skill_description=skill.description or skill.name,
        grade_level=grade_level or Config.PRACTICE.DEFAULT_GRADE_LEVEL,
        count=count,
    )

    logger.info(
        "  → Generating practice problems",
        context={"skill_id": skill.id, "count": count},
        request_id=request_id,
    )
    text = await chat_completion(
        [
            {"role": "system", "content": PROBLEM_GENERATOR_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        purpose="practice",
        model=Config.PRACTICE.MODEL_NAME,
        temperature=Config.PRACTICE.TEMPERATURE,
        timeout=Config.PRACTICE.TIMEOUT,
        json_output=True,
        request_id=request_id,
    )

    try:
        payload = parse_json_payload(text)
        raw_problems = payload.get("problems") if isinstance(payload, dict) else payload
        if not isinstance(raw_problems, list):
            raise UpstreamError("Generated practice set is not a list")
        problems = [PracticeProblem.model_validate(p) for p in raw_problems]
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(
            "Malformed practice problems",
            context={"skill_id": skill.id, "error": str(e)[:200]},
            request_id=request_id,
        )
        raise UpstreamError("Could not generate practice problems") from e

    if not problems:
        raise UpstreamError("Could not generate practice problems")
    if len(problems) < count:
        logger.warning(
            "Fewer practice problems than requested",
            context={"requested": count, "received": len(problems)},
            request_id=request_id,
        )

    logger.info(
        "  ✓ Practice problems ready",
        context={
            "skill_id": skill.id,
            "count": min(len(problems), count),
            "duration_seconds": round(time.time() - start_time, 3),
        },
        request_id=request_id,
    )
    return problems[:count]


async def check_answer(
    problem: PracticeProblem,
    answer: str,
    request_id: Optional[str] = None,
) -> AnswerCheck:
    """Ask the model whether the answer is equivalent to the expected solution."""
    prompt = ANSWER_CHECK_PROMPT.format(
        problem=problem.text, solution=problem.solution, answer=answer
    )
    text = await chat_completion(
        [
            {"role": "system", "content": ANSWER_CHECK_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        purpose="check",
        model=Config.PRACTICE.MODEL_NAME,
        temperature=Config.PRACTICE.CHECK_TEMPERATURE,
        json_output=True,
        request_id=request_id,
    )

    try:
        payload = parse_json_payload(text)
    except json.JSONDecodeError as e:
        raise UpstreamError("Could not check the answer") from e
    if not isinstance(payload, dict):
        raise UpstreamError("Could not check the answer")

    return AnswerCheck(
        correct=bool(payload.get("correct")),
        feedback=str(payload.get("feedback") or ""),
    )
