import json
import time
from typing import Optional

from prereq_tutor.clients.llm import chat_completion, parse_json_payload
from prereq_tutor.config import Config
from prereq_tutor.errors import TutorError, UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import (
    PrerequisiteCheck,
    PrerequisiteStatus,
    ProficiencyLevel,
    SkillAnalysis,
    SkillSummary,
)
from prereq_tutor.orchestrators.skill_analysis.prompts import (
    DEFAULT_REASONING,
    FEW_WEAK_RECOMMENDATION,
    LEARNING_SKILLS_RECOMMENDATION,
    MANY_WEAK_RECOMMENDATION,
    READY_RECOMMENDATION,
    SINGLE_WEAK_RECOMMENDATION,
    SKILL_ANALYSIS_PROMPT,
    SKILL_ANALYSIS_SYSTEM_PROMPT,
    UNKNOWN_SKILLS_RECOMMENDATION,
)
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.skill_graph.service import SkillGraphResolver

logger = StructuredLogger("skill_analysis")

_WEAK_LEVELS = (ProficiencyLevel.UNKNOWN, ProficiencyLevel.LEARNING)


async def analyze_problem_skills(
    resolver: SkillGraphResolver,
    problem_text: str,
    request_id: Optional[str] = None,
) -> SkillAnalysis:
    """
    Ask the model which graph skills a problem needs.

    Ids the graph does not know are dropped. An unknown primary skill is
    replaced by the first valid required skill, and the primary skill is
    always listed first among the required skills.

    Raises:
        UpstreamError: The graph is empty, or the model returned nothing usable
        LLMTimeoutError: The model did not answer in time
    """
    start_time = time.time()
    skills = await resolver.get_all_skills()
    if not skills:
        raise UpstreamError("Skill graph is empty")

    skill_list = "\n".join(f'- {s.id}: "{s.name}" - {s.description}' for s in skills)
    logger.info(
        "  → Analyzing problem skills",
        context={"problem": problem_text[:50], "skills": len(skills)},
        request_id=request_id,
    )
    text = await chat_completion(
        [
            {
                "role": "system",
                "content": SKILL_ANALYSIS_SYSTEM_PROMPT.format(skill_list=skill_list),
            },
            {
                "role": "user",
                "content": SKILL_ANALYSIS_PROMPT.format(problem_text=problem_text),
            },
        ],
        purpose="skill_analysis",
        model=Config.SKILL_ANALYSIS.MODEL_NAME,
        temperature=Config.SKILL_ANALYSIS.TEMPERATURE,
        max_tokens=Config.SKILL_ANALYSIS.MAX_TOKENS,
        timeout=Config.SKILL_ANALYSIS.TIMEOUT,
        json_output=True,
        request_id=request_id,
    )

    try:
        payload = parse_json_payload(text)
    except json.JSONDecodeError as e:
        raise UpstreamError("Could not analyze the problem") from e
    if not isinstance(payload, dict):
        raise UpstreamError("Could not analyze the problem")

    primary = payload.get("primarySkill")
    required = payload.get("requiredSkills")
    if not primary or not isinstance(required, list):
        logger.error(
            "Malformed skill analysis",
            context={"payload": str(payload)[:200]},
            request_id=request_id,
        )
        raise UpstreamError("Could not analyze the problem")

    known = {s.id for s in skills}
    invalid = [s for s in [primary, *required] if s not in known]
    if invalid:
        logger.warning(
            "Model returned unknown skill ids",
            context={"invalid": invalid},
            request_id=request_id,
        )
    required = [s for s in required if s in known]
    if primary not in known:
        if not required:
            raise UpstreamError("Could not identify valid skills for this problem")
        primary = required[0]

    required = [primary] + [s for s in dict.fromkeys(required) if s != primary]
    analysis = SkillAnalysis(
        primary_skill=primary,
        required_skills=required,
        reasoning=str(payload.get("reasoning") or DEFAULT_REASONING),
    )
    logger.info(
        "  ✓ Problem skills identified",
        context={
            "primary_skill": analysis.primary_skill,
            "required_skills": analysis.required_skills,
            "duration_seconds": round(time.time() - start_time, 3),
        },
        request_id=request_id,
    )
    return analysis


def generate_recommendations(weak: list[PrerequisiteStatus]) -> list[str]:
    if not weak:
        return [READY_RECOMMENDATION]

    recommendations = []
    unknown = [s.name for s in weak if s.level == ProficiencyLevel.UNKNOWN]
    learning = [s.name for s in weak if s.level == ProficiencyLevel.LEARNING]
    if unknown:
        recommendations.append(UNKNOWN_SKILLS_RECOMMENDATION.format(names=", ".join(unknown)))
    if learning:
        recommendations.append(LEARNING_SKILLS_RECOMMENDATION.format(names=", ".join(learning)))

    if len(weak) == 1:
        recommendations.append(SINGLE_WEAK_RECOMMENDATION.format(name=weak[0].name))
    elif len(weak) <= 3:
        recommendations.append(FEW_WEAK_RECOMMENDATION)
    else:
        recommendations.append(MANY_WEAK_RECOMMENDATION)
    return recommendations


async def check_prerequisites(
    resolver: SkillGraphResolver,
    tracker: ProficiencyTracker,
    user_id: str,
    skill_id: str,
    request_id: Optional[str] = None,
) -> PrerequisiteCheck:
    """
    Judge a learner's readiness for a skill from both prerequisite layers.

    Ready means no direct prerequisite is unknown or still being learned.
    A proficiency record that cannot be read counts as unknown.

    Raises:
        NotFoundError: The skill is not in the graph
    """
    await resolver.get_skill(skill_id)

    statuses: list[PrerequisiteStatus] = []
    for layer in (1, 2):
        prerequisites = await resolver.get_prerequisites(skill_id, layer)
        for prereq in prerequisites.skills:
            try:
                record = await tracker.get_proficiency(user_id, prereq.id)
                level = record.level if record else ProficiencyLevel.UNKNOWN
            except TutorError as e:
                logger.warning(
                    "Could not read proficiency, treating as unknown",
                    context={"skill_id": prereq.id, "error": str(e)},
                    request_id=request_id,
                )
                level = ProficiencyLevel.UNKNOWN
            statuses.append(
                PrerequisiteStatus(
                    id=prereq.id,
                    name=prereq.name,
                    description=prereq.description,
                    layer=layer,
                    level=level,
                    is_weak=level in _WEAK_LEVELS,
                )
            )

    weak = [s for s in statuses if s.is_weak]
    ready = not any(s.is_weak for s in statuses if s.layer == 1)
    logger.info(
        "Prerequisite readiness checked",
        context={
            "skill_id": skill_id,
            "ready": ready,
            "weak_skills": [s.id for s in weak],
        },
        request_id=request_id,
    )
    return PrerequisiteCheck(
        skill_id=skill_id,
        ready=ready,
        prerequisites=statuses,
        weak_skills=[SkillSummary(id=s.id, name=s.name, description=s.description) for s in weak],
        recommendations=generate_recommendations(weak),
    )
