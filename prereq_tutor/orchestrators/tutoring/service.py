import time
from typing import Optional, Sequence

from prereq_tutor.clients.llm import chat_completion, parse_structured_reply
from prereq_tutor.errors import (
    LLMTimeoutError,
    NotFoundError,
    UpstreamError,
    ValidationFailureError,
)
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import (
    tutor_fallbacks_total,
    tutor_regenerations_total,
    tutor_stuck_level,
    tutor_validation_violations_total,
)
from prereq_tutor.models.schemas import (
    BranchRecommendation,
    ChatTurnResult,
    ConversationMessage,
    MessageRole,
    PracticeRecommendation,
    SkillSummary,
    StructuredTutorReply,
    ValidationResult,
)
from prereq_tutor.orchestrators.tutoring.prompts import (
    AVAILABLE_SKILLS_PROMPT,
    DIAGNOSTIC_FLOW_PROMPT,
    PROBLEM_CONTEXT_PROMPT,
    RETURN_CONTEXT_PROMPT,
    SOCRATIC_SYSTEM_PROMPT,
)
from prereq_tutor.services.branching.service import recommend_branch
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.response_validation.service import (
    fallback_response,
    get_stricter_prompt,
    validate_response,
)
from prereq_tutor.services.selection import TemplateSelector
from prereq_tutor.services.session.service import SessionManager
from prereq_tutor.services.skill_graph.service import SkillGraphResolver
from prereq_tutor.services.stuck_detection.service import (
    analyze_stuck_level,
    get_hint_level_prompt,
)

logger = StructuredLogger("tutoring")


async def _focus_skill_prerequisites(
    manager: SessionManager, resolver: SkillGraphResolver, request_id: Optional[str]
) -> list[SkillSummary]:
    """Direct prerequisites of the skill the learner is currently working on."""
    branch = manager.current_branch
    skill_id = branch.skill_id if branch else manager.session.main_skill_id
    if not skill_id:
        return []

    try:
        prerequisites = await resolver.get_prerequisites(skill_id, 1)
    except NotFoundError:
        logger.warning(
            "Focus skill missing from graph",
            context={"skill_id": skill_id},
            request_id=request_id,
        )
        return []
    return prerequisites.skills


def _problem_context(manager: SessionManager) -> str:
    branch = manager.current_branch
    if branch and branch.current_problem_index < len(branch.problems):
        return branch.problems[branch.current_problem_index].text
    return manager.session.main_problem.text


def _history(messages: Sequence[ConversationMessage]) -> list[dict[str, str]]:
    return [
        {"role": m.role.value, "content": m.content}
        for m in messages
        if m.role != MessageRole.SYSTEM
    ]


def build_messages(
    system_prompt: str,
    history: Sequence[ConversationMessage],
    user_message: str,
    stuck_level: int = 0,
    problem_context: Optional[str] = None,
    available_skills: Sequence[SkillSummary] = (),
    recently_mastered: Sequence[str] = (),
) -> list[dict[str, str]]:
    """
    Assemble the model conversation for one tutor turn.

    The system prompt is extended with hint guidance for the stuck level,
    diagnostic guidance once the learner is clearly stuck, the prerequisite
    skills the model may recommend, the problem context and any skills the
    learner just mastered.
    """
    system = system_prompt + get_hint_level_prompt(stuck_level)
    if stuck_level >= 2:
        system += DIAGNOSTIC_FLOW_PROMPT
    if available_skills:
        system += AVAILABLE_SKILLS_PROMPT.format(
            skills="\n".join(
                f"- {s.id}: {s.name}" + (f" ({s.description})" if s.description else "")
                for s in available_skills
            )
        )
    if problem_context:
        system += PROBLEM_CONTEXT_PROMPT.format(problem=problem_context)
    if recently_mastered:
        system += RETURN_CONTEXT_PROMPT.format(
            skills=", ".join(recently_mastered), first_skill=recently_mastered[0]
        )

    return [
        {"role": "system", "content": system},
        *_history(history),
        {"role": "user", "content": user_message},
    ]


async def _regenerate(
    messages: list[dict[str, str]],
    validation: ValidationResult,
    problem_context: str,
    request_id: Optional[str],
) -> StructuredTutorReply:
    """
    One retry under the stricter prompt.

    Raises:
        ValidationFailureError: The regenerated reply still leaks the answer
    """
    strict_system = get_stricter_prompt(validation.violation_type)
    strict_system += PROBLEM_CONTEXT_PROMPT.format(problem=problem_context)
    tutor_regenerations_total.inc()

    text = await chat_completion(
        [{"role": "system", "content": strict_system}, *messages[1:]],
        purpose="regenerate",
        json_output=True,
        request_id=request_id,
    )
    reply = parse_structured_reply(text)

    second = validate_response(reply.tutor_response)
    if not second.is_valid:
        tutor_validation_violations_total.labels(
            violation_type=second.violation_type.value
        ).inc()
        raise ValidationFailureError(
            f"Regenerated reply still invalid: {second.violation_type.value}"
        )
    return reply


async def handle_chat_turn(
    manager: SessionManager,
    resolver: SkillGraphResolver,
    message: str,
    recently_mastered: Optional[Sequence[str]] = None,
    selector: Optional[TemplateSelector] = None,
    request_id: Optional[str] = None,
) -> ChatTurnResult:
    """
    Run one Socratic tutor turn for the learner's message.

    Returns:
        ChatTurnResult with the tutor text, stuck level, validation outcome
        and an optional practice recommendation

    Raises:
        InvalidStateError: No active session
        LLMTimeoutError / UpstreamError: The first model call failed
    """
    start_time = time.time()
    manager.require_session()
    logger.info(
        "Starting chat turn",
        context={"session_id": manager.session.session_id, "message": message[:100]},
        request_id=request_id,
    )

    await manager.add_message(MessageRole.USER, message, request_id=request_id)
    session = manager.session

    stuck_level = analyze_stuck_level(session.messages)
    tutor_stuck_level.observe(stuck_level)

    available_skills = await _focus_skill_prerequisites(manager, resolver, request_id)
    problem_context = _problem_context(manager)
    messages = build_messages(
        SOCRATIC_SYSTEM_PROMPT,
        session.messages[:-1],
        message,
        stuck_level=stuck_level,
        problem_context=problem_context,
        available_skills=available_skills,
        recently_mastered=recently_mastered or (),
    )

    logger.info(
        "  → Tutor model",
        context={"stuck_level": stuck_level, "prompt_messages": len(messages)},
        request_id=request_id,
    )
    text = await chat_completion(messages, purpose="tutor", json_output=True, request_id=request_id)
    reply = parse_structured_reply(text)

    regenerated = False
    used_fallback = False
    validation = validate_response(reply.tutor_response)
    if not validation.is_valid:
        tutor_validation_violations_total.labels(
            violation_type=validation.violation_type.value
        ).inc()
        logger.warning(
            "Tutor reply leaks the answer, regenerating",
            context={
                "violation_type": validation.violation_type.value,
                "confidence": validation.confidence,
            },
            request_id=request_id,
        )
        regenerated = True
        try:
            reply = await _regenerate(messages, validation, problem_context, request_id)
        except ValidationFailureError as e:
            tutor_fallbacks_total.labels(cause="still_invalid").inc()
            logger.warning(
                "Using fallback reply", context={"reason": str(e)}, request_id=request_id
            )
            reply = StructuredTutorReply(
                tutor_response=fallback_response(problem_context, selector)
            )
            used_fallback = True
        except (LLMTimeoutError, UpstreamError) as e:
            tutor_fallbacks_total.labels(cause="regeneration_failed").inc()
            logger.warning(
                "Regeneration failed, using fallback reply",
                context={"error": str(e), "error_type": type(e).__name__},
                request_id=request_id,
            )
            reply = StructuredTutorReply(
                tutor_response=fallback_response(problem_context, selector)
            )
            used_fallback = True

    await manager.add_message(MessageRole.ASSISTANT, reply.tutor_response, request_id=request_id)

    recommendation = None
    if (
        not used_fallback
        and reply.needs_practice
        and reply.practice_skill_id
        and await resolver.validate_exists(reply.practice_skill_id)
        and not manager.has_attempted_skill(reply.practice_skill_id)
        and manager.can_branch_deeper()
    ):
        skill = await resolver.get_skill(reply.practice_skill_id)
        recommendation = PracticeRecommendation(
            skill_id=skill.id,
            skill_name=reply.practice_skill_name or skill.name,
            reason=reply.practice_reason or "",
        )

    duration = time.time() - start_time
    logger.info(
        f"  ✓ Chat turn ({duration:.1f}s)",
        context={
            "stuck_level": stuck_level,
            "regenerated": regenerated,
            "used_fallback": used_fallback,
            "recommended_skill": recommendation.skill_id if recommendation else None,
        },
        request_id=request_id,
    )
    return ChatTurnResult(
        tutor_response=reply.tutor_response,
        stuck_level=stuck_level,
        regenerated=regenerated,
        used_fallback=used_fallback,
        violation_type=validation.violation_type,
        recommendation=recommendation,
    )


async def analyze_branching(
    manager: SessionManager,
    resolver: SkillGraphResolver,
    tracker: ProficiencyTracker,
    learner_text: str,
    required_skill_ids: Optional[Sequence[str]] = None,
    incorrect_attempts: int = 0,
    selector: Optional[TemplateSelector] = None,
    request_id: Optional[str] = None,
) -> BranchRecommendation:
    """Decide whether the learner should detour into prerequisite practice."""
    session = manager.require_session()
    graph = await resolver.load_graph()

    if required_skill_ids is None:
        focus = manager.current_branch
        skill_id = focus.skill_id if focus else session.main_skill_id
        skill = graph.skills.get(skill_id) if skill_id else None
        required_skill_ids = list(skill.layer1) if skill else []

    proficiency_map = await tracker.get_proficiency_map(session.user_id, required_skill_ids)
    branch = manager.current_branch
    return recommend_branch(
        learner_text,
        required_skill_ids,
        graph,
        proficiency_map,
        incorrect_attempts=incorrect_attempts,
        depth=manager.depth,
        current_skill_id=branch.skill_id if branch else None,
        branch_history=session.branch_history,
        max_depth=manager.max_depth,
        selector=selector,
        request_id=request_id,
    )
