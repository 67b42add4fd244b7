from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from prereq_tutor.config import Config
from prereq_tutor.errors import InvalidStateError, NotFoundError, TutorError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import (
    AnalyzeBranchingRequest,
    AttemptRequest,
    AttemptResponse,
    BranchRecommendation,
    BranchRequest,
    ChatRequest,
    ChatTurnResult,
    CleanupRequest,
    CleanupResponse,
    CreateSessionRequest,
    DiagnoseResponse,
    Skill,
    StartPracticeRequest,
    TutoringSession,
)
from prereq_tutor.orchestrators.practice.service import (
    check_answer,
    generate_practice_problems,
)
from prereq_tutor.orchestrators.skill_analysis.service import analyze_problem_skills
from prereq_tutor.orchestrators.tutoring.service import analyze_branching, handle_chat_turn
from prereq_tutor.routes.dependencies import (
    get_registry,
    get_request_id,
    get_resolver,
    get_store,
    get_tracker,
    get_user_id,
    to_http_error,
)
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.session.service import (
    SessionManager,
    SessionRegistry,
    cleanup_abandoned_sessions,
)
from prereq_tutor.services.session.store import DocumentStore
from prereq_tutor.services.skill_graph.service import SkillGraphResolver

router = APIRouter(prefix="/sessions", tags=["Sessions"])
logger = StructuredLogger("api")


async def _open_session(
    registry: SessionRegistry, user_id: str, session_id: str, request_id: str
) -> SessionManager:
    """The learner's manager with `session_id` loaded."""
    manager = registry.get(user_id)
    await manager.load_session(session_id, request_id=request_id)
    return manager


async def _branch_skill(manager: SessionManager, resolver: SkillGraphResolver) -> Skill:
    branch = manager.current_branch
    if branch is None:
        raise InvalidStateError("No active skill branch")
    try:
        return await resolver.get_skill(branch.skill_id)
    except NotFoundError:
        # Branches may target skills outside the graph
        return Skill(id=branch.skill_id, name=branch.skill_name, description=branch.skill_description)


# ==================== Lifecycle ====================


@router.post("", response_model=TutoringSession, status_code=201)
async def create_session(
    body: CreateSessionRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = registry.get(user_id)
        main_skill_id = body.main_skill_id
        if main_skill_id is None and body.analyze_skills:
            try:
                analysis = await analyze_problem_skills(
                    resolver, body.problem_text, request_id=request_id
                )
                main_skill_id = analysis.primary_skill
            except TutorError as e:
                # A session without a main skill still tutors; it just cannot branch
                logger.warning(
                    "Problem skill analysis failed",
                    context={"error": str(e)},
                    request_id=request_id,
                )
        return await manager.create_session(
            body.problem_text,
            problem_latex=body.problem_latex,
            initial_message=body.initial_message,
            main_skill_id=main_skill_id,
            request_id=request_id,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "create session", request_id)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_sessions(
    body: CleanupRequest,
    store: DocumentStore = Depends(get_store),
    request_id: str = Depends(get_request_id),
):
    """Mark sessions with no recent activity as abandoned."""
    try:
        older_than_hours = body.older_than_hours or Config.SESSION.ABANDON_AFTER_HOURS
        stale = await cleanup_abandoned_sessions(
            store, older_than_hours=older_than_hours, dry_run=body.dry_run
        )
        return CleanupResponse(marked=len(stale), session_ids=stale, dry_run=body.dry_run)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "clean up sessions", request_id)


@router.get("/recoverable", response_model=Optional[TutoringSession])
async def get_recoverable_session(
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    """The learner's resumable session, or null."""
    manager = registry.get(user_id)
    return await manager.check_for_recoverable_session(request_id=request_id)


@router.get("/{session_id}", response_model=TutoringSession)
async def get_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        return manager.session
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "get session", request_id)


@router.post("/{session_id}/resume", response_model=TutoringSession)
async def resume_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    try:
        return await registry.get(user_id).resume_session(session_id, request_id=request_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "resume session", request_id)


@router.post("/{session_id}/decline")
async def decline_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    try:
        await registry.get(user_id).decline_session(session_id, request_id=request_id)
        return {"session_id": session_id, "status": "abandoned"}
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "decline session", request_id)


@router.post("/{session_id}/pause")
async def pause_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    manager = registry.get(user_id)
    if manager.session is None or manager.session.session_id != session_id:
        return {"session_id": session_id, "paused": False}
    await manager.pause_and_clear_session(request_id=request_id)
    return {"session_id": session_id, "paused": True}


@router.post("/{session_id}/end", response_model=TutoringSession)
async def end_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        return await manager.end_session(request_id=request_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "end session", request_id)


# ==================== Branching & Practice ====================


@router.post("/{session_id}/branch", response_model=TutoringSession)
async def branch_to_skill(
    session_id: str,
    body: BranchRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        name, description = body.skill_name, body.skill_description
        if name is None:
            skill = await resolver.get_skill(body.skill_id)
            name = skill.name
            description = description if description is not None else skill.description
        return await manager.branch_to_skill(
            body.skill_id, name, description or "", request_id=request_id
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "branch to skill", request_id)


@router.post("/{session_id}/practice", response_model=TutoringSession)
async def start_practice(
    session_id: str,
    body: StartPracticeRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    """Attach practice problems to the current branch, generating them when none are given."""
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        problems = body.problems
        if not problems:
            skill = await _branch_skill(manager, resolver)
            problems = await generate_practice_problems(
                skill, count=body.count, grade_level=body.grade_level, request_id=request_id
            )
        return await manager.start_practice(problems, request_id=request_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "start practice", request_id)


@router.post("/{session_id}/attempts", response_model=AttemptResponse)
async def submit_attempt(
    session_id: str,
    body: AttemptRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    tracker: ProficiencyTracker = Depends(get_tracker),
    request_id: str = Depends(get_request_id),
):
    """Check and record an answer, update proficiency and advance to the next problem."""
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        branch = manager.current_branch
        if branch is None or branch.current_problem_index >= len(branch.problems):
            raise InvalidStateError("No practice problem awaiting an answer")
        problem = branch.problems[branch.current_problem_index]

        correct, feedback = body.correct, ""
        if correct is None:
            result = await check_answer(problem, body.answer, request_id=request_id)
            correct, feedback = result.correct, result.feedback

        session = await manager.submit_answer(body.answer, correct, request_id=request_id)
        try:
            await tracker.update_proficiency(
                user_id, branch.skill_id, correct, request_id=request_id
            )
        except TutorError as e:
            # The attempt is already saved; proficiency catches up on the next answer
            logger.warning(
                "Proficiency update failed",
                context={"skill_id": branch.skill_id, "error": str(e)},
                request_id=request_id,
            )
        return AttemptResponse(correct=correct, feedback=feedback, session=session)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "record attempt", request_id)


@router.post("/{session_id}/return", response_model=TutoringSession)
async def return_to_parent(
    session_id: str,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        return await manager.return_to_parent(request_id=request_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "return to parent", request_id)


# ==================== Conversation ====================


@router.post("/{session_id}/messages", response_model=ChatTurnResult)
async def send_message(
    session_id: str,
    body: ChatRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        return await handle_chat_turn(
            manager,
            resolver,
            body.message,
            recently_mastered=body.recently_mastered_skills,
            request_id=request_id,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "handle chat turn", request_id)


@router.post("/{session_id}/analyze-branching", response_model=BranchRecommendation)
async def analyze_session_branching(
    session_id: str,
    body: AnalyzeBranchingRequest,
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    tracker: ProficiencyTracker = Depends(get_tracker),
    request_id: str = Depends(get_request_id),
):
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        return await analyze_branching(
            manager,
            resolver,
            tracker,
            body.learner_text,
            required_skill_ids=body.required_skill_ids,
            incorrect_attempts=body.incorrect_attempts,
            request_id=request_id,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "analyze branching", request_id)


@router.post("/{session_id}/diagnose", response_model=DiagnoseResponse)
async def diagnose(
    session_id: str,
    skill_id: Optional[str] = Query(None, description="Defaults to the session's focus skill"),
    max_questions: int = Query(3, ge=1, le=10),
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    """Diagnostic questions for a skill, direct prerequisites first."""
    try:
        manager = await _open_session(registry, user_id, session_id, request_id)
        if skill_id is None:
            branch = manager.current_branch
            skill_id = branch.skill_id if branch else manager.session.main_skill_id
        if not skill_id:
            raise InvalidStateError("Session has no skill to diagnose")

        questions = await resolver.build_diagnostic_set(skill_id, max_questions=max_questions)
        return DiagnoseResponse(skill_id=skill_id, questions=questions)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "build diagnostic set", request_id)
