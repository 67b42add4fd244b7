from fastapi import APIRouter, Depends, HTTPException, Query

from prereq_tutor.models.schemas import (
    AnalyzeSkillsRequest,
    PrerequisiteCheck,
    PrerequisiteSet,
    Skill,
    SkillAnalysis,
    SkillSummary,
)
from prereq_tutor.orchestrators.skill_analysis.service import (
    analyze_problem_skills,
    check_prerequisites,
)
from prereq_tutor.routes.dependencies import (
    get_request_id,
    get_resolver,
    get_tracker,
    get_user_id,
    to_http_error,
)
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.skill_graph.service import SkillGraphResolver

router = APIRouter(prefix="/skills", tags=["Skills"])


@router.get("", response_model=list[SkillSummary])
async def list_skills(
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        return await resolver.get_all_skills()
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "list skills", request_id)


@router.get("/{skill_id}", response_model=Skill)
async def get_skill(
    skill_id: str,
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        return await resolver.get_skill(skill_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "get skill", request_id)


@router.get("/{skill_id}/prerequisites", response_model=PrerequisiteSet)
async def get_prerequisites(
    skill_id: str,
    layer: int = Query(1, ge=1, le=2, description="1 = direct, 2 = foundational"),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        return await resolver.get_prerequisites(skill_id, layer)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "get prerequisites", request_id)


@router.get("/{skill_id}/diagnostics", response_model=list[str])
async def get_diagnostics(
    skill_id: str,
    layer: int = Query(1, ge=1, le=2),
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    try:
        return await resolver.get_diagnostics(skill_id, layer)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "get diagnostics", request_id)


@router.post("/analyze", response_model=SkillAnalysis)
async def analyze_skills(
    body: AnalyzeSkillsRequest,
    resolver: SkillGraphResolver = Depends(get_resolver),
    request_id: str = Depends(get_request_id),
):
    """Identify the graph skills a problem requires."""
    try:
        return await analyze_problem_skills(resolver, body.problem_text, request_id=request_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "analyze skills", request_id)


@router.post("/{skill_id}/check-prerequisites", response_model=PrerequisiteCheck)
async def check_skill_prerequisites(
    skill_id: str,
    user_id: str = Depends(get_user_id),
    resolver: SkillGraphResolver = Depends(get_resolver),
    tracker: ProficiencyTracker = Depends(get_tracker),
    request_id: str = Depends(get_request_id),
):
    """Report whether the learner is ready for a skill and which prerequisites are weak."""
    try:
        return await check_prerequisites(
            resolver, tracker, user_id, skill_id, request_id=request_id
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_error(e, "check prerequisites", request_id)
