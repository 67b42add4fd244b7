from typing import Optional, Sequence

from prereq_tutor.config import Config
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import (
    tutor_branch_decisions_total,
    tutor_branch_selections_total,
)
from prereq_tutor.models.schemas import (
    BranchDecision,
    BranchReason,
    BranchRecommendation,
    BranchSkillSelection,
    ProficiencyLevel,
    ProficiencyMap,
    ProficiencyRecord,
    SkillGraph,
)
from prereq_tutor.services.branching.prompts import (
    ALTERNATIVE_HELP_TEMPLATE,
    BRANCH_MESSAGE_TEMPLATES,
    CONFUSION_PHRASES,
    EXPLANATIONS,
    SELECTION_REASONS,
)
from prereq_tutor.services.selection import RoundRobinSelector, TemplateSelector

logger = StructuredLogger("branching")

_WEAK_LEVELS = (ProficiencyLevel.UNKNOWN, ProficiencyLevel.LEARNING)
_default_selector = RoundRobinSelector()


def _is_weak(record: Optional[ProficiencyRecord]) -> bool:
    return record is None or record.level in _WEAK_LEVELS


def _is_unknown(record: Optional[ProficiencyRecord]) -> bool:
    return record is None or record.level == ProficiencyLevel.UNKNOWN


def should_branch(
    learner_text: str,
    required_skill_ids: Sequence[str],
    proficiency_map: ProficiencyMap,
    incorrect_attempts: int = 0,
) -> BranchDecision:
    """
    Decide whether to divert the learner into prerequisite practice.

    Rules are checked in order and the first match wins, so an explicit
    confusion signal always outranks attempt counts and proficiency gaps.
    """
    try:
        response = (learner_text or "").lower().strip()

        if any(phrase in response for phrase in CONFUSION_PHRASES):
            return BranchDecision(
                should_branch=True,
                reason=BranchReason.EXPLICIT_CONFUSION,
                confidence=0.9,
                explanation=EXPLANATIONS["explicit_confusion"],
            )

        if incorrect_attempts >= 2:
            return BranchDecision(
                should_branch=True,
                reason=BranchReason.CONSISTENT_STRUGGLE,
                confidence=0.85,
                explanation=EXPLANATIONS["consistent_struggle"].format(
                    attempts=incorrect_attempts
                ),
            )

        weak_skills = [
            skill_id
            for skill_id in required_skill_ids
            if _is_weak(proficiency_map.get(skill_id))
        ]
        if len(weak_skills) >= 2 and incorrect_attempts >= 1:
            return BranchDecision(
                should_branch=True,
                reason=BranchReason.PREREQUISITE_GAP,
                confidence=0.75,
                explanation=EXPLANATIONS["weak_prerequisites"].format(
                    count=len(weak_skills)
                ),
            )

        if incorrect_attempts >= 1 and required_skill_ids:
            if all(_is_unknown(proficiency_map.get(s)) for s in required_skill_ids):
                return BranchDecision(
                    should_branch=True,
                    reason=BranchReason.PREREQUISITE_GAP,
                    confidence=0.6,
                    explanation=EXPLANATIONS["no_proficiency"],
                )
    except Exception as e:
        logger.error(
            "Branch decision failed",
            context={"error": str(e), "error_type": type(e).__name__},
        )
        return BranchDecision(
            should_branch=False, confidence=0.5, explanation=EXPLANATIONS["error"]
        )

    return BranchDecision(
        should_branch=False, confidence=0.7, explanation=EXPLANATIONS["no_branch"]
    )


def _score_candidate(
    skill_id: str,
    graph: SkillGraph,
    depth: int,
    proficiency_map: ProficiencyMap,
) -> tuple[int, str]:
    skill = graph.skills.get(skill_id)
    if skill is None:
        logger.warning("Skill not found in skill graph", context={"skill_id": skill_id})
        return -1, "Skill not found"

    record = proficiency_map.get(skill_id)
    score = 0
    reason = ""

    if _is_unknown(record):
        score += 100
        reason = SELECTION_REASONS["unknown"]
    elif record.level == ProficiencyLevel.LEARNING:
        score += 50
        reason = SELECTION_REASONS["learning"].format(
            success=record.success_count, solved=record.problems_solved
        )

    total_prereqs = len(skill.layer1) + len(skill.layer2)
    if total_prereqs == 0:
        score += 50
        base = SELECTION_REASONS["base_skill"]
        reason = f"{reason} - {base}" if reason else base
    elif total_prereqs <= 2:
        score += 30
    else:
        score += 10

    # Fan-out: how many skills depend on this one
    fan_out = sum(
        1
        for other in graph.skills.values()
        if skill_id in other.layer1 or skill_id in other.layer2
    )
    score += fan_out * 5

    if depth == 0 and any(skill_id in other.layer2 for other in graph.skills.values()):
        score += 20

    return score, reason


def select_branch_skill(
    candidate_ids: Sequence[str],
    graph: SkillGraph,
    depth: int,
    proficiency_map: ProficiencyMap,
) -> Optional[BranchSkillSelection]:
    """
    Pick the prerequisite most worth practicing.

    Scores are additive: proficiency gap, prerequisite count (simpler
    skills first), dependency fan-out and a foundational bonus at the top
    level. Ties keep the candidates' original order.
    """
    if not candidate_ids:
        return None

    try:
        scored = [
            (skill_id, *_score_candidate(skill_id, graph, depth, proficiency_map))
            for skill_id in candidate_ids
        ]
    except Exception as e:
        logger.error(
            "Branch skill selection failed",
            context={"error": str(e), "error_type": type(e).__name__},
        )
        return None

    # sorted() is stable
    best_id, best_score, best_reason = sorted(scored, key=lambda s: s[1], reverse=True)[0]
    if best_score < 0:
        return None

    return BranchSkillSelection(
        skill_id=best_id,
        skill_name=graph.skills[best_id].name,
        reason=best_reason or SELECTION_REASONS["default"],
        priority=best_score,
    )


def get_weak_skills_for_branching(
    current_skill_id: Optional[str],
    required_skill_ids: Sequence[str],
    graph: SkillGraph,
    proficiency_map: ProficiencyMap,
    depth: int,
) -> list[str]:
    """Weak candidates: required skills at the top level, layer2 of the current branch one level down."""
    candidates: list[str] = []
    if depth == 0:
        candidates = [s for s in required_skill_ids if s in graph.skills]
    elif depth == 1 and current_skill_id:
        current = graph.skills.get(current_skill_id)
        if current is not None:
            candidates = list(current.layer2)

    return [s for s in candidates if _is_weak(proficiency_map.get(s))]


def can_branch_deeper(depth: int, max_depth: int = Config.BRANCHING.MAX_DEPTH) -> bool:
    return depth < max_depth


def should_offer_alternative_help(
    depth: int, max_depth: int = Config.BRANCHING.MAX_DEPTH
) -> bool:
    return depth >= max_depth


def has_attempted_skill(skill_id: str, branch_history: Sequence[str]) -> bool:
    return skill_id in branch_history


def get_valid_branch_options(
    weak_skill_ids: Sequence[str], branch_history: Sequence[str]
) -> list[str]:
    return [s for s in weak_skill_ids if s not in branch_history]


def generate_branch_message(
    skill_name: str,
    reason: str,
    selector: Optional[TemplateSelector] = None,
) -> str:
    template = (selector or _default_selector).choose(BRANCH_MESSAGE_TEMPLATES)
    return template.format(skill=skill_name.lower(), reason=reason)


def generate_alternative_help_message(skill_name: str) -> str:
    return ALTERNATIVE_HELP_TEMPLATE.format(skill=skill_name.lower())


def recommend_branch(
    learner_text: str,
    required_skill_ids: Sequence[str],
    graph: SkillGraph,
    proficiency_map: ProficiencyMap,
    incorrect_attempts: int = 0,
    depth: int = 0,
    current_skill_id: Optional[str] = None,
    branch_history: Sequence[str] = (),
    max_depth: int = Config.BRANCHING.MAX_DEPTH,
    selector: Optional[TemplateSelector] = None,
    request_id: Optional[str] = None,
) -> BranchRecommendation:
    """
    Full branching analysis for one learner turn.

    Flow:
    1. Decide whether to branch at all
    2. At the depth limit, offer alternative help instead of a new branch
    3. Collect weak candidates and drop skills already practiced this session
    4. Select the best candidate and phrase the offer
    """
    decision = should_branch(
        learner_text, required_skill_ids, proficiency_map, incorrect_attempts
    )
    tutor_branch_decisions_total.labels(
        reason=decision.reason.value if decision.reason else "none"
    ).inc()

    if not decision.should_branch:
        return BranchRecommendation(decision=decision)

    if should_offer_alternative_help(depth, max_depth):
        current = graph.skills.get(current_skill_id) if current_skill_id else None
        tutor_branch_selections_total.labels(outcome="alternative_help").inc()
        logger.info(
            "Depth limit reached, offering alternative help",
            context={"depth": depth, "current_skill_id": current_skill_id},
            request_id=request_id,
        )
        return BranchRecommendation(
            decision=decision,
            message=generate_alternative_help_message(
                current.name if current else "this skill"
            ),
            offer_alternative_help=True,
        )

    weak = get_weak_skills_for_branching(
        current_skill_id, required_skill_ids, graph, proficiency_map, depth
    )
    options = get_valid_branch_options(weak, branch_history)
    selection = select_branch_skill(options, graph, depth, proficiency_map)

    if selection is None:
        tutor_branch_selections_total.labels(outcome="no_candidate").inc()
        logger.info(
            "No branch candidate available",
            context={"weak": len(weak), "options": len(options), "depth": depth},
            request_id=request_id,
        )
        return BranchRecommendation(decision=decision)

    tutor_branch_selections_total.labels(outcome="selected").inc()
    logger.info(
        "Branch skill selected",
        context={
            "skill_id": selection.skill_id,
            "priority": selection.priority,
            "reason": decision.reason.value if decision.reason else None,
        },
        request_id=request_id,
    )
    return BranchRecommendation(
        decision=decision,
        selection=selection,
        message=generate_branch_message(selection.skill_name, selection.reason, selector),
    )
