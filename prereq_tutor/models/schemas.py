from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# === Skill Graph Schemas ===


class SkillDiagnostics(BaseModel):
    """Diagnostic questions probing each prerequisite layer"""

    model_config = ConfigDict(frozen=True)

    layer1: list[str] = Field(default_factory=list)
    layer2: list[str] = Field(default_factory=list)


class Skill(BaseModel):
    """A named unit of competence with two layers of prerequisites"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable skill identifier")
    name: str = Field(..., description="Human-readable skill name")
    description: str = Field(default="", description="What the skill covers")
    layer1: list[str] = Field(
        default_factory=list, description="Direct prerequisite skill ids"
    )
    layer2: list[str] = Field(
        default_factory=list, description="Foundational prerequisite skill ids"
    )
    diagnostics: SkillDiagnostics = Field(default_factory=SkillDiagnostics)
    category: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    common_mistakes: list[str] = Field(default_factory=list)


class SkillGraph(BaseModel):
    """Versioned, read-only mapping of skill id to Skill"""

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Graph document version")
    skills: dict[str, Skill] = Field(..., description="Skills keyed by id")
    description: Optional[str] = None
    skill_categories: dict[str, list[str]] = Field(default_factory=dict)


class SkillSummary(BaseModel):
    """id/name/description projection of a Skill"""

    id: str
    name: str
    description: str = ""


class PrerequisiteSet(BaseModel):
    """Prerequisite ids for one layer plus their resolved details"""

    skill_ids: list[str] = Field(default_factory=list)
    skills: list[SkillSummary] = Field(default_factory=list)


# === Proficiency Schemas ===


class ProficiencyLevel(str, Enum):
    UNKNOWN = "unknown"
    LEARNING = "learning"
    PROFICIENT = "proficient"
    MASTERED = "mastered"


class ProficiencyRecord(BaseModel):
    """A learner's practice history on one skill"""

    level: ProficiencyLevel = ProficiencyLevel.UNKNOWN
    problems_solved: int = 0
    success_count: int = 0
    last_practiced: Optional[datetime] = None


ProficiencyMap = dict[str, ProficiencyRecord]


# === Session Schemas ===


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationMessage(BaseModel):
    """A single message in the session log"""

    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class SessionScreen(str, Enum):
    """Where the learner is in the tutoring flow"""

    DIAGNOSIS = "diagnosis"
    FORK = "fork"
    PRACTICE = "practice"
    MASTERED = "mastered"
    COMPLETED = "completed"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class PracticeProblem(BaseModel):
    text: str = Field(..., description="Problem statement")
    hint: str = Field(default="", description="Hint that does not reveal the answer")
    solution: str = Field(default="", description="Worked solution")
    latex: Optional[str] = None


class ProblemAttempt(BaseModel):
    problem_index: int
    answer: str
    correct: bool
    timestamp: datetime = Field(default_factory=utc_now)


class SkillBranch(BaseModel):
    """A detour into practicing one prerequisite skill"""

    skill_id: str
    skill_name: str
    skill_description: str = ""
    problems: list[PracticeProblem] = Field(default_factory=list)
    current_problem_index: int = 0
    success_count: int = 0
    attempts: list[ProblemAttempt] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    mastered: bool = False


class MainProblem(BaseModel):
    text: str
    latex: Optional[str] = None


class TutoringSession(BaseModel):
    """Complete per-learner session record"""

    session_id: str
    user_id: str
    main_problem: MainProblem
    main_skill_id: Optional[str] = None
    skill_stack: list[SkillBranch] = Field(default_factory=list)
    current_screen: SessionScreen = SessionScreen.DIAGNOSIS
    messages: list[ConversationMessage] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    branch_history: list[str] = Field(default_factory=list)
    total_problems_attempted: int = 0
    total_correct_answers: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_message_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


# === Decision Schemas ===


class BranchReason(str, Enum):
    EXPLICIT_CONFUSION = "explicit_confusion"
    CONSISTENT_STRUGGLE = "consistent_struggle"
    PREREQUISITE_GAP = "prerequisite_gap"


class BranchDecision(BaseModel):
    should_branch: bool
    reason: Optional[BranchReason] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = ""


class BranchSkillSelection(BaseModel):
    skill_id: str
    skill_name: str
    reason: str
    priority: int = Field(..., description="Higher means more urgent to practice")


class BranchRecommendation(BaseModel):
    """Combined decision, selection and learner-facing message"""

    decision: BranchDecision
    selection: Optional[BranchSkillSelection] = None
    message: Optional[str] = None
    offer_alternative_help: bool = False


# === Response Validation Schemas ===


class ViolationType(str, Enum):
    NUMERIC_EQUATION = "numeric_equation"
    ANSWER_REVEAL = "answer_reveal"
    CONCLUSION_WITH_ANSWER = "conclusion_with_answer"
    COMPLETE_FORMULA_REVEAL = "complete_formula_reveal"
    STEP_BY_STEP_SOLUTION = "step_by_step_solution"
    DIRECT_CALCULATION = "direct_calculation"
    ANSWER_SUBSTITUTION = "answer_substitution"
    LATEX_NUMERIC_ANSWER = "latex_numeric_answer"
    VALUE_REVEAL = "value_reveal"
    RESULT_IMPLICATION = "result_implication"


class ValidationResult(BaseModel):
    is_valid: bool
    violation_type: Optional[ViolationType] = None
    confidence: float = Field(..., ge=0.0, le=1.0)


# === Language Model Schemas ===


class StructuredTutorReply(BaseModel):
    """Five-field JSON reply produced by the language model"""

    model_config = ConfigDict(populate_by_name=True)

    tutor_response: str = Field(..., alias="tutorResponse")
    needs_practice: bool = Field(default=False, alias="needsPractice")
    practice_skill_id: Optional[str] = Field(default=None, alias="practiceSkillId")
    practice_skill_name: Optional[str] = Field(default=None, alias="practiceSkillName")
    practice_reason: Optional[str] = Field(default=None, alias="practiceReason")


class PracticeRecommendation(BaseModel):
    skill_id: str
    skill_name: str
    reason: str = ""


class ChatTurnResult(BaseModel):
    tutor_response: str
    stuck_level: int = Field(..., ge=0, le=3)
    regenerated: bool = False
    used_fallback: bool = False
    violation_type: Optional[ViolationType] = None
    recommendation: Optional[PracticeRecommendation] = None


class AnswerCheck(BaseModel):
    correct: bool
    feedback: str = ""


class SkillAnalysis(BaseModel):
    """Graph skills a submitted problem exercises"""

    primary_skill: str = Field(..., description="Most advanced skill the problem tests")
    required_skills: list[str] = Field(
        default_factory=list, description="Primary skill first, then its prerequisites"
    )
    reasoning: str = ""


class PrerequisiteStatus(BaseModel):
    id: str
    name: str
    description: str = ""
    layer: int
    level: ProficiencyLevel = ProficiencyLevel.UNKNOWN
    is_weak: bool = True


class PrerequisiteCheck(BaseModel):
    """Whether a learner is ready for a skill, judged by direct prerequisites"""

    skill_id: str
    ready: bool
    prerequisites: list[PrerequisiteStatus] = Field(default_factory=list)
    weak_skills: list[SkillSummary] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# === API Schemas ===


class CreateSessionRequest(BaseModel):
    problem_text: str = Field(..., min_length=1, description="Main problem text")
    problem_latex: Optional[str] = Field(None, description="Optional markup")
    initial_message: Optional[str] = Field(
        None, description="Opening tutor message for the log"
    )
    main_skill_id: Optional[str] = Field(None, description="Skill the problem exercises")
    analyze_skills: bool = Field(
        False, description="Identify the main skill from the problem text when not given"
    )


class BranchRequest(BaseModel):
    skill_id: str = Field(..., description="Prerequisite skill to practice")
    skill_name: Optional[str] = Field(
        None, description="Display name; resolved from the skill graph when omitted"
    )
    skill_description: Optional[str] = None


class StartPracticeRequest(BaseModel):
    problems: Optional[list[PracticeProblem]] = Field(
        None, description="Pre-generated problems; generated when omitted"
    )
    count: Optional[int] = Field(None, description="Number of problems to generate")
    grade_level: Optional[str] = None


class AttemptRequest(BaseModel):
    answer: str = Field(..., description="Learner's answer to the current problem")
    correct: Optional[bool] = Field(
        None, description="Known correctness; checked by the tutor when omitted"
    )


class AttemptResponse(BaseModel):
    correct: bool
    feedback: str = ""
    session: TutoringSession


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="Learner message")
    recently_mastered_skills: list[str] = Field(default_factory=list)


class AnalyzeBranchingRequest(BaseModel):
    learner_text: str = Field(default="", description="Latest learner message")
    required_skill_ids: Optional[list[str]] = Field(
        None, description="Skills the current problem needs; derived when omitted"
    )
    incorrect_attempts: int = Field(default=0, ge=0)


class DiagnoseResponse(BaseModel):
    skill_id: str
    questions: list[str]


class CleanupRequest(BaseModel):
    older_than_hours: Optional[float] = Field(None, gt=0)
    dry_run: bool = False


class CleanupResponse(BaseModel):
    marked: int
    session_ids: list[str]
    dry_run: bool


class AnalyzeSkillsRequest(BaseModel):
    problem_text: str = Field(..., min_length=1, description="Problem to analyze")
