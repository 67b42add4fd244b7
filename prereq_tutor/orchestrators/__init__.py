from prereq_tutor.orchestrators.practice.service import check_answer, generate_practice_problems
from prereq_tutor.orchestrators.skill_analysis.service import (
    analyze_problem_skills,
    check_prerequisites,
)
from prereq_tutor.orchestrators.tutoring.service import analyze_branching, handle_chat_turn

__all__ = [
    "handle_chat_turn",
    "analyze_branching",
    "generate_practice_problems",
    "check_answer",
    "analyze_problem_skills",
    "check_prerequisites",
]
