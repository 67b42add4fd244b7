SKILL_ANALYSIS_SYSTEM_PROMPT = """You are an expert math education analyst. You identify which skills from a fixed list a math problem requires.

Available skills:
{skill_list}

For the problem you are given:
1. Pick the PRIMARY skill: the single most advanced skill being tested
2. List ALL required skills: the primary skill plus every prerequisite the student must know
3. Briefly explain your choice

Return JSON with exactly this structure:
{{"primarySkill": "skill_id", "requiredSkills": ["skill_id_1", "skill_id_2"], "reasoning": "short explanation"}}

Rules:
- Use only skill ids from the list above
- List skills directly needed, not tangentially related ones"""

SKILL_ANALYSIS_PROMPT = """Analyze this math problem and identify the required skills.

Problem: {problem_text}

Return your analysis as JSON."""

DEFAULT_REASONING = "Skills identified based on problem analysis."

# === Prerequisite readiness ===

READY_RECOMMENDATION = (
    "You are ready to tackle this skill! Your prerequisite knowledge is solid."
)
UNKNOWN_SKILLS_RECOMMENDATION = (
    "Practice these foundational skills first: {names}. "
    "These are essential prerequisites you haven't explored yet."
)
LEARNING_SKILLS_RECOMMENDATION = (
    "Strengthen your understanding of: {names}. "
    "You've started learning these, but more practice will help."
)
SINGLE_WEAK_RECOMMENDATION = (
    "Focus on mastering {name} before moving forward. "
    "This will make the main skill much easier."
)
FEW_WEAK_RECOMMENDATION = (
    "Practice these skills one at a time. "
    "Start with the most fundamental skill and work your way up."
)
MANY_WEAK_RECOMMENDATION = (
    "You have several prerequisite skills to practice. "
    "Don't worry, we'll guide you through them step by step!"
)
