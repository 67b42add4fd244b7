PROBLEM_GENERATOR_SYSTEM_PROMPT = (
    "You are an expert math tutor who generates practice problems in JSON format. "
    "Always return valid JSON only. Format all math with $ delimiters."
)

PROBLEM_GENERATION_PROMPT = """Create practice problems for a student.

Skill: {skill_name}
Description: {skill_description}
Target grade level: {grade_level}

Generate {count} problems for this skill. Each problem should:
1. Suit the grade level
2. Get gradually harder (first problem easiest)
3. Include a clear statement, a hint that does not give away the answer, and a worked solution

Return ONLY a JSON object of this form:
{{"problems": [{{"text": "problem statement", "hint": "helpful hint", "solution": "worked solution"}}]}}

Use $ for inline math (e.g., $x + 5 = 12$)."""

ANSWER_CHECK_SYSTEM_PROMPT = "You validate math answers and return strict JSON."

ANSWER_CHECK_PROMPT = """You are checking whether a student's answer is correct.

Problem: {problem}
Expected Solution: {solution}
Student's Answer: {answer}

Decide whether the student's answer is mathematically equivalent to the expected solution.
Accept equivalent forms (fraction or decimal, reordered terms, unsimplified but equal expressions).

Return JSON only:
{{"correct": true or false, "feedback": "1-2 sentences of encouraging, constructive feedback"}}"""
