import re

from prereq_tutor.models.schemas import ViolationType

NUMERIC_EQUATION_PATTERN = re.compile(
    r"(?:^|\s)([a-z]|answer|result|solution)\s*=\s*[-+]?\d+(?:\.\d+)?(?:\s|$|[.,!?])"
)
ANSWER_REVEAL_PATTERN = re.compile(r"(the\s+)?(answer|solution|result)\s+is\s+[-+]?\d+")
CONCLUSION_PATTERN = re.compile(
    r"(therefore|thus|so|hence)[,\s]+(.*\s+)?(equals?|=)\s*[-+]?\d+"
)
COMPLETE_FORMULA_PATTERN = re.compile(
    r"(?:use|apply|plug\s+into)\s+(?:the\s+)?[a-z\s]+formula\s*[:]\s*[a-z]\s*="
)
STEP_SEQUENCE_PATTERN = re.compile(
    r"(first|step\s+1)[,\s].+(then|next|step\s+2)[,\s].+[-+]?\d+"
)
NUMERIC_RESULT_PATTERN = re.compile(r"(?:giving|yields?|results?\s+in|equals?)\s+[-+]?\d+")
CALCULATION_PATTERN = re.compile(r"\d+\s*[+\-*/×÷]\s*\d+\s*=\s*\d+")
QUESTION_CONTEXT_PATTERN = re.compile(r"does|is|would|what\s+(?:is|does)")
SUBSTITUTE_NUMBER_PATTERN = re.compile(r"substitute\s+[a-z]\s*=\s*[-+]?\d+")
FINAL_ANSWER_WORDS_PATTERN = re.compile(r"(answer|solution|final|correct)", re.IGNORECASE)
LATEX_EQUATION_PATTERN = re.compile(r"\$+\s*[a-z]\s*=\s*[-+]?\d+(?:\.\d+)?\s*\$+")
VALUE_REVEAL_PATTERN = re.compile(
    r"(?:the\s+)?value\s+(?:of\s+)?[a-z]\s+(?:is|equals?|=)\s*[-+]?\d+"
)
RESULT_IMPLICATION_PATTERN = re.compile(
    r"(?:you\s+)?(?:get|gives?|obtains?|finds?)\s+[a-z]\s*=\s*[-+]?\d+"
)

VIOLATION_DESCRIPTIONS: dict[ViolationType, str] = {
    ViolationType.NUMERIC_EQUATION: 'Provided numeric equation (e.g., "x = 5")',
    ViolationType.ANSWER_REVEAL: 'Explicitly revealed the answer (e.g., "the answer is 5")',
    ViolationType.CONCLUSION_WITH_ANSWER: (
        'Drew conclusion with numeric answer (e.g., "therefore x = 5")'
    ),
    ViolationType.COMPLETE_FORMULA_REVEAL: (
        'Revealed complete formula with syntax (e.g., "use formula: x = ...")'
    ),
    ViolationType.STEP_BY_STEP_SOLUTION: "Provided step-by-step solution with final answer",
    ViolationType.DIRECT_CALCULATION: 'Showed direct calculation result (e.g., "5 + 3 = 8")',
    ViolationType.ANSWER_SUBSTITUTION: "Suggested substituting the final answer value",
    ViolationType.LATEX_NUMERIC_ANSWER: "Provided numeric answer in LaTeX format",
    ViolationType.VALUE_REVEAL: 'Explicitly stated the value (e.g., "the value of x is 5")',
    ViolationType.RESULT_IMPLICATION: 'Implied the result (e.g., "you get x = 5")',
}

FALLBACK_RESPONSES: list[str] = [
    "Let me guide you through this with some questions instead. What information are you given in this problem?",
    "Great question! Let's think about this step by step. What's the first thing we need to understand about this problem?",
    "I want to make sure you discover this yourself. What do you know about problems like this one?",
    "Let's approach this together. What concepts or methods have you learned that might apply here?",
    "Good thinking! Instead of giving you the answer, let me ask: what's the relationship between the values in this problem?",
]

FALLBACK_CONTEXT_SUFFIX = " Think about what the problem is asking you to find."

STRICTER_PROMPT = """WARNING: Your previous reply gave the student a direct answer. That is not allowed.

You are a Socratic math tutor. You guide with questions. You must NEVER:
- state a numeric solution ("x = 5", "the answer is 5")
- write out a worked solution that ends in the answer
- show a complete formula with its full syntax
- do a calculation for the student ("5 + 3 = 8")
- give the final answer in any form (equation, words or LaTeX)

WHAT TO DO INSTEAD:
1. Ask questions: "What operation would help isolate the variable?"
2. Guide without solving: "Try subtracting 5 from both sides. What do you get?"
3. Validate their thinking: "Good reasoning! What's your next step?"

Example for "Solve 2x + 5 = 15":
FORBIDDEN: "Subtract 5 to get 2x = 10, then divide by 2, so x = 5."
FORBIDDEN: "Therefore, x equals 5."
REQUIRED: "What's the first step to get x by itself? What could you do about that + 5?"

Even when the student is very stuck you may say WHAT to do next, but they must DO it and tell you the result.

Regenerate your reply following these rules exactly."""

STRICTER_GUIDANCE: dict[str, str] = {
    "equation_form": (
        'You gave a numeric answer in equation form (e.g., "x = 5"). Never state what '
        "the variable equals. Ask the student what they get after each operation."
    ),
    "stated_answer": (
        'You stated "the answer is..." or concluded with the answer. Guide the '
        "student to discover it instead of telling them."
    ),
    "formula": (
        "You revealed a complete formula. Naming a formula is fine, writing out its "
        "full syntax is not. Ask whether they remember it or describe it conceptually."
    ),
    "worked_solution": (
        "You wrote a step-by-step solution. Guide each step by ASKING what to do, "
        "never by solving it."
    ),
    "calculation": (
        'You did a calculation for the student (e.g., "5 + 3 = 8"). Ask them to '
        'calculate it: "What is 5 + 3?"'
    ),
    "substitution": (
        "You suggested substituting the final answer. Test values are fine for "
        "checking understanding, the actual solution is not."
    ),
}

VIOLATION_GUIDANCE: dict[ViolationType, str] = {
    ViolationType.NUMERIC_EQUATION: "equation_form",
    ViolationType.LATEX_NUMERIC_ANSWER: "equation_form",
    ViolationType.VALUE_REVEAL: "equation_form",
    ViolationType.RESULT_IMPLICATION: "equation_form",
    ViolationType.ANSWER_REVEAL: "stated_answer",
    ViolationType.CONCLUSION_WITH_ANSWER: "stated_answer",
    ViolationType.COMPLETE_FORMULA_REVEAL: "formula",
    ViolationType.STEP_BY_STEP_SOLUTION: "worked_solution",
    ViolationType.DIRECT_CALCULATION: "calculation",
    ViolationType.ANSWER_SUBSTITUTION: "substitution",
}
