import re

# === Stuck signals ===

CONFUSION_PATTERN = re.compile(
    r"\b(help|stuck|confused|don't know|idk|don't understand|lost|what|huh|\?{2,})\b",
    re.IGNORECASE,
)

MINIMAL_RESPONSE_PATTERN = re.compile(r"^[\s?!.]*$")

# === Progress signals ===

REASONING_PATTERN = re.compile(
    r"\b(because|so|if|then|would|could|think|believe|maybe|suppose|let me|i see"
    r"|understand|right|makes sense)\b",
    re.IGNORECASE,
)

ENGAGED_QUESTION_PATTERN = re.compile(
    r"\b(why|how|when|where|which|would it|could i|should i|what if|does that mean)\b",
    re.IGNORECASE,
)

MATH_REASONING_PATTERN = re.compile(
    r"\b(equals|multiply|divide|add|subtract|solve|calculate|formula|equation|variable)\b",
    re.IGNORECASE,
)

STUCK_LEVEL_DESCRIPTIONS = {
    0: "Not stuck - Student just starting or engaged",
    1: "Slightly uncertain - Use vague hints",
    2: "Stuck - Provide more specific guidance",
}

# === Hint level guidance appended to the tutor system prompt ===

HINT_LEVEL_2_PROMPT = """

CURRENT STUDENT STATE: The student seems stuck and needs more targeted guidance.

ADJUSTED APPROACH:
- Move from open-ended hints to specific ones
- Name the relevant concept or theorem, but do not list the exact steps
- Example: instead of "What do you know about triangles?", ask "What formula connects a triangle's area to its base and height?"
- Keep asking questions, just narrower ones that point at the method

Even with sharper hints, NEVER give the final answer or solve the problem for them."""

HINT_LEVEL_3_PROMPT = """

CURRENT STUDENT STATE: The student is clearly struggling and needs a concrete next step.

ADJUSTED APPROACH:
- Tell them which concept, formula or method to use and let them carry it out
- Example: "The first step is to isolate the variable. Try subtracting 5 from both sides. What do you get?"
- After giving the step, ask them to try it now

IMPORTANT:
- NEVER solve the problem for them
- NEVER state the final numerical answer
- Give the next concrete step only, then return to Socratic questioning once they act on it"""
