from typing import Callable, Optional

from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import ValidationResult, ViolationType
from prereq_tutor.services.response_validation.prompts import (
    ANSWER_REVEAL_PATTERN,
    CALCULATION_PATTERN,
    COMPLETE_FORMULA_PATTERN,
    CONCLUSION_PATTERN,
    FALLBACK_CONTEXT_SUFFIX,
    FALLBACK_RESPONSES,
    FINAL_ANSWER_WORDS_PATTERN,
    LATEX_EQUATION_PATTERN,
    NUMERIC_EQUATION_PATTERN,
    NUMERIC_RESULT_PATTERN,
    QUESTION_CONTEXT_PATTERN,
    RESULT_IMPLICATION_PATTERN,
    STEP_SEQUENCE_PATTERN,
    STRICTER_GUIDANCE,
    STRICTER_PROMPT,
    SUBSTITUTE_NUMBER_PATTERN,
    VALUE_REVEAL_PATTERN,
    VIOLATION_DESCRIPTIONS,
    VIOLATION_GUIDANCE,
)
from prereq_tutor.services.selection import RoundRobinSelector, TemplateSelector

logger = StructuredLogger("response_validation")

_default_selector = RoundRobinSelector()


def _numeric_equation(text: str, original: str) -> bool:
    if not NUMERIC_EQUATION_PATTERN.search(text):
        return False
    # "Does x = 5 work?" is a question, unless the "=" comes before any "?"
    return "?" not in text or text.index("=") < text.index("?")


def _step_by_step(text: str, original: str) -> bool:
    return bool(STEP_SEQUENCE_PATTERN.search(text) and NUMERIC_RESULT_PATTERN.search(text))


def _direct_calculation(text: str, original: str) -> bool:
    if not CALCULATION_PATTERN.search(text) or "?" in text:
        return False
    return not QUESTION_CONTEXT_PATTERN.search(text)


def _answer_substitution(text: str, original: str) -> bool:
    return bool(
        SUBSTITUTE_NUMBER_PATTERN.search(text) and FINAL_ANSWER_WORDS_PATTERN.search(text)
    )


# Ordered: the first detector that fires decides the violation type
DETECTORS: list[tuple[ViolationType, float, Callable[[str, str], bool]]] = [
    (ViolationType.NUMERIC_EQUATION, 0.95, _numeric_equation),
    (ViolationType.ANSWER_REVEAL, 0.98, lambda t, o: bool(ANSWER_REVEAL_PATTERN.search(t))),
    (ViolationType.CONCLUSION_WITH_ANSWER, 0.92, lambda t, o: bool(CONCLUSION_PATTERN.search(t))),
    (
        ViolationType.COMPLETE_FORMULA_REVEAL,
        0.90,
        lambda t, o: bool(COMPLETE_FORMULA_PATTERN.search(t)),
    ),
    (ViolationType.STEP_BY_STEP_SOLUTION, 0.88, _step_by_step),
    (ViolationType.DIRECT_CALCULATION, 0.85, _direct_calculation),
    (ViolationType.ANSWER_SUBSTITUTION, 0.80, _answer_substitution),
    # LaTeX delimiters are matched against the original casing
    (ViolationType.LATEX_NUMERIC_ANSWER, 0.93, lambda t, o: bool(LATEX_EQUATION_PATTERN.search(o))),
    (ViolationType.VALUE_REVEAL, 0.90, lambda t, o: bool(VALUE_REVEAL_PATTERN.search(t))),
    (
        ViolationType.RESULT_IMPLICATION,
        0.87,
        lambda t, o: bool(RESULT_IMPLICATION_PATTERN.search(t)),
    ),
]


def validate_response(text: str) -> ValidationResult:
    """
    Scan generated tutor text for a leaked final answer.

    Returns the first violation found, or a valid result with confidence 1.0.
    """
    original = text or ""
    lowered = original.lower()

    for violation_type, confidence, detect in DETECTORS:
        try:
            fired = detect(lowered, original)
        except Exception as e:
            logger.error(
                "Response detector failed",
                context={"detector": violation_type.value, "error": str(e)},
            )
            continue
        if fired:
            return ValidationResult(
                is_valid=False, violation_type=violation_type, confidence=confidence
            )

    return ValidationResult(is_valid=True, confidence=1.0)


def describe_violation(violation_type: Optional[ViolationType | str]) -> str:
    try:
        return VIOLATION_DESCRIPTIONS[ViolationType(violation_type)]
    except (ValueError, KeyError):
        return "Unknown violation type"


def fallback_response(
    problem_context: Optional[str] = None,
    selector: Optional[TemplateSelector] = None,
) -> str:
    """Context-free Socratic reply used when regeneration cannot be trusted."""
    response = (selector or _default_selector).choose(FALLBACK_RESPONSES)
    if problem_context:
        response += FALLBACK_CONTEXT_SUFFIX
    return response


def get_stricter_prompt(violation_type: Optional[ViolationType | str] = None) -> str:
    """Regeneration system prompt, with guidance for the detected violation."""
    prompt = STRICTER_PROMPT
    if not violation_type:
        return prompt

    try:
        violation = ViolationType(violation_type)
    except ValueError:
        return f"{prompt}\n\nSPECIFIC VIOLATION DETECTED: {violation_type}\n"

    prompt += f"\n\nSPECIFIC VIOLATION DETECTED: {violation.value}\n"
    return prompt + STRICTER_GUIDANCE[VIOLATION_GUIDANCE[violation]] + "\n"
