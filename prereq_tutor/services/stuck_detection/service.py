from typing import Sequence

from prereq_tutor.config import Config
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import ConversationMessage, MessageRole
from prereq_tutor.services.stuck_detection.prompts import (
    CONFUSION_PATTERN,
    ENGAGED_QUESTION_PATTERN,
    HINT_LEVEL_2_PROMPT,
    HINT_LEVEL_3_PROMPT,
    MATH_REASONING_PATTERN,
    MINIMAL_RESPONSE_PATTERN,
    REASONING_PATTERN,
    STUCK_LEVEL_DESCRIPTIONS,
)

logger = StructuredLogger("stuck_detection")

MAX_STUCK_LEVEL = 3


def _stuck_score(content: str) -> int:
    score = 0
    if len(content) < Config.STUCK.SHORT_RESPONSE_CHARS:
        score += 1
    if CONFUSION_PATTERN.search(content):
        score += 1
    if MINIMAL_RESPONSE_PATTERN.match(content) or content in ("?", "??"):
        score += 2
    return score


def _progress_score(content: str) -> int:
    score = 0
    if len(content) >= Config.STUCK.THOUGHTFUL_RESPONSE_CHARS:
        score += 1
    if REASONING_PATTERN.search(content):
        score += 1
    if ENGAGED_QUESTION_PATTERN.search(content):
        score += 1
    if MATH_REASONING_PATTERN.search(content):
        score += 1
    return score


def are_similar_messages(first: str, second: str) -> bool:
    """Jaccard similarity of the two word sets meets the repetition threshold."""
    words_first = set(first.lower().split())
    words_second = set(second.lower().split())
    union = words_first | words_second
    if not union:
        return True
    similarity = len(words_first & words_second) / len(union)
    return similarity >= Config.STUCK.REPETITION_SIMILARITY


def analyze_stuck_level(messages: Sequence[ConversationMessage]) -> int:
    """
    Score the recent conversation into a stuck level from 0 to 3.

    Only learner messages in the last few turns count. Clear progress
    resets the level to 0, partial progress halves the stuck score, and
    two independent stuck signals are needed before reaching level 2.
    """
    try:
        recent = list(messages)[-Config.STUCK.WINDOW:]
        learner_texts = [
            m.content.strip() for m in recent if m.role == MessageRole.USER
        ]
        if not learner_texts:
            return 0

        stuck = 0
        progress = 0
        for i, content in enumerate(learner_texts):
            stuck += _stuck_score(content)
            progress += _progress_score(content)
            if i > 0 and are_similar_messages(content, learner_texts[i - 1]):
                stuck += 1

        if progress >= 2:
            return 0
        if progress >= 1 and stuck > 0:
            stuck //= 2
        if stuck < 2:
            return min(stuck, 1)
        return min(stuck, MAX_STUCK_LEVEL)
    except Exception as e:
        logger.error(
            "Stuck level analysis failed",
            context={"error": str(e), "error_type": type(e).__name__},
        )
        return 0


def describe_stuck_level(level: int) -> str:
    return STUCK_LEVEL_DESCRIPTIONS.get(
        level, f"Very stuck (level {level}) - Give concrete actionable hints"
    )


def get_hint_level_prompt(stuck_level: int) -> str:
    """Extra system prompt guidance for the detected stuck level."""
    if stuck_level <= 1:
        return ""
    if stuck_level == 2:
        return HINT_LEVEL_2_PROMPT
    return HINT_LEVEL_3_PROMPT
