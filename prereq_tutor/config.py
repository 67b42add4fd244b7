import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_PACKAGE_DIR = Path(__file__).parent


class Config:
    class API_KEYS:
        OPENAI = os.getenv("OPENAI_API_KEY")

    # === Language model ===

    class LLM:
        BASE_URL = os.getenv("LLM_BASE_URL")
        MODEL_NAME = os.getenv("LLM_MODEL_NAME", "gpt-4o")
        TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
        _max_tokens = os.getenv("LLM_MAX_TOKENS", "1000")
        MAX_TOKENS: int | None = int(_max_tokens) if _max_tokens else None
        TIMEOUT = float(os.getenv("LLM_TIMEOUT", "10"))
        MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "1"))
        RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "1.0"))

    class PRACTICE:
        MODEL_NAME = os.getenv("PRACTICE_MODEL_NAME", "gpt-4o-mini")
        TEMPERATURE = float(os.getenv("PRACTICE_TEMPERATURE", "0.8"))
        CHECK_TEMPERATURE = float(os.getenv("PRACTICE_CHECK_TEMPERATURE", "0.3"))
        TIMEOUT = float(os.getenv("PRACTICE_TIMEOUT", "30"))
        PROBLEM_COUNT = int(os.getenv("PRACTICE_PROBLEM_COUNT", "5"))
        MIN_PROBLEMS = int(os.getenv("PRACTICE_MIN_PROBLEMS", "3"))
        MAX_PROBLEMS = int(os.getenv("PRACTICE_MAX_PROBLEMS", "10"))
        DEFAULT_GRADE_LEVEL = os.getenv("PRACTICE_DEFAULT_GRADE_LEVEL", "8th grade")

    # === Adaptive branching ===

    class BRANCHING:
        MAX_DEPTH = int(os.getenv("BRANCHING_MAX_DEPTH", "2"))
        MASTERY_THRESHOLD = float(os.getenv("BRANCHING_MASTERY_THRESHOLD", "0.6"))

    class STUCK:
        WINDOW = int(os.getenv("STUCK_WINDOW", "5"))
        SHORT_RESPONSE_CHARS = int(os.getenv("STUCK_SHORT_RESPONSE_CHARS", "10"))
        THOUGHTFUL_RESPONSE_CHARS = int(
            os.getenv("STUCK_THOUGHTFUL_RESPONSE_CHARS", "30")
        )
        REPETITION_SIMILARITY = float(os.getenv("STUCK_REPETITION_SIMILARITY", "0.8"))

    class SKILL_ANALYSIS:
        MODEL_NAME = os.getenv("SKILL_ANALYSIS_MODEL_NAME", "gpt-4o-mini")
        TEMPERATURE = float(os.getenv("SKILL_ANALYSIS_TEMPERATURE", "0.3"))
        MAX_TOKENS = int(os.getenv("SKILL_ANALYSIS_MAX_TOKENS", "500"))
        TIMEOUT = float(os.getenv("SKILL_ANALYSIS_TIMEOUT", "15"))

    class SKILL_GRAPH:
        PATH = os.getenv(
            "SKILL_GRAPH_PATH", str(_PACKAGE_DIR / "data" / "skill_graph.json")
        )

    # === Sessions & persistence ===

    class SESSION:
        RECOVERY_WINDOW_SECONDS = int(
            os.getenv("SESSION_RECOVERY_WINDOW_SECONDS", "3600")
        )
        DEBOUNCE_SECONDS = float(os.getenv("SESSION_DEBOUNCE_SECONDS", "5"))
        ABANDON_AFTER_HOURS = float(os.getenv("SESSION_ABANDON_AFTER_HOURS", "24"))
        CLEANUP_INTERVAL_SECONDS = int(
            os.getenv("SESSION_CLEANUP_INTERVAL_SECONDS", "3600")
        )

    class STORE:
        BACKEND = os.getenv("STORE_BACKEND", "memory")
        REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
        REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
        REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
        REDIS_DB = int(os.getenv("REDIS_DB", "0"))
        KEY_PREFIX = os.getenv("STORE_KEY_PREFIX", "prereq_tutor")

    # === Logging ===

    class LOGGING:
        DIR = os.getenv("LOG_DIR") or None
        KEEP_DAYS = int(os.getenv("LOG_KEEP_DAYS", "7"))
