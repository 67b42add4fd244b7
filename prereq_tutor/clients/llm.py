import asyncio
import json
import re
import time
from typing import Any, Optional

import openai
from openai import OpenAI
from pydantic import ValidationError

from prereq_tutor.config import Config
from prereq_tutor.errors import LLMTimeoutError, UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import (
    tutor_llm_calls_total,
    tutor_llm_duration_seconds,
    tutor_llm_errors_total,
)
from prereq_tutor.models.schemas import StructuredTutorReply

logger = StructuredLogger("llm")

# OpenAI-compatible client; None when no key is configured
llm_client: OpenAI | None = (
    OpenAI(
        api_key=Config.API_KEYS.OPENAI,
        base_url=Config.LLM.BASE_URL,
        timeout=Config.PRACTICE.TIMEOUT,
    )
    if Config.API_KEYS.OPENAI
    else None
)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

ERROR_MESSAGES = {
    "timeout": "Request timed out. Please try again.",
    "rate_limit": "Service is busy due to rate limits. Please try again in a moment.",
    "authentication": "Server configuration error. Please contact support.",
    "invalid_request": "Invalid request. Please check your input and try again.",
    "network": "Network error. Please check your connection and try again.",
    "unknown": "Failed to generate response. Please try again.",
}


def classify_llm_error(error: BaseException) -> str:
    if isinstance(error, (asyncio.TimeoutError, openai.APITimeoutError)):
        return "timeout"
    if isinstance(error, openai.RateLimitError):
        return "rate_limit"
    if isinstance(error, openai.AuthenticationError):
        return "authentication"
    if isinstance(error, openai.BadRequestError):
        return "invalid_request"
    if isinstance(error, openai.APIConnectionError):
        return "network"
    return "unknown"


def _clean_content(content: str) -> str:
    # Reasoning models may emit a <think> preamble
    if "</think>" in content:
        content = content.split("</think>", 1)[1]
    return content.strip()


async def chat_completion(
    messages: list[dict[str, str]],
    purpose: str = "tutor",
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    json_output: bool = False,
    client: Optional[OpenAI] = None,
    request_id: Optional[str] = None,
) -> str:
    """
    Call the language model with a hard timeout and linear-backoff retries.

    Args:
        messages: Ordered role-tagged messages
        purpose: Metrics label (tutor, regenerate, practice, check)
        json_output: Ask the model for a JSON object

    Returns:
        Generated text

    Raises:
        LLMTimeoutError: Every attempt exceeded the timeout
        UpstreamError: The model failed or is not configured
    """
    client = client or llm_client
    if client is None:
        tutor_llm_errors_total.labels(error_type="not_configured").inc()
        raise UpstreamError(ERROR_MESSAGES["authentication"])

    timeout = Config.LLM.TIMEOUT if timeout is None else timeout
    max_retries = Config.LLM.MAX_RETRIES if max_retries is None else max_retries
    backoff_seconds = (
        Config.LLM.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    )

    call_params: dict[str, Any] = {
        "model": model or Config.LLM.MODEL_NAME,
        "messages": messages,
        "temperature": Config.LLM.TEMPERATURE if temperature is None else temperature,
    }
    max_tokens = Config.LLM.MAX_TOKENS if max_tokens is None else max_tokens
    if max_tokens is not None:
        call_params["max_tokens"] = max_tokens
    if json_output:
        call_params["response_format"] = {"type": "json_object"}

    last_error: BaseException | None = None
    for attempt in range(max_retries + 1):
        start_time = time.time()
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(client.chat.completions.create, **call_params),
                timeout=timeout,
            )
            tutor_llm_calls_total.labels(purpose=purpose).inc()
            tutor_llm_duration_seconds.labels(purpose=purpose).observe(
                time.time() - start_time
            )

            content = response.choices[0].message.content if response.choices else None
            if not content or not content.strip():
                raise UpstreamError("No response from language model")
            return _clean_content(content)
        except Exception as e:
            last_error = e
            logger.warning(
                "LLM call attempt failed",
                context={
                    "purpose": purpose,
                    "attempt": attempt + 1,
                    "error_type": type(e).__name__,
                    "error": str(e)[:200],
                },
                request_id=request_id,
            )
            if attempt < max_retries:
                await asyncio.sleep(backoff_seconds * (attempt + 1))

    error_type = classify_llm_error(last_error)
    tutor_llm_errors_total.labels(error_type=error_type).inc()
    logger.error(
        "LLM call failed after retries",
        context={"purpose": purpose, "attempts": max_retries + 1, "error_type": error_type},
        request_id=request_id,
    )
    if error_type == "timeout":
        raise LLMTimeoutError(ERROR_MESSAGES["timeout"]) from last_error
    raise UpstreamError(ERROR_MESSAGES[error_type]) from last_error


def parse_json_payload(text: str) -> Any:
    """Parse JSON from model output, tolerating a fenced code block."""
    stripped = text.strip()
    fenced = _FENCE_PATTERN.match(stripped)
    if fenced:
        stripped = fenced.group(1)
    return json.loads(stripped)


def parse_structured_reply(text: str) -> StructuredTutorReply:
    """
    Parse the five-field tutor reply.

    Anything that is not a JSON object with a tutorResponse is treated as
    plain tutor text with no practice recommendation.
    """
    try:
        payload = parse_json_payload(text)
        if isinstance(payload, dict) and payload.get("tutorResponse"):
            return StructuredTutorReply.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug("Reply is not structured JSON", context={"error": str(e)[:100]})

    return StructuredTutorReply(tutor_response=text.strip())
