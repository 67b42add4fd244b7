from typing import Optional

from fastapi import Header, HTTPException, Request

from prereq_tutor.errors import TutorError
from prereq_tutor.logging_utils import StructuredLogger, generate_request_id
from prereq_tutor.metrics import tutor_errors_total
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.session.service import SessionRegistry
from prereq_tutor.services.session.store import DocumentStore
from prereq_tutor.services.skill_graph.service import SkillGraphResolver

logger = StructuredLogger("api")


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Learner id from the X-User-Id header.

    Raises:
        HTTPException: If the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id.strip()


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_request_id()


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_resolver(request: Request) -> SkillGraphResolver:
    return request.app.state.resolver


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_tracker(request: Request) -> ProficiencyTracker:
    return request.app.state.tracker


def to_http_error(error: Exception, operation: str, request_id: str) -> HTTPException:
    """Map a handler failure to its HTTP response."""
    if isinstance(error, TutorError):
        tutor_errors_total.labels(error_type=type(error).__name__).inc()
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            f"Failed to {operation}",
            context={"error": str(error), "error_type": type(error).__name__},
            request_id=request_id,
        )
        return HTTPException(status_code=error.status_code, detail=error.user_message)

    tutor_errors_total.labels(error_type="internal").inc()
    logger.error(
        f"Internal error while trying to {operation}",
        context={"error": str(error), "error_type": type(error).__name__},
        request_id=request_id,
    )
    return HTTPException(status_code=500, detail=f"Internal error: {str(error)}")
