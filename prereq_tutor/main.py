import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request as FastAPIRequest

from prereq_tutor.config import Config
from prereq_tutor.errors import UpstreamError
from prereq_tutor.logging_utils import StructuredLogger, generate_request_id
from prereq_tutor.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    service_health_status,
    tutor_errors_total,
)
from prereq_tutor.routes.admin import router as admin_router
from prereq_tutor.routes.sessions import router as sessions_router
from prereq_tutor.routes.skills import router as skills_router
from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.session.service import (
    SessionRegistry,
    start_cleanup,
    stop_cleanup,
)
from prereq_tutor.services.session.store import create_store
from prereq_tutor.services.skill_graph.service import SkillGraphResolver, json_file_loader

logger = StructuredLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    logger.info("Starting app...", context={"store_backend": Config.STORE.BACKEND})

    store = create_store(Config.STORE.BACKEND)
    resolver = SkillGraphResolver(json_file_loader(Config.SKILL_GRAPH.PATH))
    registry = SessionRegistry(store)

    app.state.store = store
    app.state.resolver = resolver
    app.state.registry = registry
    app.state.tracker = ProficiencyTracker(store)

    health = 2
    try:
        await resolver.load_graph()
    except UpstreamError as e:
        # Served lazily on first request
        health = 1
        logger.error("Skill graph unavailable at startup", context={"error": str(e)})

    start_cleanup(store)

    service_health_status.labels(service="prereq_tutor").set(health)
    logger.info("App ready")

    yield

    # Shutdown
    logger.info("Shutting down...")
    stop_cleanup()
    await registry.flush_all()
    service_health_status.labels(service="prereq_tutor").set(0)
    logger.info("App stopped")


app = FastAPI(title="Prerequisite Math Tutor API", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(skills_router)
app.include_router(sessions_router)


@app.middleware("http")
async def logging_and_metrics_middleware(request: FastAPIRequest, call_next):
    """Log requests and record HTTP metrics."""
    request_id = generate_request_id()
    start_time = time.time()

    is_metrics_endpoint = request.url.path == "/metrics"

    if not is_metrics_endpoint:
        logger.info(
            "Incoming request",
            context={
                "endpoint": request.url.path,
                "method": request.method,
                "client": request.client.host if request.client else "unknown",
            },
            request_id=request_id,
        )

    request.state.request_id = request_id

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        if not is_metrics_endpoint:
            http_requests_total.labels(
                service="prereq_tutor",
                endpoint=request.url.path,
                method=request.method,
                status=response.status_code,
            ).inc()

            http_request_duration_seconds.labels(
                service="prereq_tutor",
                endpoint=request.url.path,
                method=request.method,
            ).observe(duration)

            logger.info(
                "Request completed",
                context={
                    "endpoint": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_seconds": round(duration, 3),
                },
                request_id=request_id,
            )

        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        duration = time.time() - start_time

        if not is_metrics_endpoint:
            http_requests_total.labels(
                service="prereq_tutor",
                endpoint=request.url.path,
                method=request.method,
                status=500,
            ).inc()

            http_request_duration_seconds.labels(
                service="prereq_tutor",
                endpoint=request.url.path,
                method=request.method,
            ).observe(duration)

            tutor_errors_total.labels(error_type=type(e).__name__).inc()

        logger.error(
            "Request failed",
            context={
                "endpoint": request.url.path,
                "method": request.method,
                "error": str(e),
                "duration_seconds": round(duration, 3),
            },
            request_id=request_id,
        )
        raise
