from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from prereq_tutor.logging_utils import StructuredLogger, get_logs_by_request_id

router = APIRouter()
logger = StructuredLogger("api")


@router.get("/health")
async def health(request: Request):
    """Health check covering the document store, skill graph and live sessions."""
    state = request.app.state
    store_ok = await state.store.ping()
    graph = state.resolver.cached_graph
    graph_ok = graph is not None

    status = "healthy" if store_ok and graph_ok else "degraded"
    if not store_ok:
        logger.warning("Health check: document store unreachable")

    return {
        "status": status,
        "service": "prereq_tutor",
        "components": {
            "store": {"connected": store_ok, "backend": type(state.store).__name__},
            "skill_graph": {
                "loaded": graph_ok,
                "version": graph.version if graph else None,
                "skills": len(graph.skills) if graph else 0,
            },
            "sessions": {"active_sessions": state.registry.active_count()},
        },
    }


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/logs/{request_id}")
async def get_logs(request_id: str):
    """Get logs filtered by request ID"""
    logs = get_logs_by_request_id(request_id)
    return {"request_id": request_id, "logs": logs, "log_count": len(logs)}
