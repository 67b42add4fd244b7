import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import ValidationError

from prereq_tutor.errors import NotFoundError, UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import tutor_skill_graph_loads_total
from prereq_tutor.models.schemas import (
    PrerequisiteSet,
    Skill,
    SkillGraph,
    SkillSummary,
)

logger = StructuredLogger("skill_graph")

Layer = Literal[1, 2]
GraphLoader = Callable[[], Awaitable[Optional[dict[str, Any]]]]


def parse_graph_document(document: Optional[dict[str, Any]]) -> SkillGraph:
    """
    Build a SkillGraph from its stored document.

    Expected shape:
        {"metadata": {"version": "...", "description": "..."},
         "skills": {"<id>": {"name": ..., "layer1": [...], ...}},
         "skill_categories": {...}}

    Raises:
        UpstreamError: document missing, skills map missing, or no version
    """
    if not document:
        raise UpstreamError("Skill graph document not found")

    skills_raw = document.get("skills")
    if not isinstance(skills_raw, dict):
        raise UpstreamError("Invalid skill graph structure: missing skills")

    metadata = document.get("metadata") or {}
    version = metadata.get("version")
    if not version:
        raise UpstreamError("Invalid skill graph structure: missing metadata.version")

    try:
        skills = {
            skill_id: Skill(**{**data, "id": skill_id})
            for skill_id, data in skills_raw.items()
        }
        return SkillGraph(
            version=str(version),
            skills=skills,
            description=metadata.get("description"),
            skill_categories=document.get("skill_categories") or {},
        )
    except (TypeError, ValidationError) as e:
        raise UpstreamError(f"Invalid skill definition in graph: {e}") from e


def json_file_loader(path: str | Path) -> GraphLoader:
    """Loader reading the graph document from a JSON file."""

    async def _load() -> Optional[dict[str, Any]]:
        file_path = Path(path)
        if not file_path.exists():
            return None
        text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        return json.loads(text)

    return _load


def store_loader(store, collection: str = "skill_graph", doc_id: str = "current") -> GraphLoader:
    """Loader reading the graph document from the document store."""

    async def _load() -> Optional[dict[str, Any]]:
        return await store.get(collection, doc_id)

    return _load


class SkillGraphResolver:
    """
    Cache for the shared skill graph.

    The graph is loaded once through the injected loader. Concurrent first
    callers await the same in-flight task.
    """

    def __init__(self, loader: GraphLoader):
        self._loader = loader
        self._graph: Optional[SkillGraph] = None
        self._loading: Optional[asyncio.Task] = None

    async def load_graph(self) -> SkillGraph:
        if self._graph is not None:
            return self._graph

        if self._loading is None:
            self._loading = asyncio.ensure_future(self._fetch())

        return await asyncio.shield(self._loading)

    async def _fetch(self) -> SkillGraph:
        try:
            document = await self._loader()
            graph = parse_graph_document(document)
        except UpstreamError as e:
            tutor_skill_graph_loads_total.labels(status="failure").inc()
            logger.error("Skill graph load failed", context={"error": str(e)})
            raise
        except Exception as e:
            tutor_skill_graph_loads_total.labels(status="failure").inc()
            logger.error(
                "Skill graph load failed",
                context={"error": str(e), "error_type": type(e).__name__},
            )
            raise UpstreamError(f"Failed to load skill graph: {e}") from e
        finally:
            self._loading = None

        self._graph = graph
        tutor_skill_graph_loads_total.labels(status="success").inc()
        logger.info(
            "Skill graph loaded",
            context={"version": graph.version, "skills": len(graph.skills)},
        )
        return graph

    @property
    def cached_graph(self) -> Optional[SkillGraph]:
        return self._graph

    def clear_cache(self) -> None:
        self._graph = None
        logger.info("Skill graph cache cleared")

    # ==================== Query Methods ====================

    async def get_skill(self, skill_id: str) -> Skill:
        graph = await self.load_graph()
        skill = graph.skills.get(skill_id)
        if skill is None:
            raise NotFoundError(f"Skill not found: {skill_id}")
        return skill

    async def get_prerequisites(self, skill_id: str, layer: Layer) -> PrerequisiteSet:
        """Prerequisite ids for a layer; ids missing from the graph are dropped."""
        graph = await self.load_graph()
        skill = graph.skills.get(skill_id)
        if skill is None:
            raise NotFoundError(f"Skill not found: {skill_id}")

        prerequisite_ids = skill.layer1 if layer == 1 else skill.layer2
        resolved: list[SkillSummary] = []
        for prereq_id in prerequisite_ids:
            prereq = graph.skills.get(prereq_id)
            if prereq is None:
                logger.warning(
                    "Prerequisite skill missing from graph",
                    context={"skill_id": skill_id, "prerequisite": prereq_id, "layer": layer},
                )
                continue
            resolved.append(
                SkillSummary(id=prereq.id, name=prereq.name, description=prereq.description)
            )

        return PrerequisiteSet(skill_ids=[s.id for s in resolved], skills=resolved)

    async def get_diagnostics(self, skill_id: str, layer: Layer) -> list[str]:
        skill = await self.get_skill(skill_id)
        questions = skill.diagnostics.layer1 if layer == 1 else skill.diagnostics.layer2
        return list(questions)

    async def get_all_skills(self) -> list[SkillSummary]:
        graph = await self.load_graph()
        return [
            SkillSummary(id=skill.id, name=skill.name, description=skill.description)
            for skill in graph.skills.values()
        ]

    async def validate_exists(self, skill_id: str) -> bool:
        """True if the skill is in the graph; False on any failure."""
        try:
            graph = await self.load_graph()
        except Exception as e:
            logger.warning(
                "Skill existence check failed",
                context={"skill_id": skill_id, "error": str(e)},
            )
            return False
        return skill_id in graph.skills

    async def build_diagnostic_set(self, skill_id: str, max_questions: int = 3) -> list[str]:
        """Up to max_questions diagnostic questions, direct layer first."""
        questions = await self.get_diagnostics(skill_id, 1)
        if len(questions) < max_questions:
            questions += await self.get_diagnostics(skill_id, 2)
        return questions[:max_questions]
