from typing import Optional, Sequence

from pydantic import ValidationError

from prereq_tutor.errors import UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import tutor_proficiency_updates_total
from prereq_tutor.models.schemas import (
    ProficiencyLevel,
    ProficiencyMap,
    ProficiencyRecord,
    utc_now,
)
from prereq_tutor.services.session.store import DocumentStore

PROFICIENCY_COLLECTION = "proficiency"

logger = StructuredLogger("proficiency")


def calculate_proficiency_level(problems_solved: int, success_rate: float) -> ProficiencyLevel:
    """
    Level from practice volume and accuracy.

    Fewer than 5 problems is always "learning"; mastery needs at least 10
    problems at 90%, proficiency at least 5 at 70%.
    """
    if problems_solved == 0:
        return ProficiencyLevel.UNKNOWN
    if problems_solved < 5:
        return ProficiencyLevel.LEARNING
    if problems_solved >= 10 and success_rate >= 0.9:
        return ProficiencyLevel.MASTERED
    if success_rate >= 0.7:
        return ProficiencyLevel.PROFICIENT
    return ProficiencyLevel.LEARNING


class ProficiencyTracker:
    """Per-(learner, skill) proficiency records in the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _doc_id(user_id: str, skill_id: str) -> str:
        return f"{user_id}:{skill_id}"

    async def get_proficiency(self, user_id: str, skill_id: str) -> Optional[ProficiencyRecord]:
        document = await self.store.get(PROFICIENCY_COLLECTION, self._doc_id(user_id, skill_id))
        if document is None:
            return None
        try:
            return ProficiencyRecord.model_validate(document)
        except ValidationError as e:
            raise UpstreamError(f"Stored proficiency is malformed: {e}") from e

    async def get_proficiency_map(
        self, user_id: str, skill_ids: Optional[Sequence[str]] = None
    ) -> ProficiencyMap:
        """Records for the given skills (or all of the learner's skills). Missing skills are omitted."""
        if skill_ids is None:
            documents = await self.store.query(PROFICIENCY_COLLECTION, "user_id", [user_id])
            return {
                doc["skill_id"]: ProficiencyRecord.model_validate(doc)
                for _, doc in documents
                if "skill_id" in doc
            }

        proficiency: ProficiencyMap = {}
        for skill_id in skill_ids:
            record = await self.get_proficiency(user_id, skill_id)
            if record is not None:
                proficiency[skill_id] = record
        return proficiency

    async def update_proficiency(
        self,
        user_id: str,
        skill_id: str,
        correct: bool,
        request_id: Optional[str] = None,
    ) -> ProficiencyRecord:
        current = await self.get_proficiency(user_id, skill_id) or ProficiencyRecord()

        problems_solved = current.problems_solved + 1
        success_count = current.success_count + (1 if correct else 0)
        updated = ProficiencyRecord(
            level=calculate_proficiency_level(problems_solved, success_count / problems_solved),
            problems_solved=problems_solved,
            success_count=success_count,
            last_practiced=utc_now(),
        )

        await self.store.set(
            PROFICIENCY_COLLECTION,
            self._doc_id(user_id, skill_id),
            {**updated.model_dump(mode="json"), "user_id": user_id, "skill_id": skill_id},
        )
        tutor_proficiency_updates_total.labels(level=updated.level.value).inc()

        if updated.level != current.level:
            logger.info(
                "Proficiency level changed",
                context={
                    "user_id": user_id,
                    "skill_id": skill_id,
                    "from": current.level.value,
                    "to": updated.level.value,
                },
                request_id=request_id,
            )
        return updated
