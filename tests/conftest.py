import os
from datetime import datetime, timedelta, timezone

import pytest

# Required env for Config (set BEFORE any app imports)
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.pop("LOG_DIR", None)
os.environ.pop("PROMETHEUS_MULTIPROC_DIR", None)

from prereq_tutor.models.schemas import (  # noqa: E402
    ConversationMessage,
    MessageRole,
    ProficiencyLevel,
    ProficiencyRecord,
)
from prereq_tutor.services.skill_graph.service import parse_graph_document  # noqa: E402

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock for deterministic timestamps."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _skill(name, layer1=(), layer2=(), **extra):
    return {
        "name": name,
        "description": f"{name} basics",
        "layer1": list(layer1),
        "layer2": list(layer2),
        "diagnostics": {
            "layer1": [f"{name}: direct question {i}" for i in (1, 2)],
            "layer2": [f"{name}: foundation question {i}" for i in (1, 2)],
        },
        **extra,
    }


@pytest.fixture
def sample_graph_document():
    """Small algebra skill graph document"""
    return {
        "metadata": {"version": "test-1", "description": "Test algebra graph"},
        "skills": {
            "basic_arithmetic": _skill("Basic Arithmetic"),
            "understanding_variables": _skill("Understanding Variables"),
            "inverse_operations": _skill("Inverse Operations", ["basic_arithmetic"]),
            "one_step_equations": _skill(
                "One-Step Equations",
                ["inverse_operations", "understanding_variables"],
                ["basic_arithmetic"],
            ),
            "two_step_equations": _skill(
                "Two-Step Equations",
                ["one_step_equations"],
                ["inverse_operations", "understanding_variables"],
            ),
        },
        "skill_categories": {
            "foundations": ["basic_arithmetic", "understanding_variables"],
            "equations": ["one_step_equations", "two_step_equations"],
        },
    }


@pytest.fixture
def sample_graph(sample_graph_document):
    return parse_graph_document(sample_graph_document)


@pytest.fixture
def graph_loader(sample_graph_document):
    """Async loader returning the sample document"""

    async def _load():
        return sample_graph_document

    return _load


@pytest.fixture
def proficient_record():
    return ProficiencyRecord(
        level=ProficiencyLevel.PROFICIENT, problems_solved=6, success_count=5
    )


@pytest.fixture
def learning_record():
    return ProficiencyRecord(
        level=ProficiencyLevel.LEARNING, problems_solved=4, success_count=2
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user_messages():
    """Factory for learner messages in order"""

    def _make(*texts):
        return [ConversationMessage(role=MessageRole.USER, content=t) for t in texts]

    return _make


@pytest.fixture
def conversation():
    """Alternating tutor/learner exchange on a two-step equation"""
    return [
        ConversationMessage(role=MessageRole.ASSISTANT, content="What is the first step to solve 2x + 3 = 11?"),
        ConversationMessage(role=MessageRole.USER, content="idk"),
        ConversationMessage(role=MessageRole.ASSISTANT, content="What is being added to 2x?"),
        ConversationMessage(role=MessageRole.USER, content="help"),
    ]
