import importlib

import pytest
import pytest_asyncio

from prereq_tutor.services.proficiency.service import ProficiencyTracker
from prereq_tutor.services.session.service import SessionManager
from prereq_tutor.services.session.store import InMemoryDocumentStore
from prereq_tutor.services.skill_graph.service import SkillGraphResolver


def load_app():
    """
    Load the FastAPI app for testing.

    Modules stay loaded for the whole run: Prometheus collectors are
    registered once at import time.
    """
    main = importlib.import_module("prereq_tutor.main")
    return main.app


@pytest.fixture(scope="module")
def app():
    return load_app()


@pytest.fixture
def memory_store():
    return InMemoryDocumentStore()


@pytest.fixture
def resolver(graph_loader):
    return SkillGraphResolver(graph_loader)


@pytest.fixture
def tracker(memory_store):
    return ProficiencyTracker(memory_store)


@pytest.fixture
def manager(memory_store, clock):
    """Session manager for learner "alice" with debounce short enough for tests"""
    return SessionManager(
        memory_store,
        "alice",
        max_depth=2,
        mastery_threshold=0.6,
        debounce_seconds=0.05,
        recovery_window_seconds=3600,
        clock=clock,
    )


@pytest_asyncio.fixture
async def active_manager(manager):
    """Manager with a fresh session on the main problem"""
    await manager.create_session(
        "Solve 2x + 3 = 11",
        initial_message="Let's work on this together!",
        main_skill_id="two_step_equations",
    )
    return manager
