import pytest

from prereq_tutor.services.session import service as session_service


@pytest.fixture(autouse=True)
def stop_background_cleanup():
    """Make sure no sweep task outlives a test"""
    yield
    session_service.stop_cleanup()
