"""
Shared fixtures.
"""
import pytest

from src.dggs.engine import GridEngine
from src.dggs.reference_system import H3ReferenceSystem


@pytest.fixture(scope="session")
def engine():
    """Initialized grid engine, shared by the whole session."""
    return GridEngine().initialize()


@pytest.fixture(scope="session")
def reference_system(engine):
    return H3ReferenceSystem(engine)
