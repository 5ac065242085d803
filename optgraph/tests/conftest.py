"""
Pytest configuration and fixtures for optgraph tests.
"""

import warnings

import pytest

from optgraph.core.ir import IRGraph
from optgraph.core.session import Session
from optgraph.core.config import config as optim_config


# Configure pytest markers
def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line("markers", "graph: tests for graph construction")
    config.addinivalue_line("markers", "gradients: tests for symbolic differentiation")
    config.addinivalue_line("markers", "session: tests for graph execution")
    config.addinivalue_line("markers", "optimizer: tests for optimizer update rules")
    config.addinivalue_line("markers", "numerical: tests for numerical accuracy")
    config.addinivalue_line("markers", "integration: end to end training tests")


# Common fixtures
@pytest.fixture
def graph():
    """Empty graph for testing."""
    return IRGraph(name="test_graph")


@pytest.fixture
def session(graph):
    """Session bound to the graph fixture."""
    return Session(graph)


@pytest.fixture
def tolerance():
    """Default numerical tolerance for float32 testing."""
    return 1e-6


@pytest.fixture(autouse=True)
def restore_config():
    """Tests may change global defaults; put them back afterwards."""
    saved = optim_config.snapshot()
    yield
    for key, value in saved.items():
        setattr(optim_config, key, value)


@pytest.fixture
def run_steps():
    """Initialize new variables, then execute ``ops`` ``steps`` times."""
    def _run(session, ops, steps):
        session.initialize()
        for _ in range(steps):
            session.run(ops)
    return _run


@pytest.fixture
def no_warnings():
    """Fail the test on any warning."""
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        yield
