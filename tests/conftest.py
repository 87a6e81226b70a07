import pytest
from agents import set_tracing_disabled


@pytest.fixture(autouse=True, scope="session")
def disable_tracing():
    set_tracing_disabled(True)
    yield
