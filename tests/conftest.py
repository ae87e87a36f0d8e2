import pytest

from blue.blue_process import clear_global_state


@pytest.fixture(autouse=True)
def fresh_global_state():
    """Process table, broker and KV store are process-wide; reset them around every test."""
    clear_global_state()
    yield
    clear_global_state()
