import pytest

from flowforge.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point configuration lookups at an empty location for every test."""
    monkeypatch.setenv("FLOWFORGE_CONFIG", str(tmp_path / "configuration.json"))
    yield
    clear_trace_context()
