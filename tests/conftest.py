import pytest


@pytest.fixture(autouse=True)
def _no_event_backend(monkeypatch):
    # Events are still logged and counted; only the Redis write is skipped.
    monkeypatch.setenv("EVENTS_DISABLED", "1")
