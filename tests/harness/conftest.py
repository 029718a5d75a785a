import pytest

from mush.harness import claude


@pytest.fixture
def fast_claude(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Shrink the interactive backend's delays and isolate its hook file."""
    monkeypatch.setattr(claude, "PROMPT_DEBOUNCE", 0.05)
    monkeypatch.setattr(claude, "PASTE_SETTLE_DELAY", 0.01)
    monkeypatch.setattr(claude, "CHUNK_DELAY", 0.001)
    monkeypatch.setattr(claude, "SIGNAL_POLL_INTERVAL", 0.02)
    monkeypatch.setattr(claude, "CLEAR_DELAY", 0.01)
    monkeypatch.setattr(claude, "POST_WRITE_DELAY", 0.01)
    monkeypatch.setattr(claude, "RESET_PROMPT_TIMEOUT", 2.0)
    monkeypatch.setattr(claude, "RESET_SETTLE", 0.01)
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    return workdir
