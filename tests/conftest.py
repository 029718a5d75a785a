from collections.abc import Iterator
from pathlib import Path

import pytest

from mush.util.log import Log


@pytest.fixture(autouse=True)
def mush_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Path]:
    home = tmp_path / "mush-home"
    monkeypatch.setenv("MUSH_HOME", str(home))
    monkeypatch.delenv("MUSH_API_KEY", raising=False)
    monkeypatch.delenv("MUSH_API_URL", raising=False)
    yield home
    Log.close()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
