from typer.testing import CliRunner

from mush import __version__
from mush.cli.main import app

runner = CliRunner()


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"mush {__version__}" in result.output


def test_paths_follow_mush_home(mush_home) -> None:  # type: ignore[no-untyped-def]
    result = runner.invoke(app, ["paths"])
    assert result.exit_code == 0
    assert str(mush_home) in result.output
    assert "history" in result.output


def test_no_args_shows_help() -> None:
    result = runner.invoke(app, [])
    assert "worker" in result.output
