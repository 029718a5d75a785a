import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from mush.cli.cmd import worker as worker_module
from mush.cli.main import app
from mush.harness.executor import HarnessInfo, Registry
from mush.harness.state import BundleSummary
from mush.util.error import EXIT_CONFIG, EXIT_USAGE, CLIError
from tests.helpers import FakeExecutor

runner = CliRunner()


def _registry() -> Registry:
    return Registry([
        HarnessInfo(name="bash", available=lambda: True, factory=lambda: FakeExecutor("bash")),
        HarnessInfo(name="claude", available=lambda: False, factory=lambda: FakeExecutor("claude", True)),
    ])


def test_start_requires_api_key() -> None:
    result = runner.invoke(app, ["worker", "start", "--habitat", "hab-1"])
    assert result.exit_code == 2
    assert "Not authenticated" in result.output


def test_start_requires_habitat_or_queue(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MUSH_API_KEY", "sk-test")
    result = runner.invoke(app, ["worker", "start"])
    assert result.exit_code == EXIT_USAGE
    assert "--habitat or --queue" in result.output


def test_start_rejects_unknown_harness(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MUSH_API_KEY", "sk-test")
    result = runner.invoke(app, ["worker", "start", "--queue", "q-1", "--harness", "nope"])
    assert result.exit_code == EXIT_USAGE
    assert "Unknown harness 'nope'" in result.output


def test_start_rejects_bad_log_level() -> None:
    result = runner.invoke(app, ["worker", "start", "--queue", "q-1", "--log-level", "chatty"])
    assert result.exit_code == EXIT_USAGE
    assert "invalid log level" in result.output


def test_start_reports_config_errors(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[]", encoding="utf-8")
    result = runner.invoke(app, ["worker", "start", "--queue", "q-1", "--config", str(path)])
    assert result.exit_code == EXIT_CONFIG
    assert "Config error" in result.output


def test_start_runs_harness(monkeypatch, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MUSH_API_KEY", "sk-test")
    monkeypatch.setattr(worker_module, "default_registry", _registry)
    seen: dict[str, object] = {}

    class FakeHarness:
        def __init__(self, settings, client, registry, **kwargs) -> None:  # type: ignore[no-untyped-def]
            seen["client_url"] = str(client._client.base_url)
            seen.update(kwargs)

        async def run(self) -> None:
            seen["ran"] = True

    monkeypatch.setattr(worker_module, "Harness", FakeHarness)
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    (bundle / "manifest.json").write_text(json.dumps({
        "name": "demo",
        "version": "1.2.0",
        "layers": [{"assetType": "skill", "logicalPath": "skills/review"}],
    }))

    result = runner.invoke(app, [
        "worker", "start",
        "--habitat", "hab-1",
        "--api-url", "https://api.example",
        "--bundle-dir", str(bundle),
        "--force-sidebar",
    ])

    assert result.exit_code == 0, result.output
    assert seen["ran"] is True
    assert seen["client_url"].startswith("https://api.example")
    assert seen["harnesses"] == ("bash",)
    assert seen["habitat_id"] == "hab-1"
    assert seen["force_sidebar"] is True
    assert seen["bundle"] == BundleSummary(name="demo", version="1.2.0", total_layers=1, skills=("review",))


def test_harness_errors_map_to_exit_codes(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MUSH_API_KEY", "sk-test")
    monkeypatch.setattr(worker_module, "default_registry", _registry)

    class FailingHarness:
        def __init__(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
            pass

        async def run(self) -> None:
            raise CLIError("The harness requires an interactive terminal (TTY)", EXIT_USAGE)

    monkeypatch.setattr(worker_module, "Harness", FailingHarness)
    result = runner.invoke(app, ["worker", "start", "--queue", "q-1"])
    assert result.exit_code == EXIT_USAGE
    assert "interactive terminal" in result.output


def test_resolve_harnesses() -> None:
    registry = _registry()
    assert worker_module.resolve_harnesses(registry, []) == ("bash",)
    assert worker_module.resolve_harnesses(registry, ["bash", "bash"]) == ("bash",)
    with pytest.raises(CLIError) as excinfo:
        worker_module.resolve_harnesses(registry, ["claude"])
    assert "could not be started" in str(excinfo.value)


def test_load_bundle_summary(tmp_path: Path) -> None:
    assert worker_module.load_bundle_summary(None) == BundleSummary()
    assert worker_module.load_bundle_summary(str(tmp_path)) == BundleSummary(name=tmp_path.name)
    with pytest.raises(CLIError):
        worker_module.load_bundle_summary(str(tmp_path / "missing"))
    (tmp_path / "manifest.json").write_text("{broken")
    with pytest.raises(CLIError) as excinfo:
        worker_module.load_bundle_summary(str(tmp_path))
    assert excinfo.value.code == EXIT_CONFIG


def test_harnesses_command(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(worker_module, "default_registry", _registry)
    result = runner.invoke(app, ["worker", "harnesses"])
    assert result.exit_code == 0
    assert "bash" in result.output
    assert "available" in result.output
    assert "not installed" in result.output
