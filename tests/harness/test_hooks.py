from __future__ import annotations

import json
import stat

import pytest

from mush.harness.hooks import (
    SETTINGS_RELATIVE_PATH,
    STOP_HOOK_COMMAND,
    HookError,
    install_stop_hook,
    merge_stop_hook,
)


def _commands(settings: dict) -> list[str]:
    return [hook["command"] for entry in settings["hooks"]["Stop"] for hook in entry["hooks"]]


def test_merge_into_empty_settings() -> None:
    merged = merge_stop_hook({})
    assert merged == {"hooks": {"Stop": [{"hooks": [{"type": "command", "command": STOP_HOOK_COMMAND}]}]}}


def test_merge_is_idempotent() -> None:
    once = merge_stop_hook({})
    twice = merge_stop_hook(json.loads(json.dumps(once)))
    assert _commands(twice) == [STOP_HOOK_COMMAND]


def test_merge_keeps_other_hooks_and_rewrites_legacy_entries() -> None:
    settings = {
        "model": "opus",
        "hooks": {
            "PreToolUse": [{"hooks": []}],
            "Stop": [
                {"command": "notify-send done"},
                {"matcher": 3, "hooks": [{"type": "command", "command": "echo hi"}]},
                "garbage",
            ],
        },
    }
    merged = merge_stop_hook(settings)
    assert merged["model"] == "opus"
    assert merged["hooks"]["PreToolUse"] == [{"hooks": []}]
    assert _commands(merged) == ["notify-send done", "echo hi", STOP_HOOK_COMMAND]
    assert all("matcher" not in entry for entry in merged["hooks"]["Stop"])


def test_merge_rejects_wrong_shapes() -> None:
    with pytest.raises(HookError):
        merge_stop_hook({"hooks": []})
    with pytest.raises(HookError):
        merge_stop_hook({"hooks": {"Stop": {}}})


def test_install_then_restore_removes_new_file(tmp_path) -> None:
    restore = install_stop_hook("/tmp/signals", cwd=tmp_path)
    path = tmp_path / SETTINGS_RELATIVE_PATH
    assert _commands(json.loads(path.read_text())) == [STOP_HOOK_COMMAND]
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    restore()
    assert not path.exists()


def test_install_then_restore_is_byte_exact(tmp_path) -> None:
    path = tmp_path / SETTINGS_RELATIVE_PATH
    path.parent.mkdir()
    original = b'{\n  "model":   "sonnet"\n}\n'
    path.write_bytes(original)

    restore = install_stop_hook("/tmp/signals", cwd=tmp_path)
    assert json.loads(path.read_text())["model"] == "sonnet"
    restore()
    assert path.read_bytes() == original


def test_install_rejects_invalid_json(tmp_path) -> None:
    path = tmp_path / SETTINGS_RELATIVE_PATH
    path.parent.mkdir()
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(HookError, match="parse"):
        install_stop_hook("/tmp/signals", cwd=tmp_path)
    assert path.read_text() == "{not json"


def test_install_requires_signal_dir(tmp_path) -> None:
    with pytest.raises(HookError):
        install_stop_hook("", cwd=tmp_path)
