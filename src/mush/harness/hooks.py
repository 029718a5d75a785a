"""Stop-hook installation for the interactive Claude backend.

Claude runs project hooks from ``.claude/settings.local.json``; the Stop
hook touches a marker file in ``$MUSH_SIGNAL_DIR`` when a turn finishes.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

SIGNAL_FILE_NAME = "complete"
SETTINGS_RELATIVE_PATH = Path(".claude") / "settings.local.json"

STOP_HOOK_COMMAND = (
    'sh -c "if [ -n \\"$MUSH_SIGNAL_DIR\\" ]; then '
    f'touch \\"$MUSH_SIGNAL_DIR/{SIGNAL_FILE_NAME}\\"; fi"'
)


class HookError(Exception):
    pass


def _command_entry(command: str) -> dict[str, Any]:
    return {"hooks": [{"type": "command", "command": command}]}


def merge_stop_hook(settings: dict[str, Any], command: str = STOP_HOOK_COMMAND) -> dict[str, Any]:
    """Add ``command`` to ``settings.hooks.Stop`` without duplicating it.

    Legacy ``{"command": ...}`` entries are rewritten into the nested
    ``{"hooks": [...]}`` form and non-string matchers are dropped.
    """
    hooks = settings.get("hooks", {})
    if not isinstance(hooks, dict):
        raise HookError("settings.hooks must be an object")
    stop = hooks.get("Stop", [])
    if not isinstance(stop, list):
        raise HookError("settings.hooks.Stop must be an array")

    normalized: list[dict[str, Any]] = []
    present = False
    for item in stop:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("command"), str):
            entry = _command_entry(item["command"])
        else:
            entry = dict(item)
            if "matcher" in entry and not isinstance(entry["matcher"], str):
                del entry["matcher"]
            if not isinstance(entry.get("hooks"), list):
                entry["hooks"] = []
        for hook in entry["hooks"]:
            if isinstance(hook, dict) and hook.get("command") == command:
                present = True
        normalized.append(entry)

    if not present:
        normalized.append(_command_entry(command))

    hooks["Stop"] = normalized
    settings["hooks"] = hooks
    return settings


def install_stop_hook(signal_dir: str, cwd: Optional[Path] = None) -> Callable[[], None]:
    """Install the Stop hook under ``cwd`` and return a restore function.

    The restore function writes back the original bytes, or removes the
    file when none existed.
    """
    if not signal_dir:
        raise HookError("signal directory is required")

    path = (cwd or Path.cwd()) / SETTINGS_RELATIVE_PATH
    try:
        original: Optional[bytes] = path.read_bytes()
    except FileNotFoundError:
        original = None
    except OSError as e:
        raise HookError(f"failed to read settings: {e}") from e

    settings: Any = {}
    if original and original.strip():
        try:
            settings = json.loads(original)
        except json.JSONDecodeError as e:
            raise HookError(f"failed to parse settings: {e}") from e
        if not isinstance(settings, dict):
            raise HookError("settings must be a JSON object")

    merged = merge_stop_hook(settings)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        _write_private(path, json.dumps(merged, indent=2).encode("utf-8"))
    except OSError as e:
        raise HookError(f"failed to write settings: {e}") from e

    def restore() -> None:
        if original is not None:
            _write_private(path, original)
        else:
            path.unlink(missing_ok=True)

    return restore


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
