from __future__ import annotations

import json
import os
import stat
from datetime import datetime, timedelta, timezone

from mush.api_client import RunnerConfig
from mush.harness import mcp
from mush.harness.state import MCPServerStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _config(**providers) -> RunnerConfig:
    return RunnerConfig.model_validate({"refreshAfterSeconds": 120, "providers": providers})


def _provider(url="https://mcp.example/linear", token="tok", expires=None, status="active", enabled=True, token_type="bearer"):
    credential = {"accessToken": token, "tokenType": token_type}
    if expires is not None:
        credential["expiresAt"] = expires.isoformat()
    return {"status": status, "flags": {"mcp": enabled}, "mcp": {"url": url}, "credential": credential}


def test_normalize_refresh_interval() -> None:
    assert mcp.normalize_refresh_interval(0) == 300
    assert mcp.normalize_refresh_interval(-5) == 300
    assert mcp.normalize_refresh_interval(10) == 60
    assert mcp.normalize_refresh_interval(120) == 120
    assert mcp.normalize_refresh_interval(5000) == 900


def test_build_provider_specs_filters_unusable_entries() -> None:
    config = _config(
        linear=_provider(),
        github=_provider(url="https://mcp.example/gh", token_type="Basic"),
        disabled=_provider(enabled=False),
        inactive=_provider(status="revoked"),
        tokenless=_provider(token=""),
        expired=_provider(expires=NOW + timedelta(seconds=10)),
    )
    specs = mcp.build_provider_specs(config, NOW)
    assert [spec.name for spec in specs] == ["github", "linear"]
    assert specs[0].authorization == "Basic tok"
    assert specs[1].authorization == "Bearer tok"


def test_signature_tracks_content() -> None:
    first = mcp.build_provider_specs(_config(linear=_provider()), NOW)
    rotated = mcp.build_provider_specs(_config(linear=_provider(token="new")), NOW)
    assert mcp.signature([]) == ""
    assert mcp.signature(first) == mcp.signature(list(first))
    assert mcp.signature(first) != mcp.signature(rotated)


def test_json_config_file_is_private() -> None:
    config_file = mcp.create_config_file(_config(linear=_provider()), NOW)
    try:
        assert config_file.names == ("linear",)
        assert stat.S_IMODE(os.stat(config_file.path).st_mode) == 0o600
        document = json.loads(open(config_file.path, encoding="utf-8").read())
        assert document == {
            "mcpServers": {
                "linear": {
                    "type": "http",
                    "url": "https://mcp.example/linear",
                    "headers": {"Authorization": "Bearer tok"},
                }
            }
        }
    finally:
        config_file.cleanup()
    assert not os.path.exists(config_file.path)


def test_toml_config() -> None:
    specs = mcp.build_provider_specs(_config(linear=_provider()), NOW)
    text = mcp.build_toml_config(specs).decode()
    assert "[mcp_servers.linear]" in text
    assert 'url = "https://mcp.example/linear"' in text
    assert 'Authorization = "Bearer tok"' in text


def test_empty_config_writes_no_file() -> None:
    config_file = mcp.create_config_file(_config(), NOW)
    assert config_file.path == ""
    assert config_file.signature == ""
    config_file.cleanup()


def test_server_statuses() -> None:
    config = _config(
        linear=_provider(),
        github=_provider(expires=NOW - timedelta(minutes=1)),
        hidden=_provider(enabled=False),
    )
    rows = mcp.server_statuses(config, NOW, loaded=["linear"])
    assert rows == (
        MCPServerStatus(name="github", loaded=False, authenticated=False, expired=True),
        MCPServerStatus(name="linear", loaded=True, authenticated=True, expired=False),
    )
    assert mcp.server_statuses(None, NOW) == ()
