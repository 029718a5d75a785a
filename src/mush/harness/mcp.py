"""MCP server configuration derived from the runner config.

Provider credentials expire, so both the generated config and the status
rows are recomputed against the current time.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..api_client import RunnerConfig
from ..util.log import Log
from .state import MCPServerStatus

log = Log.create({"service": "harness.mcp"})

DEFAULT_REFRESH_SECONDS = 300
MIN_REFRESH_SECONDS = 60
MAX_REFRESH_SECONDS = 900
TOKEN_EXPIRY_SKEW = timedelta(seconds=30)


@dataclass(frozen=True)
class MCPProviderSpec:
    name: str
    url: str
    tokenType: str
    token: str
    expiresAt: str = ""

    @property
    def authorization(self) -> str:
        scheme = "Basic" if self.tokenType.lower() == "basic" else "Bearer"
        return f"{scheme} {self.token}"


@dataclass
class MCPConfigFile:
    path: str
    signature: str
    names: tuple[str, ...]

    def cleanup(self) -> None:
        if self.path:
            Path(self.path).unlink(missing_ok=True)
            log.debug("mcp config removed", {"path": self.path})


def normalize_refresh_interval(seconds: int) -> int:
    if seconds <= 0:
        seconds = DEFAULT_REFRESH_SECONDS
    return min(max(seconds, MIN_REFRESH_SECONDS), MAX_REFRESH_SECONDS)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _is_active(status: str) -> bool:
    return not status or status.lower() == "active"


def build_provider_specs(config: Optional[RunnerConfig], now: datetime) -> list[MCPProviderSpec]:
    """Usable MCP providers, sorted by name."""
    if config is None:
        return []
    now = _utc(now)
    specs = []
    for name in sorted(config.providers):
        provider = config.providers[name]
        credential = provider.credential
        if not provider.flags.mcp or provider.mcp is None or credential is None:
            continue
        if not _is_active(provider.status):
            continue
        if not provider.mcp.url or not credential.access_token:
            continue
        expires_at = ""
        if credential.expires_at is not None:
            expiry = _utc(credential.expires_at)
            if now + TOKEN_EXPIRY_SKEW > expiry:
                continue
            expires_at = expiry.astimezone(timezone.utc).isoformat()
        specs.append(MCPProviderSpec(
            name=name,
            url=provider.mcp.url,
            tokenType=(credential.token_type.strip() or "bearer").lower(),
            token=credential.access_token,
            expiresAt=expires_at,
        ))
    return specs


def signature(specs: list[MCPProviderSpec]) -> str:
    if not specs:
        return ""
    encoded = json.dumps([asdict(spec) for spec in specs], separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_json_config(specs: list[MCPProviderSpec]) -> bytes:
    """Claude ``--mcp-config`` document."""
    if not specs:
        return b""
    servers = {
        spec.name: {"type": "http", "url": spec.url, "headers": {"Authorization": spec.authorization}}
        for spec in specs
    }
    return json.dumps({"mcpServers": servers}, indent=2).encode("utf-8")


def build_toml_config(specs: list[MCPProviderSpec]) -> bytes:
    """Codex ``mcp_servers`` tables."""
    blocks = []
    for spec in specs:
        blocks.append(
            f"[mcp_servers.{spec.name}]\n"
            'type = "http"\n'
            f"url = {json.dumps(spec.url)}\n"
            f"\n[mcp_servers.{spec.name}.http_headers]\n"
            f"Authorization = {json.dumps(spec.authorization)}\n"
        )
    return "\n".join(blocks).encode("utf-8")


BUILDERS: dict[str, Callable[[list[MCPProviderSpec]], bytes]] = {
    "json": build_json_config,
    "toml": build_toml_config,
}


def create_config_file(config: Optional[RunnerConfig], now: datetime, fmt: str = "json") -> MCPConfigFile:
    """Write a private temp config; ``path`` is empty when nothing is loadable."""
    specs = build_provider_specs(config, now)
    sig = signature(specs)
    names = tuple(spec.name for spec in specs)
    log.info("mcp specs built", {"count": len(specs)})
    content = BUILDERS[fmt](specs)
    if not content:
        return MCPConfigFile(path="", signature=sig, names=names)

    fd, path = tempfile.mkstemp(prefix="mush-mcp-", suffix=f".{fmt}")
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
    except OSError:
        Path(path).unlink(missing_ok=True)
        raise
    log.info("mcp config created", {"path": path})
    return MCPConfigFile(path=path, signature=sig, names=names)


def server_statuses(
    config: Optional[RunnerConfig],
    now: datetime,
    loaded: Iterable[str] = (),
) -> tuple[MCPServerStatus, ...]:
    """One status row per MCP-enabled provider."""
    if config is None:
        return ()
    now = _utc(now)
    loaded_names = set(loaded)
    rows = []
    for name in sorted(config.providers):
        provider = config.providers[name]
        if not provider.flags.mcp:
            continue
        credential = provider.credential
        has_token = credential is not None and bool(credential.access_token)
        expired = (
            credential is not None
            and credential.expires_at is not None
            and now + TOKEN_EXPIRY_SKEW > _utc(credential.expires_at)
        )
        rows.append(MCPServerStatus(
            name=name,
            loaded=name in loaded_names,
            authenticated=has_token and not expired and _is_active(provider.status),
            expired=expired,
        ))
    return tuple(rows)
