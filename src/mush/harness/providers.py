"""Backend provider descriptors shipped as YAML files in ``provider_specs/``."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

PROVIDERS_DIR = Path(__file__).parent / "provider_specs"


class ProviderError(ValueError):
    def __init__(self, filename: str, message: str) -> None:
        super().__init__(f"provider {filename}: {message}")
        self.filename = filename


class BundleDirSpec(BaseModel):
    mode: Literal["add_dir", "cd_flag", "cwd"] = "cwd"
    flag: str = ""


class CLIFlags(BaseModel):
    mcp_config: str = Field("", alias="mcpConfig")

    model_config = ConfigDict(populate_by_name=True)


class MCPDef(BaseModel):
    format: Literal["json", "toml"] = "json"


class ProviderSpec(BaseModel):
    name: str = Field(min_length=1)
    display_name: str = Field("", alias="displayName")
    description: str = ""
    binary: str = ""
    interactive: bool = False
    bundle_dir: Optional[BundleDirSpec] = Field(None, alias="bundleDir")
    cli: Optional[CLIFlags] = None
    mcp: Optional[MCPDef] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    def available(self) -> bool:
        """True when the provider's binary is on ``PATH``."""
        return not self.binary or shutil.which(self.binary) is not None

    def bundle_args(self, bundle_dir: str) -> list[str]:
        if not bundle_dir or self.bundle_dir is None or self.bundle_dir.mode == "cwd":
            return []
        return [self.bundle_dir.flag, bundle_dir]


def load_providers(directory: Path | None = None) -> dict[str, ProviderSpec]:
    """Parse every ``*.yaml`` descriptor in ``directory``.

    Raises:
        ProviderError: On unreadable, invalid or duplicate descriptors.
    """
    directory = directory or PROVIDERS_DIR
    specs: dict[str, ProviderSpec] = {}
    for path in sorted(directory.glob("*.yaml")):
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ProviderError(path.name, f"invalid YAML: {e}") from e
        try:
            spec = ProviderSpec.model_validate(data)
        except ValidationError as e:
            raise ProviderError(path.name, str(e)) from e
        if spec.name in specs:
            raise ProviderError(path.name, f"duplicate provider name {spec.name!r}")
        specs[spec.name] = spec
    return specs
