from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field

JSONDict = dict[str, Any]

DEFAULT_HARNESS = "claude"


class JobClaimPayload(TypedDict, total=False):
    queueId: str
    habitatId: str
    leaseDurationMs: int


class JobFailPayload(TypedDict, total=False):
    errorCode: str
    errorMessage: str
    errorDetails: JSONDict
    shouldRetry: bool


class RegisterLinkPayload(TypedDict, total=False):
    instanceId: str
    habitatId: str
    name: str
    linkType: str
    clientVersion: str
    clientMetadata: JSONDict


class DeregisterLinkPayload(TypedDict):
    reason: str
    jobsCompleted: int
    jobsFailed: int


class ExecutionConfig(BaseModel):
    """Server-rendered execution settings for a claimed job."""
    agent_type: str = Field("", alias="agentType")
    rendered_instruction: str = Field("", alias="renderedInstruction")
    timeout_ms: int = Field(0, alias="timeoutMs")
    working_directory: str = Field("", alias="workingDirectory")
    environment: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Job(BaseModel):
    """A claimed unit of work."""
    id: str
    queue_id: str = Field("", alias="queueId")
    habitat_id: str = Field("", alias="habitatId")
    status: str = ""
    attempt_number: int = Field(0, alias="attemptNumber")
    input_data: JSONDict = Field(default_factory=dict, alias="inputData")
    execution: Optional[ExecutionConfig] = None
    execution_error: str = Field("", alias="executionError")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @property
    def harness_type(self) -> str:
        if self.execution and self.execution.agent_type:
            return self.execution.agent_type
        return DEFAULT_HARNESS

    @property
    def rendered_instruction(self) -> str:
        return self.execution.rendered_instruction if self.execution else ""

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.execution and self.execution.timeout_ms > 0:
            return self.execution.timeout_ms / 1000
        return None

    @property
    def display_name(self) -> str:
        for key in ("name", "title"):
            value = self.input_data.get(key)
            if isinstance(value, str) and value:
                return value
        return "Job"

    def input_text(self, key: str) -> str:
        value = self.input_data.get(key)
        return value if isinstance(value, str) else ""

    @classmethod
    def from_claim(cls, payload: JSONDict) -> "Job":
        """Build a job from a claim response ``{job, execution, executionError}``."""
        data = dict(payload.get("job") or {})
        data["execution"] = payload.get("execution")
        data["executionError"] = payload.get("executionError") or ""
        return cls.model_validate(data)


class ProviderCredential(BaseModel):
    access_token: str = Field("", alias="accessToken")
    token_type: str = Field("", alias="tokenType")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ProviderFlags(BaseModel):
    mcp: bool = False

    model_config = ConfigDict(extra="ignore")


class ProviderMCP(BaseModel):
    url: str = ""

    model_config = ConfigDict(extra="ignore")


class ProviderConfig(BaseModel):
    status: str = ""
    flags: ProviderFlags = Field(default_factory=ProviderFlags)
    mcp: Optional[ProviderMCP] = None
    credential: Optional[ProviderCredential] = None

    model_config = ConfigDict(extra="ignore")


class RunnerConfig(BaseModel):
    """Workspace-level runner settings, including MCP provider credentials."""
    config_version: str = Field("", alias="configVersion")
    workspace_id: str = Field("", alias="workspaceId")
    refresh_after_seconds: int = Field(0, alias="refreshAfterSeconds")
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
