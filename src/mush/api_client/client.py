from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .. import __version__
from .types import (
    DeregisterLinkPayload,
    Job,
    JobClaimPayload,
    JobFailPayload,
    JSONDict,
    RegisterLinkPayload,
    RunnerConfig,
)

DEFAULT_TIMEOUT = 60.0
DEFAULT_LEASE_DURATION_MS = 45_000


class ApiClientError(RuntimeError):
    """Raised when an API call fails."""

    def __init__(
        self,
        status_code: int,
        message: str,
        payload: Any | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
        self.path = path

    @property
    def needs_auth(self) -> bool:
        return self.status_code in (401, 403)


class InvalidPayloadError(ApiClientError):
    """A successful response whose body does not match the runner contract.

    ``job_id`` is set when a claimed job could still be identified, so the
    caller can fail it instead of leaving its lease to expire.
    """

    def __init__(
        self,
        message: str,
        *,
        job_id: str = "",
        payload: Any | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(200, message, payload, path)
        self.job_id = job_id


def _describe_validation(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "body"
        problems.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(problems)


class RunnerClient:
    """Typed HTTP client for the ``/api/v1/runner`` contract."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"mush/{__version__}",
        }
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        expect: int | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"json": json_body if json_body is not None else {}, "params": params}
        if method == "GET":
            kwargs.pop("json")
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self._client.request(method, path, **kwargs)

        self._raise_for_status(response, expect)
        if response.status_code == 204 or not response.content.strip():
            return None

        try:
            return response.json()
        except ValueError:
            return {"value": response.text}

    @staticmethod
    def _extract_error_message(payload: Any, fallback: str) -> str:
        if isinstance(payload, dict):
            err = payload.get("error")
            if isinstance(err, dict):
                message = err.get("message")
                if isinstance(message, str) and message.strip():
                    return message
            if isinstance(err, str) and err.strip():
                return err
            for key in ("message", "detail"):
                message = payload.get(key)
                if isinstance(message, str) and message.strip():
                    return message
        return fallback

    def _raise_for_status(self, response: httpx.Response, expect: int | None = None) -> None:
        ok = response.status_code == expect if expect is not None else response.is_success
        if ok:
            return

        payload: Any | None
        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        message = self._extract_error_message(
            payload,
            f"HTTP {response.status_code} for {response.request.method} {response.request.url.path}",
        )
        raise ApiClientError(
            status_code=response.status_code,
            message=message,
            payload=payload,
            path=response.request.url.path,
        )

    # -- Jobs --

    async def claim_job(
        self,
        *,
        habitat_id: str = "",
        queue_id: str = "",
        wait_timeout_seconds: int = 30,
    ) -> Job | None:
        """Long-poll for the next job; ``None`` when nothing is claimable."""
        if not habitat_id and not queue_id:
            raise ValueError("either habitat_id or queue_id is required")

        body: JobClaimPayload = {"leaseDurationMs": DEFAULT_LEASE_DURATION_MS}
        if queue_id:
            body["queueId"] = queue_id
        else:
            body["habitatId"] = habitat_id

        data = await self._request_json(
            "POST",
            "/api/v1/runner/jobs:claim",
            json_body=dict(body),
            params={"wait_timeout_seconds": wait_timeout_seconds},
            timeout=DEFAULT_TIMEOUT + wait_timeout_seconds,
        )
        if not isinstance(data, dict) or not data.get("job"):
            return None

        path = "/api/v1/runner/jobs:claim"
        raw = data["job"]
        if not isinstance(raw, dict):
            raise InvalidPayloadError(f"claimed job is not an object: {type(raw).__name__}", payload=data, path=path)
        job_id = raw.get("id")
        job_id = str(job_id) if isinstance(job_id, (str, int)) and not isinstance(job_id, bool) else ""
        try:
            return Job.from_claim(data)
        except ValidationError as e:
            raise InvalidPayloadError(
                f"invalid job payload: {_describe_validation(e)}",
                job_id=job_id,
                payload=data,
                path=path,
            ) from e

    def _job_path(self, job_id: str, action: str) -> str:
        return f"/api/v1/runner/jobs/{quote(job_id, safe='')}:{action}"

    async def start_job(self, job_id: str) -> JSONDict | None:
        return await self._request_json("POST", self._job_path(job_id, "start"))

    async def heartbeat_job(self, job_id: str) -> JSONDict | None:
        return await self._request_json("POST", self._job_path(job_id, "heartbeat"))

    async def complete_job(self, job_id: str, output: JSONDict) -> None:
        await self._request_json("POST", self._job_path(job_id, "complete"), json_body={"outputData": output})

    async def fail_job(
        self,
        job_id: str,
        *,
        code: str,
        message: str,
        should_retry: bool,
        details: JSONDict | None = None,
    ) -> None:
        body: JobFailPayload = {"errorCode": code, "errorMessage": message, "shouldRetry": should_retry}
        if details:
            body["errorDetails"] = details
        await self._request_json("POST", self._job_path(job_id, "fail"), json_body=dict(body))

    # -- Links --

    async def register_link(self, payload: RegisterLinkPayload) -> str:
        data = await self._request_json(
            "POST",
            "/api/v1/runner/links:register",
            json_body=dict(payload),
            expect=201,
        )
        link_id = data.get("linkId") if isinstance(data, dict) else None
        if not link_id:
            raise ApiClientError(201, "register returned empty link ID", data, "/api/v1/runner/links:register")
        return str(link_id)

    async def heartbeat_link(self, link_id: str, current_job_id: str = "") -> JSONDict | None:
        body = {"currentJobId": current_job_id} if current_job_id else {}
        return await self._request_json(
            "POST",
            f"/api/v1/runner/links/{quote(link_id, safe='')}:heartbeat",
            json_body=body,
        )

    async def deregister_link(
        self,
        link_id: str,
        *,
        completed: int,
        failed: int,
        reason: str = "graceful_shutdown",
        timeout: float = 5.0,
    ) -> None:
        body: DeregisterLinkPayload = {"reason": reason, "jobsCompleted": completed, "jobsFailed": failed}
        await self._request_json(
            "POST",
            f"/api/v1/runner/links/{quote(link_id, safe='')}:deregister",
            json_body=dict(body),
            timeout=timeout,
        )

    # -- Runner config --

    async def get_runner_config(self) -> RunnerConfig:
        data = await self._request_json("GET", "/api/v1/runner/config")
        try:
            return RunnerConfig.model_validate(data if isinstance(data, dict) else {})
        except ValidationError as e:
            raise InvalidPayloadError(
                f"invalid runner config: {_describe_validation(e)}",
                payload=data,
                path="/api/v1/runner/config",
            ) from e
