from __future__ import annotations

import json
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from specexec.errors import ActionFailedError
from specexec.models import GlobalConfiguration
from specexec.plugins.base import Executor

DEFAULT_EXPECTED_STATUS = [200, 201]
DEFAULT_TIMEOUT_MS = 30_000
BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class HttpRequestExecutor(Executor):
    """Sends one HTTP request per action with a fresh ``httpx.AsyncClient``.

    ``transport`` is handed to the client unchanged, so tests can plug in an
    ``httpx.MockTransport``.
    """

    name = "http-request"
    version = "1.0.0"
    action_types = ("HTTP_REQUEST",)

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.transport = transport

    @staticmethod
    def _expected_status(parameters: dict[str, Any]) -> list[int]:
        raw = parameters.get("expectedStatus", DEFAULT_EXPECTED_STATUS)
        if isinstance(raw, int) and not isinstance(raw, bool):
            return [raw]
        if not isinstance(raw, list) or not all(isinstance(item, int) for item in raw):
            raise ActionFailedError(f"expectedStatus must be a list of integers, got {raw!r}")
        return raw

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                return response.text
        return response.text

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        self.require(parameters, "url")
        url = str(parameters["url"])
        method = str(parameters.get("method", "GET")).upper()
        expected_status = self._expected_status(parameters)
        timeout_ms = parameters.get("timeout", DEFAULT_TIMEOUT_MS)
        headers = {"Content-Type": "application/json"}
        headers.update({str(k): str(v) for k, v in (parameters.get("headers") or {}).items()})

        request_kwargs: dict[str, Any] = {"headers": headers}
        body = parameters.get("body")
        if body is not None and method in BODY_METHODS:
            request_kwargs["content"] = body if isinstance(body, str) else json.dumps(body)

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=timeout_ms / 1000,
                transport=self.transport,
            ) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as exc:
            raise ActionFailedError(f"HTTP request timeout after {timeout_ms}ms") from exc
        except httpx.RequestError as exc:
            raise ActionFailedError(f"Connection error: {exc!s} ({url})") from exc
        response_time = int((time.perf_counter() - started) * 1000)

        result: dict[str, Any] = {
            "url": url,
            "method": method,
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": self._parse_body(response),
            "responseTime": response_time,
            "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
            "expectedStatus": expected_status,
        }
        if response.status_code not in expected_status:
            raise ActionFailedError(
                f"HTTP {response.status_code} {response.reason_phrase}. "
                f"Expected: {', '.join(str(code) for code in expected_status)}",
                result=result,
            )
        return result


plugin = HttpRequestExecutor
