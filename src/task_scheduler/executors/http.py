import asyncio
from typing import Any, Dict

import aiohttp
from pydantic import BaseModel, Field

from task_scheduler.domain.outcome import Failed, Succeeded
from task_scheduler.errors import TransientExecutionError
from task_scheduler.executors.context import CancellationSignal, ExecutionContext
from task_scheduler.executors.protocol import TaskResult


class HttpCallRequest(BaseModel):
    url: str = Field(..., description="The URL to make the HTTP request to")
    method: str = Field(..., description="The HTTP method to use (e.g. GET, POST, PUT, DELETE)")
    headers: Dict[str, str] = Field(default={}, description="Optional headers to include in the request")
    body: Dict[str, Any] = Field(default={}, description="Optional body payload for the request")
    params: Dict[str, str] = Field(default={}, description="Optional query parameters for the request")


class HttpCallTask:
    """
    Calls an HTTP endpoint using aiohttp.
    """
    task_name = "http_call"
    request_schema = HttpCallRequest
    tags = frozenset({"builtin", "http"})

    async def execute(self, request: Any, context: ExecutionContext, cancellation: CancellationSignal) -> TaskResult:
        """
        Make the HTTP request described by ``request``.

        Server errors and rate limiting are retryable failures, other client
        errors are not. Connection problems raise TransientExecutionError.
        """
        try:
            payload = HttpCallRequest.model_validate(request)
        except ValueError as e:
            return Failed(error_kind="InvalidRequest", message=f"Invalid payload: {str(e)}", retryable=False)

        cancellation.raise_if_cancelled()
        context.report_progress(10, f"{payload.method} {payload.url}")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method=payload.method,
                    url=payload.url,
                    headers=payload.headers,
                    params=payload.params,
                    json=payload.body or None
                ) as response:
                    result: Dict[str, Any] = {
                        "status": response.status,
                        "headers": dict(response.headers),
                        "body": await response.text()
                    }
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientExecutionError(f"Request to {payload.url} failed: {str(e)}") from e

        context.report_progress(100, f"HTTP {result['status']}")
        status = result["status"]
        if status >= 500 or status == 429:
            return Failed(error_kind="HttpError", message=f"HTTP {status}", retryable=True)
        if status >= 400:
            return Failed(error_kind="HttpError", message=f"HTTP {status}: {result['body'][:200]}", retryable=False)
        return Succeeded(payload=result)
