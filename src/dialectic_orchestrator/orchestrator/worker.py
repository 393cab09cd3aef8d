"""Client side of the generation worker endpoint."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class WorkerDispatchError(RuntimeError):
    """The worker could not be invoked or rejected the invocation."""


class WorkerClient(Protocol):
    """Fire-and-forget invocation of the generation worker."""

    def invoke(self, job_id: str, payload: dict[str, Any]) -> None: ...


class HttpWorkerClient:
    """POSTs ``{job_id, payload}`` as JSON to the worker endpoint."""

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers=headers,
            verify=verify,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def invoke(self, job_id: str, payload: dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json={"job_id": job_id, "payload": payload})
        except httpx.TimeoutException as error:
            raise WorkerDispatchError(f"Timeout invoking worker for job {job_id}") from error
        except httpx.HTTPError as error:
            raise WorkerDispatchError(
                f"HTTP error invoking worker for job {job_id}: {error}",
            ) from error
        if not response.is_success:
            raise WorkerDispatchError(
                f"Worker rejected job {job_id}: HTTP {response.status_code} {response.text[:200]}",
            )
        logger.debug("Worker accepted job %s (HTTP %s)", job_id, response.status_code)
