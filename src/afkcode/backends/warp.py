from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any

import httpx

from afkcode.backends.base import AgentBackend, BackendExecutionError, BackendReply

WARP_API_BASE = "https://app.warp.dev/api/v1"
TASK_TITLE = "afkcode task"


class WarpAgentBackend(AgentBackend):
    """Runs a turn as a remote Warp agent task over HTTP.

    A task is created with ``POST /agent/run`` and then polled until it reaches a
    terminal state. Non-2xx responses become failed replies carrying the status line
    so rate-limit phrases in them are still classified.
    """

    name = "warp"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = WARP_API_BASE,
        poll_interval: float = 1.0,
        max_polls: int = 180,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("WARP_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._transport = transport
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def invoke(
        self,
        prompt: str,
        model: str | None = None,
        *,
        quick: bool = False,
    ) -> BackendReply:
        if not self.api_key:
            raise BackendExecutionError(
                "Warp API key missing; set WARP_API_KEY or backends.warp_api_key.",
                backend=self.name,
                retriable=False,
            )

        body: dict[str, Any] = {"prompt": prompt, "title": TASK_TITLE}
        if model:
            body["config"] = {"model_id": model}

        try:
            async with self._client() as client:
                response = await client.post("/agent/run", json=body)
                if response.is_error:
                    return _error_reply(response)
                task_id = str(response.json().get("task_id", ""))
                if not task_id:
                    return BackendReply(output="Warp response missing task_id", exit_code=1)
                self._emit({"event": "warp_task_created", "backend": self.name, "task_id": task_id})
                return await self._poll(client, task_id)
        except httpx.TimeoutException as exc:
            raise BackendExecutionError(
                f"Warp request timed out: {exc}", backend=self.name, retriable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendExecutionError(
                f"Warp request failed: {exc}", backend=self.name, retriable=True
            ) from exc
        except ValueError as exc:
            raise BackendExecutionError(
                f"Warp returned invalid JSON: {exc}", backend=self.name, retriable=True
            ) from exc

    async def _poll(self, client: httpx.AsyncClient, task_id: str) -> BackendReply:
        for _ in range(self.max_polls):
            response = await client.get(f"/agent/tasks/{task_id}")
            if response.is_error:
                return _error_reply(response)
            payload = response.json()
            state = str(payload.get("state", "")).upper()
            if state == "SUCCEEDED":
                output = payload.get("session_link") or "Task completed"
                return BackendReply(output=str(output), exit_code=0)
            if state == "FAILED":
                message = payload.get("status_message") or payload.get("error") or "Task failed"
                return BackendReply(output=str(message), exit_code=1)
            await asyncio.sleep(self.poll_interval)
        return BackendReply(
            output=f"Warp task {task_id} did not finish after {self.max_polls} polls",
            exit_code=1,
        )


def _error_reply(response: httpx.Response) -> BackendReply:
    return BackendReply(
        output=f"HTTP {response.status_code} {response.reason_phrase}: {response.text[:400]}",
        exit_code=1,
    )
