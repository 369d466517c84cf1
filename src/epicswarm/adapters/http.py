"""HTTP collaborators talking to the dashboard API using httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from epicswarm.errors import BacklogError, EpicNotFoundError, PersistenceError
from epicswarm.protocol.models import ActiveEpicClaim, EpicChildren, SpawnResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:3333"
DEFAULT_MODEL = "opus-4.5"
RETRYABLE_STATUS = (429, 500, 502, 503)


class _ApiClient:
    """Owns one ``httpx.AsyncClient`` against the dashboard base URL."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create a fresh httpx client."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            headers={"content-type": "application/json"},
        )

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the client, recreating it if closed."""
        if self._client.is_closed:
            self._client = self._create_client()
        return self._client

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()


class HttpBacklogStore(_ApiClient):
    """Reads an epic's children from ``GET /api/epics/{id}/children``."""

    async def fetch_children(self, epic_id: str) -> EpicChildren:
        client = self._ensure_client()
        try:
            response = await client.get(f"/api/epics/{epic_id}/children")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise EpicNotFoundError(epic_id) from e
            raise BacklogError(
                f"Backlog API error {status}: {_error_message(e.response) or e.response.text[:500]}",
                status_code=status,
                retryable=status in RETRYABLE_STATUS,
            ) from e
        except httpx.TimeoutException as e:
            raise BacklogError("Backlog API timeout") from e
        except httpx.RequestError as e:
            raise BacklogError(f"Backlog request error: {e}") from e
        except ValueError as e:
            raise BacklogError(f"Backlog API returned invalid JSON for {epic_id}", retryable=False) from e

        if not isinstance(payload, dict):
            raise BacklogError(f"Unexpected children payload for {epic_id}", retryable=False)
        try:
            return EpicChildren.from_payload(epic_id, payload)
        except (TypeError, ValueError, KeyError) as e:
            raise BacklogError(f"Malformed children payload for {epic_id}: {e}", retryable=False) from e


class HttpSpawner(_ApiClient):
    """Starts a worker session via ``POST /api/work/spawn``.

    The endpoint picks the agent name and project itself.  Failures are
    returned, never raised.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        *,
        model: str = DEFAULT_MODEL,
    ) -> None:
        super().__init__(base_url, timeout)
        self._model = model

    async def spawn(self, task_id: str) -> SpawnResult:
        client = self._ensure_client()
        try:
            response = await client.post("/api/work/spawn", json={"taskId": task_id, "model": self._model})
        except httpx.TimeoutException:
            return SpawnResult(success=False, task_id=task_id, error="Spawn request timed out")
        except httpx.RequestError as e:
            return SpawnResult(success=False, task_id=task_id, error=str(e) or "Network error")

        if response.is_error:
            error = _error_message(response) or f"Failed to spawn agent (HTTP {response.status_code})"
            logger.debug("Spawn for %s rejected with %d: %s", task_id, response.status_code, error)
            return SpawnResult(success=False, task_id=task_id, error=error)

        try:
            data = response.json()
        except ValueError:
            data = {}
        session = data.get("session") if isinstance(data, dict) else None
        session = session if isinstance(session, dict) else {}
        return SpawnResult(
            success=True,
            task_id=task_id,
            worker_id=session.get("agentName"),
            session_id=session.get("sessionName"),
        )


class HttpClaimPublisher(_ApiClient):
    """Publishes the claim marker through ``/api/epics/active``."""

    async def publish(self, claim: ActiveEpicClaim) -> None:
        body = {
            "epicId": claim.epic_id,
            "epicTitle": claim.epic_title,
            "taskIds": list(claim.task_ids),
            "reviewThreshold": claim.review_threshold,
        }
        await self._send("POST", body)
        logger.info("Published claim for epic %s with %d tasks", claim.epic_id, len(claim.task_ids))

    async def retract(self) -> None:
        await self._send("DELETE", None)

    async def _send(self, method: str, body: dict[str, Any] | None) -> None:
        client = self._ensure_client()
        try:
            response = await client.request(method, "/api/epics/active", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise PersistenceError(
                f"Claim API error {status}: {_error_message(e.response) or e.response.text[:500]}",
            ) from e
        except httpx.RequestError as e:
            raise PersistenceError(f"Claim request error: {e}") from e


def _error_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    message = data.get("message") or data.get("error")
    return str(message) if message else None
