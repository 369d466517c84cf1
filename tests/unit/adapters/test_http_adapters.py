"""Tests for the dashboard HTTP collaborators."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from epicswarm.adapters.http import HttpBacklogStore, HttpClaimPublisher, HttpSpawner
from epicswarm.adapters.mock import MockSpawner
from epicswarm.coordinator.epic_queue import EpicScheduler
from epicswarm.errors import BacklogError, EpicNotFoundError, PersistenceError
from epicswarm.protocol.models import ActiveEpicClaim

BASE_URL = "http://dash.test"


def _response(method: str, path: str, status: int = 200, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request(method, BASE_URL + path), **kwargs)


@pytest.fixture
def backlog() -> HttpBacklogStore:
    return HttpBacklogStore(BASE_URL)


@pytest.fixture
def spawner() -> HttpSpawner:
    return HttpSpawner(BASE_URL, model="sonnet")


@pytest.fixture
def publisher() -> HttpClaimPublisher:
    return HttpClaimPublisher(BASE_URL)


class TestFetchChildren:
    @pytest.mark.asyncio
    async def test_parses_children(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children",
            json={
                "epicId": "proj-e1",
                "epicTitle": "Auth",
                "children": [
                    {"id": "proj-a", "title": "A", "priority": 1, "status": "open"},
                    {"id": "proj-b", "title": "B", "priority": 2, "status": "open", "dependsOn": ["proj-a"]},
                ],
            },
        ))
        result = await backlog.fetch_children("proj-e1")
        assert result.epic_title == "Auth"
        assert [c.id for c in result.children] == ["proj-a", "proj-b"]
        assert result.children[1].depends_on_ids == ["proj-a"]
        backlog._client.get.assert_awaited_once_with("/api/epics/proj-e1/children")

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/nope/children", 404, json={"error": "missing"},
        ))
        with pytest.raises(EpicNotFoundError) as exc_info:
            await backlog.fetch_children("nope")
        assert exc_info.value.epic_id == "nope"
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children", 503, json={"message": "bd locked"},
        ))
        with pytest.raises(BacklogError, match="bd locked") as exc_info:
            await backlog.fetch_children("proj-e1")
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_bad_request_not_retryable(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children", 400, text="bad id",
        ))
        with pytest.raises(BacklogError) as exc_info:
            await backlog.fetch_children("proj-e1")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(side_effect=httpx.TimeoutException("timed out"))
        with pytest.raises(BacklogError, match="timeout"):
            await backlog.fetch_children("proj-e1")

    @pytest.mark.asyncio
    async def test_connection_error(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with pytest.raises(BacklogError, match="connection refused"):
            await backlog.fetch_children("proj-e1")

    @pytest.mark.asyncio
    async def test_invalid_json(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children", text="<html>",
        ))
        with pytest.raises(BacklogError) as exc_info:
            await backlog.fetch_children("proj-e1")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_non_mapping_payload(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children", json=[1, 2],
        ))
        with pytest.raises(BacklogError, match="Unexpected"):
            await backlog.fetch_children("proj-e1")


    @pytest.mark.asyncio
    async def test_malformed_child_fields(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children",
            json={"children": [{"id": "proj-a", "priority": "high"}]},
        ))
        with pytest.raises(BacklogError, match="Malformed") as exc_info:
            await backlog.fetch_children("proj-e1")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_malformed_payload_fails_launch(self, backlog: HttpBacklogStore) -> None:
        backlog._client.get = AsyncMock(return_value=_response(
            "GET", "/api/epics/proj-e1/children",
            json={"children": [{"id": "proj-a", "dependsOn": 7}]},
        ))
        scheduler = EpicScheduler(backlog, MockSpawner())
        result = await scheduler.launch("proj-e1")
        assert not result.success
        assert "Malformed" in (result.error or "")
        assert not scheduler.is_active


class TestSpawn:
    @pytest.mark.asyncio
    async def test_success_maps_session(self, spawner: HttpSpawner) -> None:
        spawner._client.post = AsyncMock(return_value=_response(
            "POST", "/api/work/spawn", 201,
            json={"success": True, "session": {"agentName": "BlueLake", "sessionName": "jat-BlueLake"}},
        ))
        result = await spawner.spawn("proj-a")
        assert result.success
        assert result.worker_id == "BlueLake"
        assert result.session_id == "jat-BlueLake"
        spawner._client.post.assert_awaited_once_with(
            "/api/work/spawn", json={"taskId": "proj-a", "model": "sonnet"},
        )

    @pytest.mark.asyncio
    async def test_success_without_session(self, spawner: HttpSpawner) -> None:
        spawner._client.post = AsyncMock(return_value=_response("POST", "/api/work/spawn", json={}))
        result = await spawner.spawn("proj-a")
        assert result.success
        assert result.worker_id is None

    @pytest.mark.asyncio
    async def test_error_message_from_body(self, spawner: HttpSpawner) -> None:
        spawner._client.post = AsyncMock(return_value=_response(
            "POST", "/api/work/spawn", 409, json={"message": "Task already assigned"},
        ))
        result = await spawner.spawn("proj-a")
        assert not result.success
        assert result.task_id == "proj-a"
        assert result.error == "Task already assigned"

    @pytest.mark.asyncio
    async def test_error_without_body(self, spawner: HttpSpawner) -> None:
        spawner._client.post = AsyncMock(return_value=_response(
            "POST", "/api/work/spawn", 500, text="",
        ))
        result = await spawner.spawn("proj-a")
        assert result.error == "Failed to spawn agent (HTTP 500)"

    @pytest.mark.asyncio
    async def test_network_errors_are_returned(self, spawner: HttpSpawner) -> None:
        spawner._client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        result = await spawner.spawn("proj-a")
        assert not result.success
        assert result.error == "refused"

        spawner._client.post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        result = await spawner.spawn("proj-a")
        assert result.error == "Spawn request timed out"


class TestClaimPublisher:
    @pytest.mark.asyncio
    async def test_publish_body(self, publisher: HttpClaimPublisher) -> None:
        publisher._client.request = AsyncMock(return_value=_response("POST", "/api/epics/active"))
        claim = ActiveEpicClaim(epic_id="proj-e1", epic_title="Auth", task_ids=["proj-a"], review_threshold="all")
        await publisher.publish(claim)
        publisher._client.request.assert_awaited_once_with(
            "POST",
            "/api/epics/active",
            json={"epicId": "proj-e1", "epicTitle": "Auth", "taskIds": ["proj-a"], "reviewThreshold": "all"},
        )

    @pytest.mark.asyncio
    async def test_retract_uses_delete(self, publisher: HttpClaimPublisher) -> None:
        publisher._client.request = AsyncMock(return_value=_response("DELETE", "/api/epics/active"))
        await publisher.retract()
        assert publisher._client.request.await_args.args[0] == "DELETE"

    @pytest.mark.asyncio
    async def test_errors_become_persistence_errors(self, publisher: HttpClaimPublisher) -> None:
        publisher._client.request = AsyncMock(return_value=_response(
            "POST", "/api/epics/active", 500, content=json.dumps({"error": "disk full"}).encode(),
        ))
        claim = ActiveEpicClaim(epic_id="proj-e1", epic_title="Auth", task_ids=[])
        with pytest.raises(PersistenceError, match="disk full"):
            await publisher.publish(claim)

        publisher._client.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(PersistenceError):
            await publisher.retract()


class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_close_and_recreate(self, backlog: HttpBacklogStore) -> None:
        first = backlog._client
        await backlog.close()
        assert first.is_closed
        assert backlog._ensure_client() is not first
        await backlog.close()

    def test_base_url_trailing_slash(self) -> None:
        assert HttpSpawner("http://dash.test/").base_url == "http://dash.test"
