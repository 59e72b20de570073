"""
Integration tests for the API endpoints.
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import AsyncClient
from starlette.websockets import WebSocketDisconnect

from visitqueue.api.auth import create_access_token
from visitqueue.constants import WS_EVENT_QUEUE_UPDATED, EntryStatus, Role
from visitqueue.types.queue import Server

from conftest import FakeClock


class TestQueueAPI:
    """Integration tests for queue entry endpoints."""

    @pytest_asyncio.fixture
    async def joined(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
    ) -> dict:
        """Join the test server's queue as the test consumer."""
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )
        assert response.status_code == 201
        return response.json()

    async def test_join_queue(
        self,
        client: AsyncClient,
        consumer_id: str,
        consumer_headers: dict[str, str],
        server: Server,
    ):
        """Test joining returns the entry with its position and ETA."""
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["position"] == 1
        assert data["eta"] == {"min": 10, "max": 20}
        assert data["entry"]["consumer_id"] == consumer_id
        assert data["entry"]["status"] == EntryStatus.WAITING.value
        assert data["entry"]["sequence_number"] == 1
        assert "X-Request-ID" in response.headers

    async def test_join_twice_conflicts(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
        joined: dict,
    ):
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )

        assert response.status_code == 409
        assert response.json() == {
            "error": "already_queued",
            "detail": response.json()["detail"],
            "retryable": False,
        }

    async def test_join_closed_server(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        closed_server: Server,
    ):
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(closed_server.id)},
            headers=consumer_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "server_unavailable"

    async def test_join_unknown_server(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
    ):
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(uuid4())},
            headers=consumer_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"] == "server_not_found"

    async def test_join_malformed_server_id(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
    ):
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": "not-a-uuid"},
            headers=consumer_headers,
        )

        assert response.status_code == 422

    async def test_operator_cannot_join(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        server: Server,
    ):
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=operator_headers,
        )

        assert response.status_code == 403

    async def test_my_status(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        joined: dict,
    ):
        response = await client.get("/v1/queue/me", headers=consumer_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["entry"]["id"] == joined["entry"]["id"]
        assert data["entry"]["position"] == 1

    async def test_my_status_not_queued(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
    ):
        response = await client.get("/v1/queue/me", headers=consumer_headers)

        assert response.status_code == 200
        assert response.json() == {"entry": None, "message": "Not in any queue"}

    async def test_cancel_own_entry(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        joined: dict,
    ):
        entry_id = joined["entry"]["id"]

        response = await client.post(
            f"/v1/queue/entries/{entry_id}/cancel",
            headers=consumer_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["entry"]["status"] == EntryStatus.CANCELLED.value
        assert data["message"] == "Entry cancelled"

        status_response = await client.get("/v1/queue/me", headers=consumer_headers)
        assert status_response.json()["entry"] is None

    async def test_cancel_other_consumers_entry_forbidden(
        self,
        client: AsyncClient,
        headers_for,
        joined: dict,
    ):
        entry_id = joined["entry"]["id"]

        response = await client.post(
            f"/v1/queue/entries/{entry_id}/cancel",
            headers=headers_for("someone-else"),
        )

        assert response.status_code == 403

    async def test_operator_cancels_any_entry(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        joined: dict,
    ):
        entry_id = joined["entry"]["id"]

        response = await client.post(
            f"/v1/queue/entries/{entry_id}/cancel",
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["entry"]["status"] == EntryStatus.CANCELLED.value

    async def test_cancel_unknown_entry(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
    ):
        response = await client.post(
            f"/v1/queue/entries/{uuid4()}/cancel",
            headers=operator_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"] == "entry_not_found"

    async def test_cancel_twice_conflicts(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        joined: dict,
    ):
        entry_id = joined["entry"]["id"]
        await client.post(f"/v1/queue/entries/{entry_id}/cancel", headers=consumer_headers)

        response = await client.post(
            f"/v1/queue/entries/{entry_id}/cancel",
            headers=consumer_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    async def test_malformed_entry_id(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
    ):
        response = await client.post(
            "/v1/queue/entries/not-a-uuid/skip",
            headers=operator_headers,
        )

        assert response.status_code == 422

    async def test_requires_authentication(self, client: AsyncClient):
        response = await client.get("/v1/queue/me")

        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            "/v1/queue/me",
            headers={"Authorization": "Bearer invalid-token"},
        )

        assert response.status_code == 401


class TestServerAPI:
    """Integration tests for server endpoints."""

    async def join(self, client: AsyncClient, headers_for, server: Server, subject: str) -> dict:
        response = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=headers_for(subject),
        )
        assert response.status_code == 201
        return response.json()

    async def test_list_servers(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
        closed_server: Server,
    ):
        response = await client.get("/v1/servers", headers=consumer_headers)

        assert response.status_code == 200
        names = {s["name"] for s in response.json()["servers"]}
        assert names == {server.name, closed_server.name}

    async def test_list_accepting_only(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
        closed_server: Server,
    ):
        response = await client.get(
            "/v1/servers",
            params={"accepting_only": "true"},
            headers=consumer_headers,
        )

        assert [s["id"] for s in response.json()["servers"]] == [str(server.id)]

    async def test_queue_view_ordering(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        headers_for,
        server: Server,
    ):
        for subject in ("patient-a", "patient-b", "patient-c"):
            await self.join(client, headers_for, server, subject)

        response = await client.get(f"/v1/servers/{server.id}/queue", headers=consumer_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total_waiting"] == 3
        assert [e["consumer_id"] for e in data["ordered_entries"]] == [
            "patient-a",
            "patient-b",
            "patient-c",
        ]
        assert [e["position"] for e in data["ordered_entries"]] == [1, 2, 3]
        assert data["ordered_entries"][2]["eta"] == {"min": 40, "max": 50}

    async def test_queue_view_unknown_server(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
    ):
        response = await client.get(f"/v1/servers/{uuid4()}/queue", headers=consumer_headers)

        assert response.status_code == 404

    async def test_advance_complete_cycle(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        headers_for,
        server: Server,
        clock: FakeClock,
    ):
        """Test calling a consumer and completing their service."""
        await self.join(client, headers_for, server, "patient-a")
        await self.join(client, headers_for, server, "patient-b")

        advance = await client.post(f"/v1/servers/{server.id}/advance", headers=operator_headers)

        assert advance.status_code == 200
        serving = advance.json()
        assert serving["message"] == "Now serving #1"
        assert serving["entry"]["consumer_id"] == "patient-a"
        assert serving["entry"]["status"] == EntryStatus.SERVING.value
        assert serving["entry"]["position"] == 0

        clock.advance(minutes=8)
        complete = await client.post(
            f"/v1/queue/entries/{serving['entry']['id']}/complete",
            headers=operator_headers,
        )

        assert complete.status_code == 200
        data = complete.json()
        assert data["entry"]["status"] == EntryStatus.SERVED.value
        assert data["service_minutes"] == 8
        assert data["tracked"] is True
        assert data["average_service_minutes"] == 8

        status_response = await client.get("/v1/queue/me", headers=headers_for("patient-b"))
        assert status_response.json()["entry"]["position"] == 1
        assert status_response.json()["entry"]["eta"] == {"min": 6, "max": 10}

    async def test_advance_while_serving_conflicts(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        headers_for,
        server: Server,
    ):
        await self.join(client, headers_for, server, "patient-a")
        await self.join(client, headers_for, server, "patient-b")
        await client.post(f"/v1/servers/{server.id}/advance", headers=operator_headers)

        response = await client.post(f"/v1/servers/{server.id}/advance", headers=operator_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "already_serving"

    async def test_advance_empty_queue(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        server: Server,
    ):
        response = await client.post(f"/v1/servers/{server.id}/advance", headers=operator_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "queue_empty"

    async def test_consumer_cannot_advance(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
    ):
        response = await client.post(f"/v1/servers/{server.id}/advance", headers=consumer_headers)

        assert response.status_code == 403

    async def test_skip_waiting_entry(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        headers_for,
        server: Server,
    ):
        first = await self.join(client, headers_for, server, "patient-a")
        await self.join(client, headers_for, server, "patient-b")

        response = await client.post(
            f"/v1/queue/entries/{first['entry']['id']}/skip",
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["entry"]["status"] == EntryStatus.SKIPPED.value
        assert response.json()["message"] == "Entry skipped"
        status_response = await client.get("/v1/queue/me", headers=headers_for("patient-b"))
        assert status_response.json()["entry"]["position"] == 1

    async def test_complete_waiting_entry_conflicts(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        joined_entry_id: str,
    ):
        response = await client.post(
            f"/v1/queue/entries/{joined_entry_id}/complete",
            headers=operator_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    @pytest_asyncio.fixture
    async def joined_entry_id(self, client: AsyncClient, headers_for, server: Server) -> str:
        joined = await self.join(client, headers_for, server, "patient-a")
        return joined["entry"]["id"]

    async def test_close_and_reopen_admission(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        consumer_headers: dict[str, str],
        server: Server,
    ):
        closed = await client.put(
            f"/v1/servers/{server.id}/accepting",
            json={"is_accepting": False},
            headers=operator_headers,
        )

        assert closed.status_code == 200
        assert closed.json()["is_accepting"] is False
        assert closed.json()["waiting_count"] == 0

        rejected = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )
        assert rejected.status_code == 409
        assert rejected.json()["error"] == "server_unavailable"

        reopened = await client.put(
            f"/v1/servers/{server.id}/accepting",
            json={"is_accepting": True},
            headers=operator_headers,
        )
        assert reopened.json()["is_accepting"] is True

        admitted = await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )
        assert admitted.status_code == 201

    async def test_consumer_cannot_toggle_admission(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
        server: Server,
    ):
        response = await client.put(
            f"/v1/servers/{server.id}/accepting",
            json={"is_accepting": False},
            headers=consumer_headers,
        )

        assert response.status_code == 403


class TestStatsAPI:
    """Integration tests for the daily statistics endpoint."""

    async def test_today(
        self,
        client: AsyncClient,
        admin_headers: dict[str, str],
        operator_headers: dict[str, str],
        consumer_headers: dict[str, str],
        server: Server,
    ):
        await client.post(
            "/v1/queue/entries",
            json={"server_id": str(server.id)},
            headers=consumer_headers,
        )
        await client.post(f"/v1/servers/{server.id}/advance", headers=operator_headers)

        response = await client.get("/v1/stats/today", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["service_day"] == "2026-03-02"
        assert data["totals"][EntryStatus.SERVING.value] == 1
        assert data["totals"][EntryStatus.WAITING.value] == 0
        [server_stats] = data["servers"]
        assert server_stats["server"]["id"] == str(server.id)
        assert [r["action"] for r in data["recent_audit"]] == ["entry.serving", "queue.join"]

    async def test_consumer_forbidden(
        self,
        client: AsyncClient,
        consumer_headers: dict[str, str],
    ):
        response = await client.get("/v1/stats/today", headers=consumer_headers)

        assert response.status_code == 403


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "healthy"
        assert "version" in data
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True}

    async def test_liveness_check(self, client: AsyncClient):
        """Test liveness probe endpoint."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["alive"] is True

    async def test_metrics_endpoint(self, client: AsyncClient):
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]


class TestQueueWebSocket:
    """Integration tests for the queue WebSocket."""

    def test_subscribe_sends_snapshot(self, app: FastAPI, server: Server):
        token = create_access_token(subject="nurse-1", role=Role.OPERATOR)
        client = TestClient(app)

        with client.websocket_connect(f"/ws/queue?token={token}") as websocket:
            websocket.send_json({"action": "subscribe", "server_id": str(server.id)})

            assert websocket.receive_json() == {
                "type": "subscribed",
                "server_id": str(server.id),
            }
            snapshot = websocket.receive_json()
            assert snapshot["type"] == WS_EVENT_QUEUE_UPDATED
            assert snapshot["payload"]["server_id"] == str(server.id)
            assert snapshot["payload"]["total_waiting"] == 0

            websocket.send_json({"action": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

    def test_subscribe_unknown_server(self, app: FastAPI):
        token = create_access_token(subject="nurse-1", role=Role.OPERATOR)
        client = TestClient(app)

        with client.websocket_connect(f"/ws/queue?token={token}") as websocket:
            websocket.send_json({"action": "subscribe", "server_id": str(uuid4())})

            message = websocket.receive_json()
            assert message["type"] == "error"
            assert message["error"] == "server_not_found"

    def test_invalid_token_closes(self, app: FastAPI):
        client = TestClient(app)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/queue?token=invalid") as websocket:
                websocket.receive_json()

        assert exc_info.value.code == 1008
