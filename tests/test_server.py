"""Tests for the FastAPI application."""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import FakeBackend, make_collection, make_config, node_failure, node_success
from fastapi.testclient import TestClient

from tool_sandbox import __version__
from tool_sandbox.collection_source import StaticCollectionSource
from tool_sandbox.sandbox import CommandResult, ProvisioningError
from tool_sandbox.server import create_app
from tool_sandbox.service import SandboxService

_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}


def _client(backend: FakeBackend, transport: httpx.AsyncBaseTransport | None = None, **config) -> TestClient:
	cfg = make_config()
	for section, values in config.items():
		for key, value in values.items():
			setattr(getattr(cfg, section), key, value)
	service = SandboxService.from_config(
		cfg,
		backend=backend,
		collections=StaticCollectionSource({"c1": make_collection()}),
		transport=transport,
	)
	return TestClient(create_app(service=service))


@pytest.fixture()
def backend() -> FakeBackend:
	return FakeBackend({"node": node_success({"echo": "hi"})})


@pytest.fixture()
def client(backend: FakeBackend):
	with _client(backend) as c:
		yield c


_EXECUTE = {"packageName": "demo-tool", "exportName": "echoTool", "version": "1.0.0", "parameters": {"text": "hi"}}


class TestHealthRoute:
	def test_health(self, client: TestClient) -> None:
		resp = client.get("/health")
		assert resp.status_code == 200
		assert resp.json() == {"status": "ok", "version": __version__, "info": {"backend": "local"}}


class TestExecuteRoute:
	def test_success(self, client: TestClient) -> None:
		resp = client.post("/api/tools/execute", json=_EXECUTE)
		assert resp.status_code == 200
		body = resp.json()
		assert body["success"] is True
		assert body["output"] == {"echo": "hi"}
		assert isinstance(body["executionTimeMs"], int)

	def test_tool_failure_is_200(self) -> None:
		with _client(FakeBackend({"node": node_failure("City not found")})) as c:
			resp = c.post("/api/tools/execute", json=_EXECUTE)
		assert resp.status_code == 200
		assert resp.json()["success"] is False
		assert resp.json()["code"] == "TOOL_THREW"
		assert resp.json()["error"] == "City not found"

	def test_missing_fields_400(self, client: TestClient) -> None:
		resp = client.post("/api/tools/execute", json={"packageName": "demo-tool"})
		assert resp.status_code == 400
		assert resp.json()["error"]["code"] == "INVALID_REQUEST"

	def test_invalid_package_400(self, client: TestClient, backend: FakeBackend) -> None:
		resp = client.post("/api/tools/execute", json={**_EXECUTE, "packageName": "../etc"})
		assert resp.status_code == 400
		assert resp.json()["code"] == "INVALID_REQUEST"
		assert backend.provisioned == []

	def test_provisioning_failure_503(self) -> None:
		with _client(FakeBackend(provision_error=ProvisioningError("no docker"))) as c:
			resp = c.post("/api/tools/execute", json=_EXECUTE)
		assert resp.status_code == 503
		assert resp.json()["error"]["code"] == "PROVISIONING_FAILED"

	def test_execution_records_health(self, client: TestClient) -> None:
		client.post("/api/tools/execute", json=_EXECUTE)
		resp = client.get("/api/tools/health", params={"packageName": "demo-tool", "exportName": "echoTool"})
		assert resp.json()["data"]["healthStatus"] == "HEALTHY"

	def test_executor_contract_route(self, client: TestClient) -> None:
		resp = client.post("/execute-tool", json={
			"packageName": "demo-tool", "name": "echoTool", "version": "1.0.0", "params": {"text": "hi"},
		})
		assert resp.status_code == 200
		body = resp.json()
		assert body["success"] is True
		assert body["output"] == {"echo": "hi"}


class TestExtractSchemaRoute:
	def test_success(self) -> None:
		with _client(FakeBackend({"node": node_success({"inputSchema": _SCHEMA, "description": "Echo"})})) as c:
			resp = c.post("/api/tools/extract-schema", json={"packageName": "demo-tool", "exportName": "echoTool"})
		assert resp.status_code == 200
		body = resp.json()
		assert body["inputSchema"] == _SCHEMA
		assert body["parameters"] == [{"name": "text", "type": "string", "required": True, "description": ""}]

	def test_rate_limited_429(self) -> None:
		backend = FakeBackend({"node": node_success({"inputSchema": _SCHEMA})})
		with _client(backend, schema={"cooldown_seconds": 60.0}) as c:
			first = c.post("/api/tools/extract-schema", json={"packageName": "demo-tool", "exportName": "echoTool"})
			second = c.post("/api/tools/extract-schema", json={"packageName": "demo-tool", "exportName": "echoTool"})
		assert first.status_code == 200
		assert second.status_code == 429
		assert second.json()["code"] == "RATE_LIMITED"
		assert 1 <= int(second.headers["retry-after"]) <= 60
		assert len(backend.provisioned) == 1

	def test_install_failure(self) -> None:
		with _client(FakeBackend({"npm": CommandResult(exit_code=1, stderr="404")})) as c:
			resp = c.post("/api/tools/extract-schema", json={"packageName": "demo-tool", "exportName": "echoTool"})
		assert resp.status_code == 200
		assert resp.json()["code"] == "INSTALL_FAILED"


class TestVerifyRoute:
	def test_rejection_is_200_with_data(self, client: TestClient) -> None:
		resp = client.post("/api/executors/verify", json={"url": "https://127.0.0.1"})
		assert resp.status_code == 200
		body = resp.json()
		assert body["success"] is True
		assert body["data"]["error"] == "PRIVATE_URL"
		assert body["data"]["reachable"] is False

	def test_development_probe(self) -> None:
		def handler(request: httpx.Request) -> httpx.Response:
			return httpx.Response(200, json={"status": "ok"})

		with _client(
			FakeBackend(), transport=httpx.MockTransport(handler), verification={"development": True},
		) as c:
			resp = c.post("/api/executors/verify", json={"url": "http://localhost:3000", "apiKey": "k"})
		data = resp.json()["data"]
		assert data["reachable"] is True
		assert data["capabilitiesOk"] is True
		assert "error" not in data


class TestReportHealthRoute:
	def test_failure_breaks(self, client: TestClient) -> None:
		resp = client.post("/api/tools/report-health", json={
			"packageName": "demo-tool", "exportName": "echoTool", "success": False, "error": "TypeError: boom",
		})
		assert resp.json()["data"] == {
			"toolKey": "demo-tool::echoTool",
			"healthStatus": "BROKEN",
			"healthError": "TypeError: boom",
		}

	def test_non_breaking_failure_stays_healthy(self, client: TestClient) -> None:
		resp = client.post("/api/tools/report-health", json={
			"packageName": "demo-tool", "exportName": "echoTool", "success": False, "error": "API_KEY is required",
		})
		assert resp.json()["data"]["healthStatus"] == "HEALTHY"

	def test_unknown_health(self, client: TestClient) -> None:
		resp = client.get("/api/tools/health", params={"packageName": "x", "exportName": "y"})
		assert resp.json()["data"]["healthStatus"] == "UNKNOWN"


class TestMcpRoutes:
	def test_http_transport(self, client: TestClient) -> None:
		resp = client.post("/api/collections/c1/mcp/http", content=json.dumps({
			"jsonrpc": "2.0", "id": 1, "method": "tools/list",
		}))
		assert resp.status_code == 200
		assert resp.json()["result"]["tools"][0]["name"] == "acme_demo-tool--echoTool"

	def test_unknown_collection_404(self, client: TestClient) -> None:
		resp = client.post("/api/collections/nope/mcp/http", content='{"jsonrpc": "2.0", "id": 5, "method": "ping"}')
		assert resp.status_code == 404
		assert resp.json()["error"]["code"] == -32001
		assert resp.json()["id"] == 5

	def test_parse_error_400(self, client: TestClient) -> None:
		resp = client.post("/api/collections/c1/mcp/http", content="{oops")
		assert resp.status_code == 400
		assert resp.json()["error"]["code"] == -32700

	def test_sse_transport(self, client: TestClient) -> None:
		resp = client.post("/api/collections/c1/mcp/sse", content='{"jsonrpc": "2.0", "id": 2, "method": "ping"}')
		assert resp.status_code == 200
		assert resp.headers["content-type"].startswith("text/event-stream")
		assert resp.text.startswith("data: ")
		assert json.loads(resp.text[len("data: "):].strip())["id"] == 2

	def test_unknown_transport(self, client: TestClient) -> None:
		assert client.post("/api/collections/c1/mcp/ws", content="{}").status_code == 404

	def test_get_info(self, client: TestClient) -> None:
		resp = client.get("/api/collections/c1/mcp/http")
		assert resp.status_code == 200
		body = resp.json()
		assert body["name"] == "tool-sandbox: Demo"
		assert body["tools"] == 1
		assert body["endpoint"] == "/api/collections/c1/mcp/http"

	def test_get_info_unknown(self, client: TestClient) -> None:
		assert client.get("/api/collections/nope/mcp/http").status_code == 404
