"""FastAPI application exposing tool execution, schema extraction, verification and MCP."""

from __future__ import annotations

import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from mcp.types import PARSE_ERROR

from tool_sandbox import __version__
from tool_sandbox.config import SandboxServiceConfig
from tool_sandbox.mcp_bridge import COLLECTION_NOT_FOUND, server_info
from tool_sandbox.models import (
	ErrorKind,
	ExecuteToolBody,
	ExecutionFailure,
	ExecutionRequest,
	ExtractSchemaBody,
	HealthStatus,
	RemoteExecuteBody,
	ReportHealthBody,
	ToolReference,
	VerifyExecutorBody,
)
from tool_sandbox.sandbox import ProvisioningError
from tool_sandbox.service import SandboxService

logger = logging.getLogger(__name__)

_MCP_TRANSPORTS = ("http", "sse")


def _error_body(code: str, message: str) -> dict[str, Any]:
	return {"success": False, "error": {"code": code, "message": message}}


def create_app(
	config: SandboxServiceConfig | None = None,
	service: SandboxService | None = None,
) -> FastAPI:
	"""Factory: build the tool-sandbox FastAPI app.

	Pass a prebuilt ``service`` to control its backend and collaborators
	(tests do); otherwise one is built from ``config`` at startup.
	"""
	config = config or (service.config if service else SandboxServiceConfig())
	owns_service = service is None

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		app.state.service = service or SandboxService.from_config(config)
		yield
		if owns_service:
			app.state.service.close()

	app = FastAPI(title="tool-sandbox", version=__version__, lifespan=lifespan)

	def _svc(request: Request) -> SandboxService:
		return request.app.state.service

	@app.exception_handler(RequestValidationError)
	async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
		return JSONResponse(_error_body("INVALID_REQUEST", str(exc.errors())), status_code=400)

	@app.exception_handler(ProvisioningError)
	async def provisioning_error(request: Request, exc: ProvisioningError) -> JSONResponse:
		logger.error("Sandbox provisioning failed: %s", exc)
		return JSONResponse(_error_body("PROVISIONING_FAILED", str(exc)), status_code=503)

	# -- Health --

	@app.get("/health")
	async def health(request: Request) -> dict[str, Any]:
		return {
			"status": "ok",
			"version": __version__,
			"info": {"backend": _svc(request).config.sandbox.backend},
		}

	# -- Execution --

	@app.post("/api/tools/execute")
	async def execute_tool(body: ExecuteToolBody, request: Request) -> JSONResponse:
		outcome = await _svc(request).executor.execute(ExecutionRequest(
			reference=ToolReference(body.package_name, body.export_name, body.version),
			parameters=body.parameters,
			environment=body.environment,
		))
		status = 200
		if isinstance(outcome, ExecutionFailure) and outcome.kind == ErrorKind.INVALID_REQUEST:
			status = 400
		return JSONResponse(outcome.to_response(), status_code=status)

	@app.post("/execute-tool")
	async def execute_tool_contract(body: RemoteExecuteBody, request: Request) -> JSONResponse:
		"""The custom executor contract, so this service can back another registry."""
		outcome = await _svc(request).executor.execute(ExecutionRequest(
			reference=ToolReference(body.package_name, body.name, body.version),
			parameters=body.params,
			environment=body.env,
		))
		if isinstance(outcome, ExecutionFailure):
			return JSONResponse({
				"success": False,
				"error": outcome.message,
				"executionTimeMs": outcome.duration_ms,
			})
		return JSONResponse({
			"success": True,
			"output": outcome.output,
			"executionTimeMs": outcome.duration_ms,
		})

	@app.post("/api/tools/extract-schema")
	async def extract_schema(body: ExtractSchemaBody, request: Request) -> JSONResponse:
		result = await _svc(request).extractor.extract_schema(
			body.package_name, body.export_name, body.version, body.environment,
		)
		if result.error_kind == ErrorKind.RATE_LIMITED:
			retry_after = result.retry_after or 0.0
			return JSONResponse(
				result.to_response(),
				status_code=429,
				headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
			)
		status = 400 if result.error_kind == ErrorKind.INVALID_REQUEST else 200
		return JSONResponse(result.to_response(), status_code=status)

	# -- Verification --

	@app.post("/api/executors/verify")
	async def verify_executor(body: VerifyExecutorBody, request: Request) -> dict[str, Any]:
		result = await _svc(request).verifier.verify(body.url, body.api_key)
		return {"success": True, "data": result.to_dict()}

	# -- Tool health --

	@app.post("/api/tools/report-health")
	async def report_health(body: ReportHealthBody, request: Request) -> dict[str, Any]:
		ref = ToolReference(body.package_name, body.export_name)
		health = _svc(request).health.report(ref, body.success, probe=True, error=body.error)
		return {
			"success": True,
			"data": {
				"toolKey": health.tool_key,
				"healthStatus": health.status.value,
				"healthError": health.last_error,
			},
		}

	@app.get("/api/tools/health")
	async def get_health(packageName: str, exportName: str, request: Request) -> dict[str, Any]:
		ref = ToolReference(packageName, exportName)
		health = _svc(request).health.get(ref.key)
		return {
			"success": True,
			"data": {
				"toolKey": ref.key,
				"healthStatus": health.status.value if health else HealthStatus.UNKNOWN.value,
				"healthError": health.last_error if health else None,
				"lastCheckedAt": health.last_checked_at if health else None,
			},
		}

	# -- MCP --

	@app.post("/api/collections/{collection_id}/mcp/{transport}")
	async def mcp_post(collection_id: str, transport: str, request: Request) -> Response:
		if transport not in _MCP_TRANSPORTS:
			return JSONResponse({"error": f"Unknown transport: {transport}"}, status_code=404)
		body = await request.body()
		response = await _svc(request).dispatcher.dispatch(collection_id, body)

		status = 200
		error = response.get("error")
		if error and error["code"] == COLLECTION_NOT_FOUND:
			status = 404
		elif error and error["code"] == PARSE_ERROR:
			status = 400

		if transport == "sse":
			return Response(
				content=f"data: {json.dumps(response)}\n\n",
				media_type="text/event-stream",
				status_code=status,
				headers={"Cache-Control": "no-cache"},
			)
		return JSONResponse(response, status_code=status)

	@app.get("/api/collections/{collection_id}/mcp/{transport}")
	async def mcp_info(collection_id: str, transport: str, request: Request) -> JSONResponse:
		if transport not in _MCP_TRANSPORTS:
			return JSONResponse({"error": f"Unknown transport: {transport}"}, status_code=404)
		dispatcher = _svc(request).dispatcher
		collection = await dispatcher.get_public_collection(collection_id)
		if collection is None:
			return JSONResponse({"error": "Collection not found"}, status_code=404)
		return JSONResponse(server_info(collection, dispatcher, transport, str(request.url.path)))

	return app
