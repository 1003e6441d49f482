"""MCP bridge -- expose a collection's tools over JSON-RPC 2.0.

The HTTP transports hand raw request bodies to ``McpDispatcher.dispatch``,
which is stateless: the collection is looked up fresh on every request.
``run_stdio_server`` serves one collection over stdio with the MCP SDK.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
	INTERNAL_ERROR,
	INVALID_PARAMS,
	INVALID_REQUEST,
	METHOD_NOT_FOUND,
	PARSE_ERROR,
	CallToolResult,
	Implementation,
	InitializeResult,
	ServerCapabilities,
	TextContent,
	Tool,
	ToolsCapability,
)

from tool_sandbox.collection_source import CollectionSource
from tool_sandbox.config import McpConfig
from tool_sandbox.models import Collection, CollectionTool, ExecutionFailure, ExecutionRequest
from tool_sandbox.remote import ExecutorResolver
from tool_sandbox.sandbox import ProvisioningError

logger = logging.getLogger(__name__)

# Application-defined, outside the reserved JSON-RPC range
COLLECTION_NOT_FOUND = -32001

_NAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")
_MAX_TOOL_NAME = 128

JsonRpcId = str | int | float | None


def mcp_tool_name(tool: CollectionTool) -> str:
	"""``<package>--<export>`` with characters outside ``[A-Za-z0-9_-]`` replaced by ``_``."""
	package = tool.reference.package_name.lstrip("@")
	name = f"{_NAME_UNSAFE_RE.sub('_', package)}--{_NAME_UNSAFE_RE.sub('_', tool.reference.export_name)}"
	return name[:_MAX_TOOL_NAME]


def to_mcp_tool(tool: CollectionTool) -> Tool:
	schema = tool.input_schema or {"type": "object", "properties": {}}
	return Tool(
		name=mcp_tool_name(tool),
		description=tool.description or f"{tool.reference.export_name} from {tool.reference.package_name}",
		inputSchema=schema,
	)


def _result(request_id: JsonRpcId, result: dict[str, Any]) -> dict[str, Any]:
	return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: JsonRpcId, code: int, message: str) -> dict[str, Any]:
	return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _dump(model: Any) -> dict[str, Any]:
	return model.model_dump(by_alias=True, exclude_none=True)


def _request_id(message: Any) -> JsonRpcId:
	if isinstance(message, dict):
		rid = message.get("id")
		if rid is None or isinstance(rid, (str, int, float)) and not isinstance(rid, bool):
			return rid
	return None


def format_output(output: Any) -> str:
	if isinstance(output, str):
		return output
	return json.dumps(output, indent=2, default=str)


class ToolCallFailed(Exception):
	"""A tool ran but reported failure."""


class McpDispatcher:
	"""Translates JSON-RPC requests against one collection into executor calls."""

	def __init__(
		self,
		collections: CollectionSource,
		executors: ExecutorResolver,
		config: McpConfig | None = None,
	) -> None:
		self._collections = collections
		self._executors = executors
		self._config = config or McpConfig()

	async def get_public_collection(self, collection_id: str) -> Collection | None:
		collection = await self._collections.get(collection_id)
		if collection is None or not collection.is_public:
			return None
		return collection

	def server_name(self, collection: Collection) -> str:
		return f"{self._config.server_name_prefix}: {collection.name}"

	async def dispatch(self, collection_id: str, body: str | bytes) -> dict[str, Any]:
		"""Handle one JSON-RPC request body and return the response object."""
		try:
			message: Any = json.loads(body)
			parsed = True
		except (json.JSONDecodeError, UnicodeDecodeError):
			message, parsed = None, False
		request_id = _request_id(message)

		collection = await self.get_public_collection(collection_id)
		if collection is None:
			return _error(request_id, COLLECTION_NOT_FOUND, "Collection not found")
		if not parsed:
			return _error(None, PARSE_ERROR, "Parse error")
		if not isinstance(message, dict) or not isinstance(message.get("method"), str):
			return _error(request_id, INVALID_REQUEST, "Invalid Request")

		method = message["method"]
		params = message.get("params") or {}
		logger.debug("MCP %s on collection %s", method, collection_id)

		if method == "initialize":
			return _result(request_id, self.initialize(collection))
		if method == "tools/list":
			return _result(request_id, {"tools": [_dump(t) for t in self.list_tools(collection)]})
		if method == "tools/call":
			return await self._handle_call(collection, params, request_id)
		if method in ("notifications/initialized", "ping"):
			return _result(request_id, {})
		return _error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

	def initialize(self, collection: Collection) -> dict[str, Any]:
		return _dump(InitializeResult(
			protocolVersion=self._config.protocol_version,
			capabilities=ServerCapabilities(tools=ToolsCapability()),
			serverInfo=Implementation(name=self.server_name(collection), version=self._config.server_version),
		))

	def list_tools(self, collection: Collection) -> list[Tool]:
		return [to_mcp_tool(t) for t in collection.tools]

	def find_tool(self, collection: Collection, name: str) -> CollectionTool | None:
		for tool in collection.tools:
			if mcp_tool_name(tool) == name:
				return tool
		return None

	async def call_tool(self, collection: Collection, tool: CollectionTool, arguments: dict[str, Any]) -> CallToolResult:
		"""Execute a collection tool. Raises ProvisioningError if no sandbox is available."""
		executor = self._executors.for_config(collection.executor)
		outcome = await executor.execute(ExecutionRequest(
			reference=tool.reference,
			parameters=arguments,
			environment=dict(tool.environment),
		))
		if isinstance(outcome, ExecutionFailure):
			return CallToolResult(
				content=[TextContent(type="text", text=f"Error: {outcome.message}")],
				isError=True,
			)
		return CallToolResult(content=[TextContent(type="text", text=format_output(outcome.output))])

	async def _handle_call(
		self,
		collection: Collection,
		params: Any,
		request_id: JsonRpcId,
	) -> dict[str, Any]:
		if not isinstance(params, dict):
			return _error(request_id, INVALID_PARAMS, "Invalid params")
		name = params.get("name")
		arguments = params.get("arguments") or {}
		if not isinstance(name, str) or not name:
			return _error(request_id, INVALID_PARAMS, f"Invalid tool name: {name}")
		if not isinstance(arguments, dict):
			return _error(request_id, INVALID_PARAMS, "Tool arguments must be an object")

		tool = self.find_tool(collection, name)
		if tool is None:
			return _error(request_id, INVALID_PARAMS, f"Tool not found in collection: {name}")

		try:
			result = await self.call_tool(collection, tool, arguments)
		except ProvisioningError as exc:
			logger.error("MCP tools/call %s could not provision a sandbox: %s", name, exc)
			return _error(request_id, INTERNAL_ERROR, f"Sandbox unavailable: {exc}")
		except Exception as exc:
			logger.exception("MCP tools/call %s failed unexpectedly", name)
			return _error(request_id, INTERNAL_ERROR, f"Internal error: {exc}")
		return _result(request_id, _dump(result))


def server_info(collection: Collection, dispatcher: McpDispatcher, transport: str, endpoint: str) -> dict[str, Any]:
	"""Body for GET on an MCP endpoint."""
	return {
		"name": dispatcher.server_name(collection),
		"description": collection.description,
		"protocol": "mcp",
		"transport": transport,
		"endpoint": endpoint,
		"tools": len(collection.tools),
	}


def build_stdio_server(collection: Collection, dispatcher: McpDispatcher) -> Server:
	"""An MCP SDK server bound to one collection."""
	server = Server(dispatcher.server_name(collection))

	@server.list_tools()
	async def list_tools() -> list[Tool]:
		return dispatcher.list_tools(collection)

	@server.call_tool()
	async def call_tool(name: str, arguments: dict) -> list[TextContent]:
		tool = dispatcher.find_tool(collection, name)
		if tool is None:
			raise ToolCallFailed(f"Tool not found in collection: {name}")
		result = await dispatcher.call_tool(collection, tool, arguments or {})
		texts = [c for c in result.content if isinstance(c, TextContent)]
		if result.isError:
			raise ToolCallFailed(texts[0].text if texts else "Tool failed")
		return texts

	return server


def run_stdio_server(collection_id: str, dispatcher: McpDispatcher) -> None:
	"""Entry point for `tool-sandbox mcp` CLI command."""

	async def _run() -> None:
		collection = await dispatcher.get_public_collection(collection_id)
		if collection is None:
			raise SystemExit(f"Collection not found: {collection_id}")
		server = build_stdio_server(collection, dispatcher)
		async with stdio_server() as (read_stream, write_stream):
			await server.run(read_stream, write_stream, server.create_initialization_options())

	asyncio.run(_run())
