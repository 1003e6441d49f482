"""Custom executors -- delegate execution to an operator-hosted service over HTTP."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from tool_sandbox.executor import ToolExecutor, validate_request
from tool_sandbox.models import (
	ErrorKind,
	ExecutionFailure,
	ExecutionOutcome,
	ExecutionRequest,
	ExecutionSuccess,
	ExecutorConfig,
	RemoteExecuteResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_EXECUTION_TIMEOUT = 300.0


class RemoteExecutor(ToolExecutor):
	"""POSTs execution requests to ``<url>/execute-tool``.

	The remote service is expected to implement the same contract as the
	built-in sandbox: ``{packageName, name, version, params, env}`` in,
	``{success, output?, error?, executionTimeMs}`` out.
	"""

	def __init__(
		self,
		url: str,
		api_key: str = "",
		timeout: float = DEFAULT_EXECUTION_TIMEOUT,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._url = url.rstrip("/")
		self._api_key = api_key
		self._timeout = timeout
		self._transport = transport

	@property
	def url(self) -> str:
		return self._url

	def _headers(self) -> dict[str, str]:
		headers = {"Content-Type": "application/json"}
		if self._api_key:
			headers["Authorization"] = f"Bearer {self._api_key}"
		return headers

	async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
		ref = request.reference
		problem = validate_request(ref, request.environment)
		if problem:
			return ExecutionFailure(kind=ErrorKind.INVALID_REQUEST, message=problem)

		payload: dict[str, Any] = {
			"packageName": ref.package_name,
			"name": ref.export_name,
			"version": ref.version,
			"params": request.parameters,
			"env": request.environment,
		}
		started = time.monotonic()
		try:
			async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
				resp = await client.post(f"{self._url}/execute-tool", json=payload, headers=self._headers())
		except httpx.TimeoutException:
			return ExecutionFailure(
				kind=ErrorKind.TIMEOUT,
				message="Execution timeout",
				duration_ms=int((time.monotonic() - started) * 1000),
			)
		except httpx.HTTPError as exc:
			logger.warning("Executor %s request failed: %s", self._url, exc)
			return ExecutionFailure(
				kind=ErrorKind.EXECUTION_FAILED,
				message=f"Executor request failed: {exc}",
				duration_ms=int((time.monotonic() - started) * 1000),
			)
		elapsed_ms = int((time.monotonic() - started) * 1000)

		try:
			body = RemoteExecuteResponse.model_validate(resp.json())
		except (ValueError, ValidationError):
			if not resp.is_success:
				return ExecutionFailure(
					kind=ErrorKind.EXECUTION_FAILED,
					message=f"Executor returned HTTP {resp.status_code}",
					duration_ms=elapsed_ms,
				)
			return ExecutionFailure(
				kind=ErrorKind.EXECUTION_FAILED,
				message="Executor returned a malformed response",
				duration_ms=elapsed_ms,
			)

		duration_ms = body.execution_time_ms or elapsed_ms
		if body.success:
			return ExecutionSuccess(output=body.output, duration_ms=duration_ms)
		return ExecutionFailure(
			kind=ErrorKind.TOOL_THREW,
			message=body.error or f"Executor returned HTTP {resp.status_code}",
			duration_ms=duration_ms,
		)


def parse_executor_config(executor_type: str | None, config: dict[str, Any] | None) -> ExecutorConfig | None:
	"""Parse a stored executor type + config blob. Returns None if unusable."""
	if not executor_type:
		return None
	if executor_type == "default":
		return ExecutorConfig(type="default")
	if executor_type == "custom_url" and isinstance(config, dict):
		url = config.get("url")
		if isinstance(url, str) and url:
			api_key = config.get("apiKey", config.get("api_key"))
			return ExecutorConfig(
				type="custom_url",
				url=url,
				api_key=api_key if isinstance(api_key, str) else "",
			)
	return None


def resolve_executor_config(
	agent_config: ExecutorConfig | None,
	collection_config: ExecutorConfig | None,
) -> ExecutorConfig:
	"""Agent config wins over collection config; both fall back to the built-in sandbox."""
	if agent_config is not None and agent_config.type != "default":
		return agent_config
	if collection_config is not None and collection_config.type != "default":
		return collection_config
	return ExecutorConfig(type="default")


class ExecutorResolver:
	"""Maps an ExecutorConfig onto a concrete ToolExecutor."""

	def __init__(
		self,
		default: ToolExecutor,
		timeout: float = DEFAULT_EXECUTION_TIMEOUT,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._default = default
		self._timeout = timeout
		self._transport = transport

	@property
	def default(self) -> ToolExecutor:
		return self._default

	def for_config(self, config: ExecutorConfig | None) -> ToolExecutor:
		if config is None or config.type == "default" or not config.url:
			return self._default
		return RemoteExecutor(config.url, config.api_key, self._timeout, self._transport)
