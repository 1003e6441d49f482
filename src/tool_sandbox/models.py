"""Data models for tool execution, schema extraction and verification."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ToolReference:
	"""A callable unit inside a registry package."""

	package_name: str
	export_name: str
	version: str = "latest"

	@property
	def key(self) -> str:
		return f"{self.package_name}::{self.export_name}"

	@property
	def spec(self) -> str:
		"""Installer argument, e.g. ``demo-tool@1.2.0``."""
		return f"{self.package_name}@{self.version}"


@dataclass
class ExecutionRequest:
	reference: ToolReference
	parameters: dict[str, Any] = field(default_factory=dict)
	environment: dict[str, str] = field(default_factory=dict)


class ErrorKind(str, Enum):
	"""Failure classification for an execution or schema extraction."""

	INVALID_REQUEST = "INVALID_REQUEST"
	INSTALL_FAILED = "INSTALL_FAILED"
	TOOL_THREW = "TOOL_THREW"
	EXECUTION_FAILED = "EXECUTION_FAILED"
	TIMEOUT = "TIMEOUT"
	RATE_LIMITED = "RATE_LIMITED"


@dataclass
class ExecutionSuccess:
	output: Any = None
	duration_ms: int = 0
	success: Literal[True] = True

	def to_response(self) -> dict[str, Any]:
		return {
			"success": True,
			"output": self.output,
			"executionTimeMs": self.duration_ms,
		}


@dataclass
class ExecutionFailure:
	kind: ErrorKind
	message: str
	stderr: str | None = None
	exit_code: int | None = None
	duration_ms: int = 0
	success: Literal[False] = False

	def to_response(self) -> dict[str, Any]:
		body: dict[str, Any] = {
			"success": False,
			"error": self.message,
			"code": self.kind.value,
			"executionTimeMs": self.duration_ms,
		}
		if self.stderr:
			body["stderr"] = self.stderr
		return body


ExecutionOutcome = Union[ExecutionSuccess, ExecutionFailure]


@dataclass
class SchemaParameter:
	"""Legacy flat parameter descriptor derived from a JSON schema."""

	name: str
	type: str = "string"
	required: bool = False
	description: str = ""

	def to_dict(self) -> dict[str, Any]:
		return {
			"name": self.name,
			"type": self.type,
			"required": self.required,
			"description": self.description,
		}


@dataclass
class SchemaExtractionResult:
	success: bool
	input_schema: dict[str, Any] | None = None
	parameters: list[SchemaParameter] = field(default_factory=list)
	description: str | None = None
	error: str | None = None
	error_kind: ErrorKind | None = None
	retry_after: float | None = None

	def to_response(self) -> dict[str, Any]:
		if self.success:
			return {
				"success": True,
				"inputSchema": self.input_schema,
				"parameters": [p.to_dict() for p in self.parameters],
				"description": self.description,
			}
		body: dict[str, Any] = {
			"success": False,
			"error": self.error,
			"code": self.error_kind.value if self.error_kind else None,
		}
		if self.retry_after is not None:
			body["retryAfter"] = self.retry_after
		return body


class VerificationError(str, Enum):
	"""Why a candidate executor URL was rejected."""

	INVALID_URL = "INVALID_URL"
	INSECURE_URL = "INSECURE_URL"
	PRIVATE_URL = "PRIVATE_URL"
	UNREACHABLE = "UNREACHABLE"
	MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
	UNHEALTHY = "UNHEALTHY"
	TEST_EXECUTION_FAILED = "TEST_EXECUTION_FAILED"


@dataclass
class VerificationResult:
	reachable: bool
	capabilities_ok: bool = False
	latency_ms: int | None = None
	error: VerificationError | None = None
	message: str = ""
	health: dict[str, Any] | None = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"reachable": self.reachable,
			"capabilitiesOk": self.capabilities_ok,
		}
		if self.latency_ms is not None:
			data["latencyMs"] = self.latency_ms
		if self.error is not None:
			data["error"] = self.error.value
		if self.message:
			data["message"] = self.message
		if self.health is not None:
			data["health"] = self.health
		return data


class HealthStatus(str, Enum):
	UNKNOWN = "UNKNOWN"
	HEALTHY = "HEALTHY"
	BROKEN = "BROKEN"


@dataclass
class ToolHealth:
	"""Persisted health row for one tool."""

	tool_key: str
	status: HealthStatus = HealthStatus.UNKNOWN
	last_checked_at: str = field(default_factory=_now_iso)
	last_error: str | None = None


@dataclass
class ExecutorConfig:
	"""Which executor runs a collection's tools."""

	type: Literal["default", "custom_url"] = "default"
	url: str = ""
	api_key: str = ""


@dataclass
class CollectionTool:
	reference: ToolReference
	description: str = ""
	input_schema: dict[str, Any] = field(default_factory=dict)
	environment: dict[str, str] = field(default_factory=dict)


@dataclass
class Collection:
	"""An ordered, read-only set of tools exposed under one MCP endpoint."""

	id: str
	name: str
	description: str = ""
	is_public: bool = True
	tools: list[CollectionTool] = field(default_factory=list)
	executor: ExecutorConfig | None = None


# -- Wire models --

class ExecuteToolBody(BaseModel):
	"""Inbound execution request."""

	package_name: str = Field(alias="packageName", min_length=1)
	export_name: str = Field(alias="exportName", min_length=1)
	version: str = "latest"
	parameters: dict[str, Any] = {}
	environment: dict[str, str] = {}


class ExtractSchemaBody(BaseModel):
	package_name: str = Field(alias="packageName", min_length=1)
	export_name: str = Field(alias="exportName", min_length=1)
	version: str = "latest"
	environment: dict[str, str] = {}


class VerifyExecutorBody(BaseModel):
	url: str
	api_key: str | None = Field(default=None, alias="apiKey")


class ReportHealthBody(BaseModel):
	package_name: str = Field(alias="packageName", min_length=1)
	export_name: str = Field(alias="exportName", min_length=1)
	success: bool
	error: str | None = None


class ExecutorHealthResponse(BaseModel, extra="ignore"):
	"""Body a custom executor returns from its health route."""

	status: Literal["ok", "degraded", "error"]
	version: str | None = None
	info: dict[str, Any] | None = None


class RemoteExecuteResponse(BaseModel, extra="ignore"):
	"""Body a custom executor returns from ``/execute-tool``."""

	success: bool
	output: Any = None
	error: str | None = None
	execution_time_ms: int = Field(default=0, alias="executionTimeMs")


class RemoteExecuteBody(BaseModel):
	"""Inbound request on the executor-contract route, as sent by RemoteExecutor."""

	package_name: str = Field(alias="packageName", min_length=1)
	name: str = Field(min_length=1)
	version: str = "latest"
	params: dict[str, Any] = {}
	env: dict[str, str] = {}
