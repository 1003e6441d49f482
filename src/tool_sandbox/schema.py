"""Schema extraction -- load a tool without running it and read its input contract."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from typing import Any

from tool_sandbox.config import SchemaConfig
from tool_sandbox.executor import SandboxExecutor
from tool_sandbox.models import (
	ErrorKind,
	ExecutionFailure,
	SchemaExtractionResult,
	SchemaParameter,
	ToolReference,
)
from tool_sandbox.script import synthesize_describe
from tool_sandbox.tracing import SandboxTracer

logger = logging.getLogger(__name__)

_INVALID_TYPES = ("None", "none", None)
# Keys that describe a schema without a top-level "type"
_TYPELESS_KEYS = ("anyOf", "oneOf", "allOf", "enum", "const", "$ref", "not")


def _default_object(schema: dict[str, Any]) -> None:
	schema["type"] = "object"
	schema.setdefault("properties", {})
	schema.setdefault("additionalProperties", False)


def sanitize_json_schema(schema: Any) -> dict[str, Any]:
	"""Repair schemas that strict JSON Schema consumers reject.

	Non-object input becomes an empty object schema. A ``type`` of
	``"None"``/``null``, or a missing type on a node that has no combinator,
	is replaced by ``object``. Nested properties, items and combinators are
	repaired recursively. The input is never mutated.
	"""
	if not isinstance(schema, dict):
		logger.warning("Invalid schema (not an object), using empty object schema")
		return {"type": "object", "properties": {}, "additionalProperties": False}

	sanitized = copy.copy(schema)
	if "type" in sanitized and sanitized["type"] in _INVALID_TYPES:
		logger.warning("Invalid schema type %r, replacing with 'object'", sanitized["type"])
		_default_object(sanitized)
	elif "type" not in sanitized and not any(k in sanitized for k in _TYPELESS_KEYS):
		_default_object(sanitized)

	props = sanitized.get("properties")
	if isinstance(props, dict):
		sanitized["properties"] = {
			name: sanitize_json_schema(value) if isinstance(value, dict) else value
			for name, value in props.items()
		}

	if isinstance(sanitized.get("items"), dict):
		sanitized["items"] = sanitize_json_schema(sanitized["items"])

	for key in ("anyOf", "oneOf", "allOf"):
		if isinstance(sanitized.get(key), list):
			sanitized[key] = [sanitize_json_schema(s) for s in sanitized[key]]

	return sanitized


def _legacy_type(prop: dict[str, Any]) -> str:
	ptype = prop.get("type")
	if isinstance(ptype, list):
		ptype = next((t for t in ptype if t != "null"), None)
	return ptype if isinstance(ptype, str) and ptype else "string"


def json_schema_to_parameters(schema: dict[str, Any]) -> list[SchemaParameter]:
	"""Flatten an object schema's top-level properties into the legacy parameter list."""
	properties = schema.get("properties")
	if not isinstance(properties, dict):
		return []
	required = schema.get("required") or []
	params: list[SchemaParameter] = []
	for name, prop in properties.items():
		prop = prop if isinstance(prop, dict) else {}
		params.append(SchemaParameter(
			name=name,
			type=_legacy_type(prop),
			required=name in required,
			description=str(prop.get("description") or ""),
		))
	return params


class SchemaExtractor:
	"""Reads a tool's declared input schema with a per-tool cooldown.

	Every real attempt, successful or not, stamps the tool's cooldown both
	when it starts and when it finishes. Rejected attempts do not, so
	``retry_after`` shrinks across repeated calls.
	"""

	def __init__(
		self,
		executor: SandboxExecutor,
		config: SchemaConfig | None = None,
		clock: Callable[[], float] = time.monotonic,
		tracer: SandboxTracer | None = None,
	) -> None:
		self._executor = executor
		self._config = config or SchemaConfig()
		self._clock = clock
		self._tracer = tracer or SandboxTracer()
		self._last_attempt: dict[str, float] = {}
		self._lock = asyncio.Lock()

	async def _acquire(self, reference: ToolReference) -> float | None:
		"""Stamp the tool's cooldown, or return the remaining wait if it is cooling down."""
		async with self._lock:
			now = self._clock()
			cooldown = self._config.cooldown_seconds
			self._last_attempt = {
				key: stamp for key, stamp in self._last_attempt.items() if now - stamp < cooldown
			}
			last = self._last_attempt.get(reference.key)
			if last is not None and now - last < cooldown:
				return cooldown - (now - last)
			self._last_attempt[reference.key] = now
			return None

	async def extract_schema(
		self,
		package_name: str,
		export_name: str,
		version: str = "latest",
		environment: dict[str, str] | None = None,
	) -> SchemaExtractionResult:
		reference = ToolReference(package_name, export_name, version)
		retry_after = await self._acquire(reference)
		if retry_after is not None:
			logger.info("Schema extraction for %s rate limited (%.1fs left)", reference.key, retry_after)
			return SchemaExtractionResult(
				success=False,
				error=f"Schema extraction for this tool is cooling down, retry in {retry_after:.0f}s",
				error_kind=ErrorKind.RATE_LIMITED,
				retry_after=retry_after,
			)

		try:
			return await self.describe(reference, environment or {})
		finally:
			async with self._lock:
				self._last_attempt[reference.key] = self._clock()

	async def describe(
		self,
		reference: ToolReference,
		environment: dict[str, str],
	) -> SchemaExtractionResult:
		"""Load the tool and read its schema, bypassing the cooldown.

		Raises:
			ProvisioningError: If no sandbox could be created.
		"""
		with self._tracer.start_tool_span("tool.extract_schema", reference) as span:
			script = synthesize_describe(reference, environment)
			extra = [self._config.zod_converter] if self._config.zod_converter else []
			outcome = await self._executor.run_script(reference, script, environment, extra_packages=extra)
			span.set_attribute("tool.success", outcome.success)

		if isinstance(outcome, ExecutionFailure):
			return SchemaExtractionResult(success=False, error=outcome.message, error_kind=outcome.kind)

		described = outcome.output
		if not isinstance(described, dict):
			return SchemaExtractionResult(
				success=False,
				error="Tool loader produced no schema description",
				error_kind=ErrorKind.EXECUTION_FAILED,
			)
		raw_schema = described.get("inputSchema")
		if raw_schema is None:
			return SchemaExtractionResult(
				success=False,
				error=f"Tool {reference.export_name} does not declare an input schema",
				error_kind=ErrorKind.EXECUTION_FAILED,
			)

		schema = sanitize_json_schema(raw_schema)
		description = described.get("description")
		return SchemaExtractionResult(
			success=True,
			input_schema=schema,
			parameters=json_schema_to_parameters(schema),
			description=description if isinstance(description, str) else None,
		)
