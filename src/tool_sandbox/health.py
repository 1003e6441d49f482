"""Tool health tracking.

Health is written from two places: ordinary executions (through
HealthReportingExecutor) and explicit health checks (HealthChecker). Both
funnel into ``transition()``, the only place HEALTHY/BROKEN is decided.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tool_sandbox.config import HealthConfig
from tool_sandbox.executor import ToolExecutor
from tool_sandbox.models import (
	ErrorKind,
	ExecutionFailure,
	ExecutionOutcome,
	ExecutionRequest,
	HealthStatus,
	ToolHealth,
	ToolReference,
	_now_iso,
)
from tool_sandbox.sandbox import ProvisioningError
from tool_sandbox.schema import SchemaExtractor

logger = logging.getLogger(__name__)

_ENV_CONFIG_PATTERNS = [
	re.compile(p, re.IGNORECASE) for p in (
		r"is required",
		r"is not set",
		r"missing.*environment",
		r"environment.*missing",
		r"api key.*required",
		r"api key.*not provided",
		r"missing.*api key",
		r"must be set",
		r"not found.*environment",
		r"please set",
		r"please provide",
		r"configure.*environment",
	)
]

_INPUT_VALIDATION_PATTERNS = [
	re.compile(p, re.IGNORECASE) for p in (
		r"must have a valid.*domain",
		r"valid.*path",
		r"invalid.*url",
		r"invalid.*format",
		r"expected.*received",
		r"must be.*string",
		r"must be.*number",
		r"must be.*boolean",
		r"must be.*array",
		r"must be.*object",
		r"validation.*failed",
		r"does not match",
		r"too short",
		r"too long",
		r"minimum.*length",
		r"maximum.*length",
	)
]

_MAX_ERROR_CHARS = 1000


def is_non_breaking_error(error: str | None) -> bool:
	"""True for failures caused by missing configuration or rejected input.

	Such a tool loads and validates correctly; it just needs setup or
	different arguments, so it is not broken.
	"""
	if not error:
		return False
	return any(p.search(error) for p in _ENV_CONFIG_PATTERNS) or any(
		p.search(error) for p in _INPUT_VALIDATION_PATTERNS
	)


def transition(
	current: HealthStatus,
	succeeded: bool,
	probe: bool,
	error: str | None = None,
	self_heal: bool = True,
) -> HealthStatus:
	"""Next health status after one observed outcome.

	Any success is HEALTHY (for ordinary traffic only when self-healing is
	on). Failures move the status only when observed by a probe, and a
	non-breaking failure counts as HEALTHY.
	"""
	if succeeded:
		return HealthStatus.HEALTHY if probe or self_heal else current
	if not probe:
		return current
	return HealthStatus.HEALTHY if is_non_breaking_error(error) else HealthStatus.BROKEN


class HealthReporter(ABC):
	"""Narrow interface the core uses to persist health observations."""

	@abstractmethod
	def report(
		self,
		reference: ToolReference,
		succeeded: bool,
		probe: bool = False,
		error: str | None = None,
	) -> ToolHealth:
		"""Record one outcome and return the resulting health row."""

	@abstractmethod
	def get(self, tool_key: str) -> ToolHealth | None:
		"""Current health row for a tool, if any."""


HEALTH_SCHEMA = """
CREATE TABLE IF NOT EXISTS tool_health (
	tool_key TEXT PRIMARY KEY,
	status TEXT NOT NULL DEFAULT 'UNKNOWN',
	last_checked_at TEXT NOT NULL,
	last_error TEXT
);
"""


class SQLiteHealthStore(HealthReporter):
	"""Single-row-per-tool health store. Last write wins."""

	def __init__(self, db_path: str | Path = ":memory:", self_heal: bool = True) -> None:
		if str(db_path) != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self._self_heal = self_heal
		self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
		self.conn.row_factory = sqlite3.Row
		self.conn.execute("PRAGMA journal_mode=WAL")
		self.conn.executescript(HEALTH_SCHEMA)

	def close(self) -> None:
		self.conn.close()

	def get(self, tool_key: str) -> ToolHealth | None:
		row = self.conn.execute(
			"SELECT * FROM tool_health WHERE tool_key=?", (tool_key,),
		).fetchone()
		return self._row_to_health(row) if row else None

	def list_all(self) -> list[ToolHealth]:
		rows = self.conn.execute("SELECT * FROM tool_health ORDER BY tool_key").fetchall()
		return [self._row_to_health(r) for r in rows]

	def report(
		self,
		reference: ToolReference,
		succeeded: bool,
		probe: bool = False,
		error: str | None = None,
	) -> ToolHealth:
		existing = self.get(reference.key)
		current = existing.status if existing else HealthStatus.UNKNOWN
		status = transition(current, succeeded, probe, error, self_heal=self._self_heal)
		if status == HealthStatus.BROKEN:
			last_error = (error or "Unknown error")[:_MAX_ERROR_CHARS]
		elif succeeded or status == HealthStatus.HEALTHY:
			last_error = None
		else:
			last_error = error[:_MAX_ERROR_CHARS] if error else None
		health = ToolHealth(
			tool_key=reference.key,
			status=status,
			last_checked_at=_now_iso(),
			last_error=last_error,
		)
		self.conn.execute(
			"""INSERT INTO tool_health (tool_key, status, last_checked_at, last_error)
			VALUES (?, ?, ?, ?)
			ON CONFLICT(tool_key) DO UPDATE SET
				status=excluded.status,
				last_checked_at=excluded.last_checked_at,
				last_error=excluded.last_error""",
			(health.tool_key, health.status.value, health.last_checked_at, health.last_error),
		)
		self.conn.commit()
		if status != current:
			logger.info("Health for %s: %s -> %s", reference.key, current.value, status.value)
		return health

	@staticmethod
	def _row_to_health(row: sqlite3.Row) -> ToolHealth:
		return ToolHealth(
			tool_key=row["tool_key"],
			status=HealthStatus(row["status"]),
			last_checked_at=row["last_checked_at"],
			last_error=row["last_error"],
		)


class HealthReportingExecutor(ToolExecutor):
	"""Wraps an executor and reports every ordinary outcome as a health observation."""

	def __init__(self, inner: ToolExecutor, reporter: HealthReporter) -> None:
		self._inner = inner
		self._reporter = reporter

	async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
		outcome = await self._inner.execute(request)
		if isinstance(outcome, ExecutionFailure) and outcome.kind == ErrorKind.INVALID_REQUEST:
			return outcome
		error = outcome.message if isinstance(outcome, ExecutionFailure) else None
		try:
			self._reporter.report(request.reference, outcome.success, probe=False, error=error)
		except sqlite3.Error as exc:
			logger.warning("Could not record health for %s: %s", request.reference.key, exc)
		return outcome


_TEST_VALUES: dict[str, Any] = {
	"string": "test",
	"number": 1,
	"integer": 1,
	"boolean": True,
	"object": {},
	"array": [],
}


def generate_test_parameters(input_schema: dict[str, Any] | None) -> dict[str, Any]:
	"""Minimal arguments for a probe: a placeholder for every required property."""
	if not input_schema:
		return {}
	properties = input_schema.get("properties") or {}
	params: dict[str, Any] = {}
	for name in input_schema.get("required") or []:
		prop = properties.get(name) or {}
		ptype = prop.get("type", "string")
		if isinstance(ptype, list):
			ptype = next((t for t in ptype if t != "null"), "string")
		if "default" in prop:
			params[name] = prop["default"]
		elif isinstance(prop.get("enum"), list) and prop["enum"]:
			params[name] = prop["enum"][0]
		else:
			params[name] = _TEST_VALUES.get(ptype, "test")
	return params


@dataclass
class HealthCheckResult:
	tool_key: str
	import_status: HealthStatus = HealthStatus.UNKNOWN
	execution_status: HealthStatus = HealthStatus.UNKNOWN
	import_error: str | None = None
	execution_error: str | None = None

	@property
	def overall(self) -> HealthStatus:
		if HealthStatus.BROKEN in (self.import_status, self.execution_status):
			return HealthStatus.BROKEN
		if self.import_status == self.execution_status == HealthStatus.HEALTHY:
			return HealthStatus.HEALTHY
		return HealthStatus.UNKNOWN


def _probe_status(succeeded: bool, error: str | None) -> HealthStatus:
	return transition(HealthStatus.UNKNOWN, succeeded, probe=True, error=error)


class HealthChecker:
	"""Drives a tool through the sandbox in probe mode.

	The import check loads the tool and reads its schema; the execution
	check runs it with placeholder arguments, only if the import succeeded.
	"""

	def __init__(
		self,
		extractor: SchemaExtractor,
		executor: ToolExecutor,
		reporter: HealthReporter,
		config: HealthConfig | None = None,
	) -> None:
		self._extractor = extractor
		self._executor = executor
		self._reporter = reporter
		self._config = config or HealthConfig()

	async def check(
		self,
		reference: ToolReference,
		environment: dict[str, str] | None = None,
	) -> HealthCheckResult:
		environment = environment or {}
		result = HealthCheckResult(tool_key=reference.key)

		described = await self._extractor.describe(reference, environment)
		result.import_status = _probe_status(described.success, described.error)
		result.import_error = described.error
		if result.import_status != HealthStatus.HEALTHY:
			self._record(reference, result)
			return result

		outcome = await self._executor.execute(ExecutionRequest(
			reference=reference,
			parameters=generate_test_parameters(described.input_schema),
			environment=environment,
		))
		error = outcome.message if isinstance(outcome, ExecutionFailure) else None
		result.execution_status = _probe_status(outcome.success, error)
		result.execution_error = error
		self._record(reference, result)
		return result

	def _record(self, reference: ToolReference, result: HealthCheckResult) -> None:
		overall = result.overall
		if overall == HealthStatus.UNKNOWN:
			return
		if result.import_status == HealthStatus.BROKEN:
			error = result.import_error
		else:
			error = result.execution_error
		self._reporter.report(
			reference,
			succeeded=overall == HealthStatus.HEALTHY,
			probe=True,
			error=error if overall == HealthStatus.BROKEN else None,
		)

	async def check_many(
		self,
		tools: list[tuple[ToolReference, dict[str, str]]],
	) -> list[HealthCheckResult]:
		"""Check tools in batches of ``health.batch_size``, pausing between batches."""
		results: list[HealthCheckResult] = []
		size = max(1, self._config.batch_size)
		for start in range(0, len(tools), size):
			if start:
				await asyncio.sleep(self._config.batch_delay)
			batch = tools[start:start + size]
			results.extend(await asyncio.gather(*(self._check_guarded(ref, env) for ref, env in batch)))
		return results

	async def _check_guarded(self, reference: ToolReference, environment: dict[str, str]) -> HealthCheckResult:
		try:
			return await self.check(reference, environment)
		except ProvisioningError as exc:
			logger.error("Health check for %s could not provision a sandbox: %s", reference.key, exc)
			return HealthCheckResult(tool_key=reference.key, import_error=str(exc))
