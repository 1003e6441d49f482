"""Sandbox executor -- install, run and classify one tool invocation."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod

from tool_sandbox.config import SandboxConfig
from tool_sandbox.models import (
	ErrorKind,
	ExecutionFailure,
	ExecutionOutcome,
	ExecutionRequest,
	ExecutionSuccess,
	ToolReference,
)
from tool_sandbox.protocol import RESOLUTION_EXIT_CODE, decode_error, decode_result, truncate
from tool_sandbox.sandbox import CommandResult, SandboxBackend, SandboxError, SandboxHandle, sandbox_session
from tool_sandbox.script import PACKAGE_JSON, SCRIPT_FILENAME, synthesize
from tool_sandbox.tracing import SandboxTracer

logger = logging.getLogger(__name__)

_PACKAGE_NAME_RE = re.compile(r"^(?:@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9~-][a-z0-9._~-]*$")
_PACKAGE_NAME_MAX = 214
# Semver, ranges and dist-tags; no URLs, paths or git specs
_VERSION_RE = re.compile(r"^[A-Za-z0-9^~<>=*][A-Za-z0-9.+_^~<>=*-]{0,63}$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_EXPORT_NAME_MAX = 256


def validate_request(reference: ToolReference, environment: dict[str, str]) -> str | None:
	"""Return a human-readable problem with the request, or None if it is valid."""
	name = reference.package_name
	if not name or len(name) > _PACKAGE_NAME_MAX or not _PACKAGE_NAME_RE.match(name):
		return f"Invalid package name: {name!r}"
	if not _VERSION_RE.match(reference.version):
		return f"Invalid version: {reference.version!r}"
	if not reference.export_name or len(reference.export_name) > _EXPORT_NAME_MAX:
		return "Invalid export name"
	for key in environment:
		if not _ENV_KEY_RE.match(key):
			return f"Invalid environment variable name: {key!r}"
	return None


def _elapsed_ms(started: float) -> int:
	return int((time.monotonic() - started) * 1000)


class ToolExecutor(ABC):
	"""Anything that can run a tool and classify the outcome."""

	@abstractmethod
	async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
		"""Run one tool invocation. Only infrastructure errors are raised."""


class SandboxExecutor(ToolExecutor):
	"""Built-in executor: one fresh sandbox per call, torn down on every path."""

	def __init__(
		self,
		backend: SandboxBackend,
		config: SandboxConfig | None = None,
		tracer: SandboxTracer | None = None,
	) -> None:
		self._backend = backend
		self._config = config or SandboxConfig()
		self._tracer = tracer or SandboxTracer()

	async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
		ref = request.reference
		with self._tracer.start_tool_span("tool.execute", ref) as span:
			script = synthesize(ref, request.parameters, request.environment)
			outcome = await self.run_script(ref, script, request.environment)
			span.set_attribute("tool.success", outcome.success)
			if isinstance(outcome, ExecutionFailure):
				span.set_attribute("tool.error_kind", outcome.kind.value)
		return outcome

	async def run_script(
		self,
		reference: ToolReference,
		script: str,
		environment: dict[str, str],
		extra_packages: list[str] | None = None,
	) -> ExecutionOutcome:
		"""Install the package and run a generated entry script in a fresh sandbox.

		``extra_packages`` are installed next to the tool for the script's own use.

		Raises:
			ProvisioningError: If no sandbox could be created.
		"""
		started = time.monotonic()
		problem = validate_request(reference, environment)
		if problem:
			return ExecutionFailure(kind=ErrorKind.INVALID_REQUEST, message=problem)

		async with sandbox_session(self._backend, self._config.timeout) as handle:
			try:
				outcome = await self._run_in_sandbox(handle, reference, script, environment, extra_packages or [])
			except (SandboxError, OSError) as exc:
				logger.error("Sandbox %s failed running %s: %s", handle.sandbox_id, reference.key, exc)
				outcome = ExecutionFailure(kind=ErrorKind.EXECUTION_FAILED, message=f"Sandbox error: {exc}")

		outcome.duration_ms = _elapsed_ms(started)
		if isinstance(outcome, ExecutionFailure):
			logger.info("%s failed in %dms: %s", reference.key, outcome.duration_ms, outcome.kind.value)
		else:
			logger.info("%s succeeded in %dms", reference.key, outcome.duration_ms)
		return outcome

	async def _run_in_sandbox(
		self,
		handle: SandboxHandle,
		reference: ToolReference,
		script: str,
		environment: dict[str, str],
		extra_packages: list[str],
	) -> ExecutionOutcome:
		cfg = self._config
		await self._backend.write_file(handle, "package.json", PACKAGE_JSON)
		install = await self._backend.run(handle, [
			cfg.npm_executable, "install", reference.spec, *extra_packages,
			"--omit=dev", "--no-audit", "--no-fund", "--no-package-lock",
		])
		if install.timed_out:
			return ExecutionFailure(
				kind=ErrorKind.TIMEOUT,
				message=f"Installing {reference.spec} exceeded the {cfg.timeout}s budget",
			)
		if install.exit_code != 0:
			output = "\n".join(s.strip() for s in (install.stdout, install.stderr) if s.strip())
			return ExecutionFailure(
				kind=ErrorKind.INSTALL_FAILED,
				message=f"Failed to install {reference.spec} (exit code {install.exit_code})",
				stderr=truncate(output, cfg.max_output_chars),
				exit_code=install.exit_code,
			)

		await self._backend.write_file(handle, SCRIPT_FILENAME, script)
		result = await self._backend.run(handle, [cfg.node_executable, SCRIPT_FILENAME], env=environment)
		return self.classify(result)

	def classify(self, result: CommandResult) -> ExecutionOutcome:
		"""Map a finished tool process onto an outcome."""
		limit = self._config.max_output_chars
		if result.timed_out:
			return ExecutionFailure(
				kind=ErrorKind.TIMEOUT,
				message=f"Tool execution exceeded the {self._config.timeout}s budget",
			)

		if result.exit_code != 0:
			error = decode_error(result.stderr)
			if error.structured:
				kind = (
					ErrorKind.EXECUTION_FAILED
					if result.exit_code == RESOLUTION_EXIT_CODE
					else ErrorKind.TOOL_THREW
				)
				return ExecutionFailure(
					kind=kind,
					message=truncate(error.value, limit),
					exit_code=result.exit_code,
				)
			return ExecutionFailure(
				kind=ErrorKind.EXECUTION_FAILED,
				message=f"Process exited with code {result.exit_code}",
				stderr=truncate(result.stderr, limit),
				exit_code=result.exit_code,
			)

		output = decode_result(result.stdout)
		if output.structured:
			return ExecutionSuccess(output=output.value)
		# Packages that print their result instead of returning it
		return ExecutionSuccess(output=result.stdout)
