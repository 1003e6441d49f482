"""Shared pytest fixtures and factory functions for tool-sandbox tests."""

from __future__ import annotations

import time
from typing import Any

import pytest

from tool_sandbox.config import SandboxConfig, SandboxServiceConfig
from tool_sandbox.models import Collection, CollectionTool, ExecutionRequest, ToolReference
from tool_sandbox.protocol import encode_error, encode_result
from tool_sandbox.sandbox import CommandResult, ProvisioningError, SandboxBackend, SandboxHandle


class FakeBackend(SandboxBackend):
	"""In-memory sandbox backend with scripted command results.

	``results`` maps argv[0] (``npm`` / ``node``) to the CommandResult to
	return. Every call is recorded so tests can assert on lifecycle.
	"""

	def __init__(
		self,
		results: dict[str, CommandResult] | None = None,
		provision_error: Exception | None = None,
		teardown_error: Exception | None = None,
	) -> None:
		self.results = results or {}
		self.provision_error = provision_error
		self.teardown_error = teardown_error
		self.provisioned: list[SandboxHandle] = []
		self.torn_down: list[SandboxHandle] = []
		self.files: dict[str, dict[str, str]] = {}
		self.commands: list[tuple[list[str], dict[str, str] | None]] = []

	@property
	def live(self) -> int:
		return len(self.provisioned) - len(self.torn_down)

	async def provision(self, timeout: float) -> SandboxHandle:
		if self.provision_error is not None:
			raise self.provision_error
		handle = SandboxHandle(
			sandbox_id=f"fake{len(self.provisioned)}",
			workdir="/sandbox",
			deadline=time.monotonic() + timeout,
		)
		self.provisioned.append(handle)
		self.files[handle.sandbox_id] = {}
		return handle

	async def write_file(self, handle: SandboxHandle, relative_path: str, content: str) -> None:
		self.files[handle.sandbox_id][relative_path] = content

	async def run(
		self,
		handle: SandboxHandle,
		argv: list[str],
		env: dict[str, str] | None = None,
	) -> CommandResult:
		self.commands.append((argv, env))
		return self.results.get(argv[0], CommandResult(exit_code=0))

	async def teardown(self, handle: SandboxHandle) -> None:
		self.torn_down.append(handle)
		if self.teardown_error is not None:
			raise self.teardown_error


def node_success(value: Any, noise: str = "") -> CommandResult:
	"""A tool process that printed ``noise`` and then returned ``value``."""
	return CommandResult(exit_code=0, stdout=f"{noise}\n{encode_result(value)}\n")


def node_failure(message: str, exit_code: int = 1) -> CommandResult:
	"""A tool process that reported an error envelope."""
	return CommandResult(exit_code=exit_code, stderr=f"\n{encode_error(message)}\n")


@pytest.fixture()
def backend() -> FakeBackend:
	return FakeBackend()


@pytest.fixture()
def sandbox_config() -> SandboxConfig:
	return SandboxConfig(backend="local", timeout=60, max_output_chars=200)


@pytest.fixture()
def failing_backend() -> FakeBackend:
	return FakeBackend(provision_error=ProvisioningError("docker daemon down"))


def make_reference(**overrides: Any) -> ToolReference:
	"""Create a ToolReference with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"package_name": "demo-tool",
		"export_name": "echoTool",
		"version": "1.0.0",
	}
	defaults.update(overrides)
	return ToolReference(**defaults)


def make_request(**overrides: Any) -> ExecutionRequest:
	"""Create an ExecutionRequest with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"reference": make_reference(),
		"parameters": {"text": "hi"},
		"environment": {},
	}
	defaults.update(overrides)
	return ExecutionRequest(**defaults)


def make_collection(**overrides: Any) -> Collection:
	"""Create a public Collection with one tool, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "c1",
		"name": "Demo",
		"description": "Demo tools",
		"tools": [
			CollectionTool(
				reference=make_reference(package_name="@acme/demo-tool"),
				description="Echo text back",
				input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
				environment={"ACME_KEY": "k"},
			),
		],
	}
	defaults.update(overrides)
	return Collection(**defaults)


def make_config(**overrides: Any) -> SandboxServiceConfig:
	"""SandboxServiceConfig on the local backend with no cooldown."""
	cfg = SandboxServiceConfig()
	cfg.sandbox.backend = "local"
	cfg.schema.cooldown_seconds = 0.0
	for key, value in overrides.items():
		setattr(cfg, key, value)
	return cfg
