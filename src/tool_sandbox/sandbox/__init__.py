"""Sandbox backends for tool-sandbox."""

from __future__ import annotations

from tool_sandbox.config import SandboxConfig
from tool_sandbox.sandbox.base import (
	CommandResult,
	ProvisioningError,
	SandboxBackend,
	SandboxError,
	SandboxHandle,
	sandbox_session,
)
from tool_sandbox.sandbox.container import ContainerSandbox
from tool_sandbox.sandbox.local import LocalSandbox


def create_backend(config: SandboxConfig) -> SandboxBackend:
	"""Instantiate the sandbox backend named by ``sandbox.backend``."""
	if config.backend == "container":
		return ContainerSandbox(config)
	if config.backend == "local":
		return LocalSandbox(config)
	raise ValueError(f"Unknown sandbox backend: {config.backend}")


__all__ = [
	"CommandResult",
	"ContainerSandbox",
	"LocalSandbox",
	"ProvisioningError",
	"SandboxBackend",
	"SandboxError",
	"SandboxHandle",
	"create_backend",
	"sandbox_session",
]
