"""Abstract base class for sandbox backends."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)


class SandboxError(Exception):
	"""A sandbox operation failed."""


class ProvisioningError(SandboxError):
	"""The sandbox could not be created at all."""


@dataclass
class SandboxHandle:
	"""One ephemeral sandbox. Valid until teardown."""

	sandbox_id: str
	workdir: str
	deadline: float  # time.monotonic() value
	backend_metadata: dict[str, str] = field(default_factory=dict)

	def remaining(self) -> float:
		return max(0.0, self.deadline - time.monotonic())

	@property
	def expired(self) -> bool:
		return self.remaining() <= 0


@dataclass
class CommandResult:
	exit_code: int
	stdout: str = ""
	stderr: str = ""
	timed_out: bool = False

	@property
	def ok(self) -> bool:
		return self.exit_code == 0 and not self.timed_out


def sandbox_relative_path(relative_path: str) -> PurePosixPath:
	"""Validate a path to be written inside a sandbox workdir.

	Raises:
		ValueError: If the path is empty, absolute, or escapes the workdir.
	"""
	if not relative_path or "\x00" in relative_path:
		raise ValueError("Path validation failed: invalid path")
	path = PurePosixPath(relative_path)
	if path.is_absolute() or ".." in path.parts:
		raise ValueError("Path validation failed: path outside sandbox")
	return path


async def communicate_with_deadline(
	proc: asyncio.subprocess.Process,
	timeout: float,
	input_data: bytes | None = None,
	kill: Callable[[], None] | None = None,
) -> tuple[bytes, bytes, bool]:
	"""Collect a process's output, killing it if the timeout elapses.

	Returns (stdout, stderr, timed_out). Output of a killed process is dropped.
	"""
	try:
		stdout, stderr = await asyncio.wait_for(proc.communicate(input_data), timeout=timeout)
		return stdout or b"", stderr or b"", False
	except asyncio.TimeoutError:
		if kill is not None:
			kill()
		elif proc.returncode is None:
			proc.kill()
		await proc.wait()
		return b"", b"", True


class SandboxBackend(ABC):
	"""Provisions one isolated environment per invocation.

	Every handle returned by provision() must be passed to teardown() exactly
	once. Commands run inside the sandbox are bounded by the handle's
	remaining wall-clock budget.
	"""

	@abstractmethod
	async def provision(self, timeout: float) -> SandboxHandle:
		"""Create a fresh sandbox with the given wall-clock budget.

		Raises:
			ProvisioningError: If the sandbox could not be created.
		"""

	@abstractmethod
	async def write_file(self, handle: SandboxHandle, relative_path: str, content: str) -> None:
		"""Write a text file into the sandbox workdir."""

	@abstractmethod
	async def run(
		self,
		handle: SandboxHandle,
		argv: list[str],
		env: dict[str, str] | None = None,
	) -> CommandResult:
		"""Run a command in the sandbox workdir with extra env vars."""

	@abstractmethod
	async def teardown(self, handle: SandboxHandle) -> None:
		"""Destroy the sandbox and everything running in it."""


@asynccontextmanager
async def sandbox_session(backend: SandboxBackend, timeout: float) -> AsyncIterator[SandboxHandle]:
	"""Provision a sandbox and tear it down on every exit path.

	Provisioning errors propagate; teardown errors are logged and never
	mask the body's own result or exception.
	"""
	handle = await backend.provision(timeout)
	logger.debug("Provisioned sandbox %s (budget %.0fs)", handle.sandbox_id, timeout)
	try:
		yield handle
	finally:
		try:
			await backend.teardown(handle)
		except Exception as exc:
			logger.warning("Teardown failed for sandbox %s: %s", handle.sandbox_id, exc)
