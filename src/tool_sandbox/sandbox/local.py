"""Local backend -- runs each invocation in a throwaway directory as host subprocesses."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import tempfile
import time
from pathlib import Path
from uuid import uuid4

from tool_sandbox.config import SandboxConfig, sandbox_host_env
from tool_sandbox.sandbox.base import (
	CommandResult,
	ProvisioningError,
	SandboxBackend,
	SandboxHandle,
	communicate_with_deadline,
	sandbox_relative_path,
)

logger = logging.getLogger(__name__)


class LocalSandbox(SandboxBackend):
	"""Process-level isolation: own directory, own process group, scrubbed env.

	Suitable for development and trusted hosts. Memory, filesystem and
	network isolation require the container backend.
	"""

	def __init__(self, config: SandboxConfig | None = None) -> None:
		self._config = config or SandboxConfig()
		self._processes: dict[str, set[asyncio.subprocess.Process]] = {}

	async def provision(self, timeout: float) -> SandboxHandle:
		root = self._config.root_dir or None
		try:
			workdir = await asyncio.to_thread(tempfile.mkdtemp, prefix="tool-sandbox-", dir=root)
		except OSError as exc:
			raise ProvisioningError(f"Could not create sandbox directory: {exc}") from exc
		sandbox_id = uuid4().hex[:12]
		self._processes[sandbox_id] = set()
		return SandboxHandle(
			sandbox_id=sandbox_id,
			workdir=workdir,
			deadline=time.monotonic() + timeout,
		)

	async def write_file(self, handle: SandboxHandle, relative_path: str, content: str) -> None:
		target = Path(handle.workdir) / sandbox_relative_path(relative_path)
		target.parent.mkdir(parents=True, exist_ok=True)
		await asyncio.to_thread(target.write_text, content, encoding="utf-8")

	def _process_env(self, handle: SandboxHandle, env: dict[str, str] | None) -> dict[str, str]:
		proc_env = sandbox_host_env()
		proc_env["HOME"] = handle.workdir
		proc_env["npm_config_cache"] = os.path.join(handle.workdir, ".npm")
		proc_env["npm_config_update_notifier"] = "false"
		if env:
			proc_env.update(env)
		return proc_env

	async def run(
		self,
		handle: SandboxHandle,
		argv: list[str],
		env: dict[str, str] | None = None,
	) -> CommandResult:
		if handle.expired:
			return CommandResult(exit_code=-1, timed_out=True)

		proc = await asyncio.create_subprocess_exec(
			*argv,
			cwd=handle.workdir,
			env=self._process_env(handle, env),
			stdin=asyncio.subprocess.DEVNULL,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
			start_new_session=True,
		)
		procs = self._processes.setdefault(handle.sandbox_id, set())
		procs.add(proc)
		try:
			stdout, stderr, timed_out = await communicate_with_deadline(
				proc, handle.remaining(), kill=lambda: _kill_group(proc),
			)
		finally:
			# Background children left behind by the tool share the group
			_kill_group(proc)
			procs.discard(proc)

		if timed_out:
			logger.warning("Sandbox %s command timed out: %s", handle.sandbox_id, argv[0])
			return CommandResult(exit_code=-1, timed_out=True)
		return CommandResult(
			exit_code=proc.returncode if proc.returncode is not None else -1,
			stdout=stdout.decode(errors="replace"),
			stderr=stderr.decode(errors="replace"),
		)

	async def teardown(self, handle: SandboxHandle) -> None:
		for proc in self._processes.pop(handle.sandbox_id, set()):
			_kill_group(proc)
			if proc.returncode is None:
				await proc.wait()
		await asyncio.to_thread(shutil.rmtree, handle.workdir)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
	try:
		os.killpg(proc.pid, signal.SIGKILL)
	except (ProcessLookupError, PermissionError):
		pass
