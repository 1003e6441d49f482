"""Container backend -- one short-lived Docker container per invocation."""

from __future__ import annotations

import asyncio
import logging
import math
import posixpath
import re
import shlex
import time
from uuid import uuid4

from tool_sandbox.config import SandboxConfig
from tool_sandbox.sandbox.base import (
	CommandResult,
	ProvisioningError,
	SandboxBackend,
	SandboxError,
	SandboxHandle,
	communicate_with_deadline,
	sandbox_relative_path,
)

logger = logging.getLogger(__name__)

# Grace period past the budget before the container's own sleep expires
_EXPIRY_GRACE_SECONDS = 30
_TEARDOWN_TIMEOUT = 30

_ENV_FILENAME = ".sandbox-env"
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Sources the env file, removes it, then execs the real command
_ENV_WRAPPER = '. "$1" && rm -f -- "$1" && shift && exec "$@"'


class ContainerSandbox(SandboxBackend):
	"""Run each invocation in a fresh, locked-down container.

	The container is started detached with ``sleep <budget>`` as its only
	process so that it removes itself (``--rm``) even if teardown never
	runs. Commands are executed with ``docker exec``. Env values are written
	to a file inside the container and sourced by a shell wrapper, so they
	never appear in argv or in the host docker CLI's environment.
	"""

	def __init__(self, config: SandboxConfig | None = None) -> None:
		self._config = config or SandboxConfig()

	@property
	def _docker(self) -> str:
		return self._config.container.docker_executable

	def _build_run_command(self, container_name: str, timeout: float) -> list[str]:
		"""Build the docker run command list."""
		cc = self._config.container
		cmd = [
			self._docker, "run", "-d", "--rm",
			"--name", container_name,
			"--network", cc.network,
			"--cpus", self._config.cpus,
			"--memory", self._config.memory,
			"--pids-limit", str(cc.pids_limit),
		]

		# Security: drop capabilities
		for cap in cc.cap_drop:
			cmd.extend(["--cap-drop", cap])

		# Security: security options
		for opt in cc.security_opt:
			cmd.extend(["--security-opt", opt])

		# Run as non-root
		cmd.extend(["--user", cc.run_as_user])

		cmd.extend(["--entrypoint", "sleep"])
		cmd.append(cc.image)
		cmd.append(str(math.ceil(timeout) + _EXPIRY_GRACE_SECONDS))
		return cmd

	def _build_exec_command(
		self,
		handle: SandboxHandle,
		argv: list[str],
		interactive: bool = False,
	) -> list[str]:
		cmd = [self._docker, "exec"]
		if interactive:
			cmd.append("-i")
		cmd.extend(["-w", handle.workdir])
		cmd.append(handle.backend_metadata["container_name"])
		cmd.extend(argv)
		return cmd

	async def _docker_call(
		self,
		args: list[str],
		timeout: float,
		input_data: bytes | None = None,
	) -> CommandResult:
		proc = await asyncio.create_subprocess_exec(
			*args,
			stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr, timed_out = await communicate_with_deadline(proc, timeout, input_data)
		if timed_out:
			return CommandResult(exit_code=-1, timed_out=True)
		return CommandResult(
			exit_code=proc.returncode if proc.returncode is not None else -1,
			stdout=stdout.decode(errors="replace"),
			stderr=stderr.decode(errors="replace"),
		)

	async def provision(self, timeout: float) -> SandboxHandle:
		cc = self._config.container
		container_name = f"ts-{uuid4().hex[:12]}"
		cmd = self._build_run_command(container_name, timeout)
		try:
			result = await self._docker_call(cmd, cc.startup_timeout)
		except OSError as exc:
			raise ProvisioningError(f"docker unavailable: {exc}") from exc
		if result.timed_out:
			raise ProvisioningError(f"docker run timed out after {cc.startup_timeout}s")
		if result.exit_code != 0:
			raise ProvisioningError(f"docker run failed ({result.exit_code}): {result.stderr.strip()}")

		handle = SandboxHandle(
			sandbox_id=container_name,
			workdir=cc.workdir,
			deadline=time.monotonic() + timeout,
			backend_metadata={
				"container_name": container_name,
				"container_id": result.stdout.strip(),
			},
		)

		try:
			mkdir = await self._docker_call(
				self._build_exec_command(handle, ["mkdir", "-p", cc.workdir]),
				cc.startup_timeout,
			)
		except OSError as exc:
			mkdir = CommandResult(exit_code=-1, stderr=str(exc))
		if not mkdir.ok:
			try:
				await self.teardown(handle)
			except SandboxError as exc:
				logger.warning("Cleanup after failed provisioning of %s failed: %s", container_name, exc)
			raise ProvisioningError(f"Could not create sandbox workdir: {mkdir.stderr.strip()}")
		return handle

	async def write_file(self, handle: SandboxHandle, relative_path: str, content: str) -> None:
		target = posixpath.join(handle.workdir, str(sandbox_relative_path(relative_path)))
		cmd = self._build_exec_command(
			handle, ["sh", "-c", 'cat > "$1"', "sh", target], interactive=True,
		)
		result = await self._docker_call(cmd, handle.remaining(), input_data=content.encode())
		if not result.ok:
			raise SandboxError(f"Could not write {relative_path}: {result.stderr.strip()}")

	async def _with_env_file(
		self,
		handle: SandboxHandle,
		argv: list[str],
		env: dict[str, str],
	) -> list[str]:
		"""Write env into the container and wrap argv so the command starts with it set."""
		lines = []
		for key, value in sorted(env.items()):
			if not _ENV_KEY_RE.match(key):
				raise SandboxError(f"Invalid environment variable name: {key!r}")
			lines.append(f"export {key}={shlex.quote(value)}\n")
		await self.write_file(handle, _ENV_FILENAME, "".join(lines))
		env_path = posixpath.join(handle.workdir, _ENV_FILENAME)
		return ["sh", "-c", _ENV_WRAPPER, "sh", env_path, *argv]

	async def run(
		self,
		handle: SandboxHandle,
		argv: list[str],
		env: dict[str, str] | None = None,
	) -> CommandResult:
		if handle.expired:
			return CommandResult(exit_code=-1, timed_out=True)
		command = argv[0]
		if env:
			argv = await self._with_env_file(handle, argv, env)
		cmd = self._build_exec_command(handle, argv)
		result = await self._docker_call(cmd, handle.remaining())
		if result.timed_out:
			logger.warning("Sandbox %s command timed out: %s", handle.sandbox_id, command)
		return result

	async def teardown(self, handle: SandboxHandle) -> None:
		container_name = handle.backend_metadata["container_name"]
		try:
			result = await self._docker_call(
				[self._docker, "rm", "-f", container_name], _TEARDOWN_TIMEOUT,
			)
		except OSError as exc:
			raise SandboxError(f"docker rm failed for {container_name}: {exc}") from exc
		if result.timed_out:
			raise SandboxError(f"docker rm timed out for {container_name}")
		if result.exit_code != 0 and "No such container" not in result.stderr:
			raise SandboxError(f"docker rm failed for {container_name}: {result.stderr.strip()}")
