"""Executor verification -- vet an operator-hosted executor before delegating to it.

Two phases, each able to reject with a specific reason:

1. Static URL policy: the URL must parse; outside development mode its host
   must not be (or resolve to) a loopback, private, link-local or otherwise
   non-public address, and it must use https.
2. Live probe: ``GET <url>/health`` must answer 2xx with a JSON body whose
   ``status`` is ``ok`` or ``degraded`` within the probe timeout.

An optional third phase runs a known tool through the candidate executor.
Verification never retries, so the same input yields the same rejection.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from tool_sandbox.config import VerificationConfig
from tool_sandbox.models import (
	ExecutionFailure,
	ExecutionRequest,
	ExecutorHealthResponse,
	ToolReference,
	VerificationError,
	VerificationResult,
)
from tool_sandbox.remote import RemoteExecutor
from tool_sandbox.tracing import SandboxTracer

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[list[str]]]

_LOCAL_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


async def resolve_host(host: str) -> list[str]:
	"""Resolve a hostname to its addresses. Empty if it does not resolve."""
	loop = asyncio.get_running_loop()
	try:
		infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
	except (socket.gaierror, UnicodeError):
		return []
	return [str(info[4][0]) for info in infos]


def is_non_public_address(address: str) -> bool:
	try:
		ip = ipaddress.ip_address(address.split("%", 1)[0])
	except ValueError:
		return False
	if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
		ip = ip.ipv4_mapped
	return (
		ip.is_private
		or ip.is_loopback
		or ip.is_link_local
		or ip.is_reserved
		or ip.is_multicast
		or ip.is_unspecified
	)


def _reject(error: VerificationError, message: str, latency_ms: int | None = None) -> VerificationResult:
	return VerificationResult(
		reachable=False,
		capabilities_ok=False,
		latency_ms=latency_ms,
		error=error,
		message=message,
	)


class ExecutorVerifier:
	"""Validates candidate custom executor URLs."""

	def __init__(
		self,
		config: VerificationConfig | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
		resolver: Resolver = resolve_host,
		tracer: SandboxTracer | None = None,
	) -> None:
		self._config = config or VerificationConfig()
		self._transport = transport
		self._resolver = resolver
		self._tracer = tracer or SandboxTracer()

	async def check_url_policy(self, url: str) -> VerificationResult | None:
		"""Return a rejection if the URL violates the static policy, else None."""
		try:
			parts = urlsplit(url.strip())
			host = parts.hostname
			_ = parts.port  # raises ValueError on a bad port
		except (ValueError, AttributeError):
			return _reject(VerificationError.INVALID_URL, "Invalid URL format")
		if parts.scheme not in ("http", "https") or not host:
			return _reject(VerificationError.INVALID_URL, "Invalid URL format")

		if self._config.development:
			return None

		if host in _LOCAL_HOSTNAMES or host.endswith(".localhost"):
			return _reject(VerificationError.PRIVATE_URL, f"Host {host} is a local address")
		try:
			ipaddress.ip_address(host)
			addresses = [host]
		except ValueError:
			addresses = await self._resolver(host)
		if any(is_non_public_address(a) for a in addresses):
			return _reject(VerificationError.PRIVATE_URL, f"Host {host} resolves to a private address")

		if parts.scheme != "https":
			return _reject(VerificationError.INSECURE_URL, "Executor URL must use HTTPS")
		return None

	async def probe(self, url: str, api_key: str | None = None) -> VerificationResult:
		"""Call the executor's health route and classify the answer."""
		headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
		health_url = url.strip().rstrip("/") + self._config.health_path
		started = time.monotonic()
		try:
			async with httpx.AsyncClient(timeout=self._config.probe_timeout, transport=self._transport) as client:
				resp = await client.get(health_url, headers=headers)
		except httpx.TimeoutException:
			return _reject(
				VerificationError.UNREACHABLE,
				f"Health check timed out after {self._config.probe_timeout:.0f}s",
			)
		except httpx.HTTPError as exc:
			return _reject(VerificationError.UNREACHABLE, f"Health check failed: {exc}")
		latency_ms = int((time.monotonic() - started) * 1000)

		if not resp.is_success:
			return _reject(
				VerificationError.UNREACHABLE,
				f"Health check returned HTTP {resp.status_code}",
				latency_ms,
			)
		try:
			health = ExecutorHealthResponse.model_validate(resp.json())
		except (ValueError, ValidationError):
			return _reject(
				VerificationError.MALFORMED_RESPONSE,
				"Health response must be JSON with status ok, degraded or error",
				latency_ms,
			)
		if health.status == "error":
			return _reject(VerificationError.UNHEALTHY, "Executor reports status error", latency_ms)

		return VerificationResult(
			reachable=True,
			capabilities_ok=True,
			latency_ms=latency_ms,
			health=health.model_dump(exclude_none=True),
		)

	async def test_execution(self, url: str, api_key: str | None = None) -> VerificationResult | None:
		"""Run the configured known tool through the executor. Returns a rejection or None."""
		cfg = self._config
		executor = RemoteExecutor(url, api_key or "", timeout=cfg.test_timeout, transport=self._transport)
		outcome = await executor.execute(ExecutionRequest(
			reference=ToolReference(cfg.test_package, cfg.test_export, cfg.test_version),
			parameters={"includeTimestamp": True},
		))
		if isinstance(outcome, ExecutionFailure):
			return VerificationResult(
				reachable=True,
				capabilities_ok=False,
				error=VerificationError.TEST_EXECUTION_FAILED,
				message=f"Test execution failed: {outcome.message}",
			)
		return None

	async def verify(self, url: str, api_key: str | None = None) -> VerificationResult:
		with self._tracer.start_span("executor.verify") as span:
			result = await self._verify(url, api_key)
			span.set_attribute("executor.reachable", result.reachable)
			if result.error is not None:
				span.set_attribute("executor.error", result.error.value)
		if result.error is not None:
			logger.info("Executor verification rejected: %s (%s)", result.error.value, result.message)
		return result

	async def _verify(self, url: str, api_key: str | None) -> VerificationResult:
		rejection = await self.check_url_policy(url)
		if rejection is not None:
			return rejection

		result = await self.probe(url, api_key)
		if result.error is not None or not self._config.test_execution:
			return result

		rejection = await self.test_execution(url, api_key)
		if rejection is not None:
			rejection.latency_ms = result.latency_ms
			rejection.health = result.health
			return rejection
		return result
