"""Wires config into executors, extractor, verifier, health store and MCP dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from tool_sandbox.collection_source import CollectionSource, StaticCollectionSource
from tool_sandbox.config import SandboxServiceConfig
from tool_sandbox.executor import SandboxExecutor, ToolExecutor
from tool_sandbox.health import HealthChecker, HealthReportingExecutor, SQLiteHealthStore
from tool_sandbox.mcp_bridge import McpDispatcher
from tool_sandbox.remote import ExecutorResolver
from tool_sandbox.sandbox import SandboxBackend, create_backend
from tool_sandbox.schema import SchemaExtractor
from tool_sandbox.tracing import SandboxTracer
from tool_sandbox.verification import ExecutorVerifier

logger = logging.getLogger(__name__)


@dataclass
class SandboxService:
	"""Everything the HTTP API and CLI need, built once per process."""

	config: SandboxServiceConfig
	backend: SandboxBackend
	sandbox_executor: SandboxExecutor
	executor: ToolExecutor
	extractor: SchemaExtractor
	verifier: ExecutorVerifier
	health: SQLiteHealthStore
	checker: HealthChecker
	collections: CollectionSource
	dispatcher: McpDispatcher
	tracer: SandboxTracer

	@classmethod
	def from_config(
		cls,
		config: SandboxServiceConfig,
		backend: SandboxBackend | None = None,
		collections: CollectionSource | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> SandboxService:
		tracer = SandboxTracer(config.tracing)
		backend = backend or create_backend(config.sandbox)
		sandbox_executor = SandboxExecutor(backend, config.sandbox, tracer)
		health = SQLiteHealthStore(config.health.db_path or ":memory:", self_heal=config.health.self_heal)
		executor = HealthReportingExecutor(sandbox_executor, health)
		extractor = SchemaExtractor(sandbox_executor, config.schema, tracer=tracer)
		verifier = ExecutorVerifier(config.verification, transport=transport, tracer=tracer)
		checker = HealthChecker(extractor, sandbox_executor, health, config.health)
		collections = collections or StaticCollectionSource.from_config(config.collections)
		resolver = ExecutorResolver(executor, transport=transport)
		dispatcher = McpDispatcher(collections, resolver, config.mcp)
		logger.info(
			"Tool sandbox ready: backend=%s timeout=%ds collections=%d",
			config.sandbox.backend, config.sandbox.timeout, len(config.collections),
		)
		return cls(
			config=config,
			backend=backend,
			sandbox_executor=sandbox_executor,
			executor=executor,
			extractor=extractor,
			verifier=verifier,
			health=health,
			checker=checker,
			collections=collections,
			dispatcher=dispatcher,
			tracer=tracer,
		)

	def close(self) -> None:
		self.health.close()
		self.tracer.shutdown()
