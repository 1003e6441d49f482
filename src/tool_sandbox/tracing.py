"""OpenTelemetry tracing integration."""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

from tool_sandbox.config import TracingConfig
from tool_sandbox.models import ToolReference

logger = logging.getLogger(__name__)


class SandboxTracer:
	"""Manages OpenTelemetry tracing for executions, extractions and verifications.

	When tracing is disabled the tracer comes from a NoOpTracerProvider, so
	spans are non-recording and cost nothing.
	"""

	def __init__(self, config: TracingConfig | None = None) -> None:
		self._config = config or TracingConfig()
		self._provider: TracerProvider | None = None

		if not self._config.enabled or self._config.exporter == "none":
			self._tracer = trace.NoOpTracerProvider().get_tracer("tool-sandbox")
			return

		resource = Resource.create({"service.name": self._config.service_name})
		provider = TracerProvider(resource=resource)

		if self._config.exporter == "otlp":
			# Shipped in the "otlp" extra
			from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
			provider.add_span_processor(
				SimpleSpanProcessor(OTLPSpanExporter(endpoint=self._config.otlp_endpoint))
			)
		else:
			provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

		self._provider = provider
		self._tracer = provider.get_tracer("tool-sandbox")

	@property
	def active(self) -> bool:
		return self._provider is not None

	@contextmanager
	def start_span(self, name: str, **attributes: Any) -> Generator[trace.Span, None, None]:
		with self._tracer.start_as_current_span(name) as span:
			for key, value in attributes.items():
				span.set_attribute(key, value)
			yield span

	@contextmanager
	def start_tool_span(self, name: str, reference: ToolReference) -> Generator[trace.Span, None, None]:
		with self.start_span(
			name,
			**{
				"tool.package": reference.package_name,
				"tool.export": reference.export_name,
				"tool.version": reference.version,
			},
		) as span:
			yield span

	def shutdown(self) -> None:
		if self._provider is not None:
			self._provider.shutdown()
