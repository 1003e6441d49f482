"""TOML configuration loader for tool-sandbox."""

from __future__ import annotations

import os
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class ContainerConfig:
	"""Docker sandbox settings."""

	image: str = "node:22-slim"
	docker_executable: str = "docker"
	network: str = "bridge"
	workdir: str = "/home/node/sandbox"  # must be creatable by run_as_user
	cap_drop: list[str] = field(default_factory=lambda: ["ALL"])
	security_opt: list[str] = field(default_factory=lambda: ["no-new-privileges:true"])
	run_as_user: str = "1000:1000"
	pids_limit: int = 256
	startup_timeout: int = 60


@dataclass
class SandboxConfig:
	"""Per-invocation sandbox shape and budget."""

	backend: str = "container"  # container | local
	timeout: int = 300  # wall-clock budget per sandbox, seconds
	cpus: str = "1"
	memory: str = "1g"
	max_output_chars: int = 4000
	node_executable: str = "node"
	npm_executable: str = "npm"
	root_dir: str = ""  # local backend: parent dir for sandboxes, default tempdir
	container: ContainerConfig = field(default_factory=ContainerConfig)


@dataclass
class SchemaConfig:
	"""Schema extraction settings."""

	cooldown_seconds: float = 60.0
	# Installed next to the tool in describe mode to convert Zod v3 schemas; empty disables
	zod_converter: str = "zod-to-json-schema@3.25.0"


@dataclass
class VerificationConfig:
	"""Custom executor verification settings."""

	development: bool = False
	probe_timeout: float = 10.0
	health_path: str = "/health"
	test_execution: bool = False
	test_timeout: float = 30.0
	test_package: str = "@tpmjs/hello"
	test_export: str = "helloWorldTool"
	test_version: str = "0.0.2"


@dataclass
class McpConfig:
	"""MCP bridge identity."""

	protocol_version: str = "2024-11-05"
	server_name_prefix: str = "tool-sandbox"
	server_version: str = "1.0.0"


@dataclass
class HealthConfig:
	"""Tool health tracking settings."""

	db_path: str = ""  # empty -> in-memory
	self_heal: bool = True
	batch_size: int = 5
	batch_delay: float = 1.0


@dataclass
class ServerConfig:
	"""HTTP API settings."""

	host: str = "127.0.0.1"
	port: int = 8400


@dataclass
class TracingConfig:
	"""OpenTelemetry tracing settings."""

	enabled: bool = False
	service_name: str = "tool-sandbox"
	exporter: str = "console"  # console | otlp | none
	otlp_endpoint: str = "http://localhost:4318/v1/traces"


@dataclass
class SecurityConfig:
	"""Extra host env vars allowed into local sandboxes."""

	extra_env_keys: list[str] = field(default_factory=list)


@dataclass
class ExecutorSettings:
	"""Executor choice for a collection: built-in sandbox or a custom URL."""

	type: str = "default"  # default | custom_url
	url: str = ""
	api_key: str = ""


@dataclass
class CollectionToolConfig:
	package: str = ""
	export: str = ""
	version: str = "latest"
	description: str = ""
	input_schema: dict[str, Any] = field(default_factory=dict)
	env: dict[str, str] = field(default_factory=dict)


@dataclass
class CollectionConfig:
	"""A curated set of tools exposed under one MCP endpoint."""

	name: str = ""
	description: str = ""
	public: bool = True
	executor: ExecutorSettings | None = None
	tools: list[CollectionToolConfig] = field(default_factory=list)


@dataclass
class SandboxServiceConfig:
	"""Top-level tool-sandbox configuration."""

	sandbox: SandboxConfig = field(default_factory=SandboxConfig)
	schema: SchemaConfig = field(default_factory=SchemaConfig)
	verification: VerificationConfig = field(default_factory=VerificationConfig)
	mcp: McpConfig = field(default_factory=McpConfig)
	health: HealthConfig = field(default_factory=HealthConfig)
	server: ServerConfig = field(default_factory=ServerConfig)
	tracing: TracingConfig = field(default_factory=TracingConfig)
	security: SecurityConfig = field(default_factory=SecurityConfig)
	collections: dict[str, CollectionConfig] = field(default_factory=dict)


def _build_container(data: dict[str, Any]) -> ContainerConfig:
	cc = ContainerConfig()
	for key in ("image", "docker_executable", "network", "workdir", "run_as_user"):
		if key in data:
			setattr(cc, key, str(data[key]))
	for key in ("cap_drop", "security_opt"):
		if key in data:
			setattr(cc, key, [str(v) for v in data[key]])
	for key in ("pids_limit", "startup_timeout"):
		if key in data:
			setattr(cc, key, int(data[key]))
	return cc


def _build_sandbox(data: dict[str, Any]) -> SandboxConfig:
	sc = SandboxConfig()
	for key in ("backend", "cpus", "memory", "node_executable", "npm_executable", "root_dir"):
		if key in data:
			setattr(sc, key, str(data[key]))
	for key in ("timeout", "max_output_chars"):
		if key in data:
			setattr(sc, key, int(data[key]))
	if "container" in data:
		sc.container = _build_container(data["container"])
	return sc


def _build_schema(data: dict[str, Any]) -> SchemaConfig:
	sc = SchemaConfig()
	if "cooldown_seconds" in data:
		sc.cooldown_seconds = float(data["cooldown_seconds"])
	if "zod_converter" in data:
		sc.zod_converter = str(data["zod_converter"])
	return sc


def _build_verification(data: dict[str, Any]) -> VerificationConfig:
	vc = VerificationConfig()
	for key in ("development", "test_execution"):
		if key in data:
			setattr(vc, key, bool(data[key]))
	for key in ("probe_timeout", "test_timeout"):
		if key in data:
			setattr(vc, key, float(data[key]))
	for key in ("health_path", "test_package", "test_export", "test_version"):
		if key in data:
			setattr(vc, key, str(data[key]))
	return vc


def _build_mcp(data: dict[str, Any]) -> McpConfig:
	mc = McpConfig()
	for key in ("protocol_version", "server_name_prefix", "server_version"):
		if key in data:
			setattr(mc, key, str(data[key]))
	return mc


def _build_health(data: dict[str, Any]) -> HealthConfig:
	hc = HealthConfig()
	if "db_path" in data:
		hc.db_path = str(data["db_path"])
	if "self_heal" in data:
		hc.self_heal = bool(data["self_heal"])
	if "batch_size" in data:
		hc.batch_size = int(data["batch_size"])
	if "batch_delay" in data:
		hc.batch_delay = float(data["batch_delay"])
	return hc


def _build_server(data: dict[str, Any]) -> ServerConfig:
	sc = ServerConfig()
	if "host" in data:
		sc.host = str(data["host"])
	if "port" in data:
		sc.port = int(data["port"])
	return sc


def _build_tracing(data: dict[str, Any]) -> TracingConfig:
	tc = TracingConfig()
	if "enabled" in data:
		tc.enabled = bool(data["enabled"])
	if "service_name" in data:
		tc.service_name = str(data["service_name"])
	if "exporter" in data:
		tc.exporter = str(data["exporter"])
	if "otlp_endpoint" in data:
		tc.otlp_endpoint = str(data["otlp_endpoint"])
	return tc


def _build_security(data: dict[str, Any]) -> SecurityConfig:
	sc = SecurityConfig()
	if "extra_env_keys" in data:
		sc.extra_env_keys = [str(k) for k in data["extra_env_keys"]]
	return sc


def _build_executor(data: dict[str, Any]) -> ExecutorSettings:
	es = ExecutorSettings()
	for key in ("type", "url", "api_key"):
		if key in data:
			setattr(es, key, str(data[key]))
	return es


def _build_collection_tools(data: list[dict[str, Any]]) -> list[CollectionToolConfig]:
	tools: list[CollectionToolConfig] = []
	for item in data:
		tc = CollectionToolConfig()
		for key in ("package", "export", "version", "description"):
			if key in item:
				setattr(tc, key, str(item[key]))
		if "input_schema" in item:
			tc.input_schema = dict(item["input_schema"])
		if "env" in item:
			tc.env = {str(k): str(v) for k, v in item["env"].items()}
		tools.append(tc)
	return tools


def _build_collection(data: dict[str, Any]) -> CollectionConfig:
	cc = CollectionConfig()
	if "name" in data:
		cc.name = str(data["name"])
	if "description" in data:
		cc.description = str(data["description"])
	if "public" in data:
		cc.public = bool(data["public"])
	if "executor" in data:
		cc.executor = _build_executor(data["executor"])
	if "tools" in data:
		cc.tools = _build_collection_tools(data["tools"])
	return cc


_ENV_ALLOWLIST = {
	# System essentials
	"HOME", "USER", "LOGNAME", "SHELL", "LANG", "LC_ALL", "LC_CTYPE",
	"TERM", "TMPDIR", "TMP", "TEMP",
	# Required for subprocess execution
	"PATH",
	# Node toolchain
	"NODE_PATH", "NPM_CONFIG_REGISTRY", "NPM_CONFIG_CACHE",
}

# Keys that must NEVER reach a sandbox from the host, even if added to extra_env_keys
_ENV_DENYLIST = {
	"ANTHROPIC_API_KEY", "OPENAI_API_KEY",
	"AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN",
	"NPM_TOKEN", "PYPI_TOKEN",
	"DATABASE_URL", "REDIS_URL",
	"TOOL_SANDBOX_API_KEY",
}

# Module-level extra keys, populated by load_config from [security] section
_extra_env_keys: set[str] = set()


def sandbox_host_env() -> dict[str, str]:
	"""Build the restricted host environment a local sandbox process inherits.

	Uses an allowlist approach: only safe system vars plus any explicitly
	configured extras are passed through. Secrets and API keys are stripped.
	Caller-supplied tool env is layered on top by the sandbox backend.
	"""
	allowed = _ENV_ALLOWLIST | _extra_env_keys
	return {
		k: v for k, v in os.environ.items()
		if k in allowed and k not in _ENV_DENYLIST
	}


def load_config(path: str | Path) -> SandboxServiceConfig:
	"""Load a tool-sandbox.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed SandboxServiceConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	return build_config(data)


def build_config(data: dict[str, Any]) -> SandboxServiceConfig:
	"""Build a config from an already-parsed TOML mapping."""
	sc = SandboxServiceConfig()
	if "sandbox" in data:
		sc.sandbox = _build_sandbox(data["sandbox"])
	if "schema" in data:
		sc.schema = _build_schema(data["schema"])
	if "verification" in data:
		sc.verification = _build_verification(data["verification"])
	if "mcp" in data:
		sc.mcp = _build_mcp(data["mcp"])
	if "health" in data:
		sc.health = _build_health(data["health"])
	if "server" in data:
		sc.server = _build_server(data["server"])
	if "tracing" in data:
		sc.tracing = _build_tracing(data["tracing"])
	if "security" in data:
		sc.security = _build_security(data["security"])
	for collection_id, collection_data in data.get("collections", {}).items():
		sc.collections[str(collection_id)] = _build_collection(collection_data)
	# Populate module-level extra env keys for sandbox_host_env()
	global _extra_env_keys
	_extra_env_keys = set(sc.security.extra_env_keys) - _ENV_DENYLIST
	# Env var fallbacks
	if os.environ.get("TOOL_SANDBOX_ENV", "") == "development":
		sc.verification.development = True
	for collection in sc.collections.values():
		if collection.executor and not collection.executor.api_key:
			collection.executor.api_key = os.environ.get("TOOL_SANDBOX_EXECUTOR_API_KEY", "")
	return sc


def validate_config(config: SandboxServiceConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded SandboxServiceConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []
	sb = config.sandbox

	# 1. Backend type
	if sb.backend not in ("container", "local"):
		issues.append(("error", f"sandbox.backend must be 'container' or 'local', got: {sb.backend}"))

	# 2. Container backend checks
	if sb.backend == "container":
		cc = sb.container
		if not cc.image:
			issues.append(("error", "sandbox.container.image must not be empty"))
		if shutil.which(cc.docker_executable) is None:
			issues.append(("error", f"docker executable not found on PATH: {cc.docker_executable}"))
	elif sb.backend == "local":
		for exe in (sb.node_executable, sb.npm_executable):
			if shutil.which(exe) is None:
				issues.append(("error", f"executable not found on PATH: {exe}"))
		issues.append(("warning", "local sandbox backend offers process isolation only"))

	# 3. Budgets
	if sb.timeout <= 0:
		issues.append(("error", f"sandbox.timeout must be positive: {sb.timeout}"))
	elif sb.timeout < 30:
		issues.append(("warning", f"sandbox.timeout is very low: {sb.timeout}s"))
	if config.schema.cooldown_seconds < 0:
		issues.append(("error", "schema.cooldown_seconds must not be negative"))
	if config.verification.probe_timeout <= 0:
		issues.append(("error", "verification.probe_timeout must be positive"))
	if config.health.batch_size < 1:
		issues.append(("error", "health.batch_size must be at least 1"))

	# 4. Development mode
	if config.verification.development:
		issues.append(("warning", "verification development mode allows http and private executor URLs"))

	# 5. Collections
	for collection_id, collection in config.collections.items():
		for i, tool in enumerate(collection.tools):
			if not tool.package or not tool.export:
				issues.append(("error", f"collections.{collection_id}.tools[{i}] needs package and export"))
		if collection.executor and collection.executor.type not in ("default", "custom_url"):
			issues.append(("error", f"collections.{collection_id}.executor.type unknown: {collection.executor.type}"))
		if collection.executor and collection.executor.type == "custom_url" and not collection.executor.url:
			issues.append(("error", f"collections.{collection_id}.executor.url required for custom_url"))

	return issues
