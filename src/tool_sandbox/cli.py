"""CLI interface for tool-sandbox."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from tool_sandbox.config import SandboxServiceConfig, build_config, load_config, validate_config
from tool_sandbox.models import ExecutionRequest, HealthStatus, ToolReference
from tool_sandbox.sandbox import ProvisioningError

DEFAULT_CONFIG = "tool-sandbox.toml"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="tool-sandbox",
		description="Run npm registry packages as sandboxed tools",
	)
	sub = parser.add_subparsers(dest="command")

	def _tool_args(p: argparse.ArgumentParser) -> None:
		p.add_argument("package", help="npm package name")
		p.add_argument("export", help="Exported tool name")
		p.add_argument("--version", dest="tool_version", default="latest", help="Package version or tag")
		p.add_argument(
			"--env", action="append", default=[], metavar="KEY=VALUE",
			help="Environment variable for the tool (repeatable)",
		)
		p.add_argument("--backend", choices=["container", "local"], default=None)

	# tool-sandbox serve
	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--config", default=DEFAULT_CONFIG)
	serve.add_argument("--host", default=None)
	serve.add_argument("--port", type=int, default=None)

	# tool-sandbox execute
	execute = sub.add_parser("execute", help="Execute a tool once in a fresh sandbox")
	execute.add_argument("--config", default=DEFAULT_CONFIG)
	_tool_args(execute)
	execute.add_argument("--params", default="{}", help="Tool parameters as a JSON object")

	# tool-sandbox extract-schema
	extract = sub.add_parser("extract-schema", help="Read a tool's input schema without running it")
	extract.add_argument("--config", default=DEFAULT_CONFIG)
	_tool_args(extract)

	# tool-sandbox health-check
	check = sub.add_parser("health-check", help="Probe a tool and record its health")
	check.add_argument("--config", default=DEFAULT_CONFIG)
	_tool_args(check)

	# tool-sandbox verify
	verify = sub.add_parser("verify", help="Verify a custom executor URL")
	verify.add_argument("--config", default=DEFAULT_CONFIG)
	verify.add_argument("url")
	verify.add_argument("--api-key", default=None)
	verify.add_argument("--development", action="store_true", help="Allow http and private hosts")

	# tool-sandbox mcp
	mcp = sub.add_parser("mcp", help="Serve one collection over MCP stdio")
	mcp.add_argument("--config", default=DEFAULT_CONFIG)
	mcp.add_argument("collection", help="Collection id from the config")

	# tool-sandbox validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG)

	return parser


def _load(args: argparse.Namespace) -> SandboxServiceConfig:
	"""Load --config; the default path may be absent, in which case defaults apply."""
	if args.config == DEFAULT_CONFIG and not Path(DEFAULT_CONFIG).exists():
		config = build_config({})
	else:
		config = load_config(args.config)
	backend = getattr(args, "backend", None)
	if backend:
		config.sandbox.backend = backend
	return config


def _parse_env(pairs: list[str]) -> dict[str, str]:
	env: dict[str, str] = {}
	for pair in pairs:
		key, sep, value = pair.partition("=")
		if not sep or not key:
			raise ValueError(f"Expected KEY=VALUE, got: {pair}")
		env[key] = value
	return env


def _print_json(data: object) -> None:
	print(json.dumps(data, indent=2, default=str))


def cmd_serve(args: argparse.Namespace) -> int:
	"""Run the HTTP API with uvicorn."""
	import uvicorn

	from tool_sandbox.server import create_app

	config = _load(args)
	host = args.host or config.server.host
	port = args.port or config.server.port
	uvicorn.run(create_app(config), host=host, port=port, log_level="info")
	return 0


def cmd_execute(args: argparse.Namespace) -> int:
	"""Execute a tool and print the outcome."""
	from tool_sandbox.service import SandboxService

	params = json.loads(args.params)
	if not isinstance(params, dict):
		print("Error: --params must be a JSON object")
		return 1
	request = ExecutionRequest(
		reference=ToolReference(args.package, args.export, args.tool_version),
		parameters=params,
		environment=_parse_env(args.env),
	)
	service = SandboxService.from_config(_load(args))
	try:
		outcome = asyncio.run(service.executor.execute(request))
	finally:
		service.close()
	_print_json(outcome.to_response())
	return 0 if outcome.success else 1


def cmd_extract_schema(args: argparse.Namespace) -> int:
	"""Print a tool's input schema and legacy parameter list."""
	from tool_sandbox.service import SandboxService

	service = SandboxService.from_config(_load(args))
	try:
		result = asyncio.run(service.extractor.extract_schema(
			args.package, args.export, args.tool_version, _parse_env(args.env),
		))
	finally:
		service.close()
	_print_json(result.to_response())
	return 0 if result.success else 1


def cmd_health_check(args: argparse.Namespace) -> int:
	"""Probe a tool: import check, then execution with placeholder arguments."""
	from tool_sandbox.service import SandboxService

	service = SandboxService.from_config(_load(args))
	ref = ToolReference(args.package, args.export, args.tool_version)
	try:
		result = asyncio.run(service.checker.check(ref, _parse_env(args.env)))
	finally:
		service.close()
	_print_json({
		"toolKey": result.tool_key,
		"importHealth": result.import_status.value,
		"executionHealth": result.execution_status.value,
		"overall": result.overall.value,
		"importError": result.import_error,
		"executionError": result.execution_error,
	})
	return 0 if result.overall == HealthStatus.HEALTHY else 1


def cmd_verify(args: argparse.Namespace) -> int:
	"""Verify a custom executor URL."""
	from tool_sandbox.verification import ExecutorVerifier

	config = _load(args)
	if args.development:
		config.verification.development = True
	result = asyncio.run(ExecutorVerifier(config.verification).verify(args.url, args.api_key))
	_print_json({"success": True, "data": result.to_dict()})
	return 0 if result.error is None else 1


def cmd_mcp(args: argparse.Namespace) -> int:
	"""Serve one collection over MCP stdio."""
	from tool_sandbox.mcp_bridge import run_stdio_server
	from tool_sandbox.service import SandboxService

	config = _load(args)
	if args.collection not in config.collections:
		print(f"Unknown collection: {args.collection}", file=sys.stderr)
		return 1
	service = SandboxService.from_config(config)
	try:
		run_stdio_server(args.collection, service.dispatcher)
	finally:
		service.close()
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"serve": cmd_serve,
	"execute": cmd_execute,
	"extract-schema": cmd_extract_schema,
	"health-check": cmd_health_check,
	"verify": cmd_verify,
	"mcp": cmd_mcp,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	# MCP stdio owns stdout, so logs always go to stderr
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		stream=sys.stderr,
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except (FileNotFoundError, ValueError) as e:
		print(f"Error: {e}", file=sys.stderr)
		return 1
	except ProvisioningError as e:
		logger.error("Sandbox provisioning failed: %s", e)
		return 2


if __name__ == "__main__":
	sys.exit(main())
