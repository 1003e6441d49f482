"""Entry script generation for tool processes.

Each generated script is a self-contained Node ES module. All request data
is embedded as a single JSON literal; nothing from the request is ever
spliced into code. The script injects the caller's environment, imports the
package, resolves the tool through a fixed chain of strategies and reports
its outcome through the result envelope codec.
"""

from __future__ import annotations

import json
from typing import Any

from tool_sandbox.models import ToolReference
from tool_sandbox.protocol import ERROR_KEY, RESOLUTION_EXIT_CODE, RESULT_KEY

SCRIPT_FILENAME = "run-tool.mjs"

PACKAGE_JSON = json.dumps(
	{"name": "tool-sandbox-run", "private": True, "type": "module"},
	indent=2,
)

_RUNTIME = """\
const RESULT_KEY = %(result_key)s;
const ERROR_KEY = %(error_key)s;
const RESOLUTION_EXIT_CODE = %(resolution_exit_code)d;

// Must run before the package is imported so module init sees it
for (const [key, value] of Object.entries(REQUEST.env)) {
  process.env[key] = value;
}

class ToolResolutionError extends Error {}

function isTool(value) {
  return value != null
    && (typeof value === "object" || typeof value === "function")
    && typeof value.execute === "function";
}

async function tryFactory(factory, args) {
  try {
    const made = await factory(...args);
    return isTool(made) ? made : null;
  } catch {
    return null;
  }
}

async function resolveTool(mod) {
  const strategies = [
    () => mod[REQUEST.exportName],
    () => mod.default?.[REQUEST.exportName],
    () => mod.default,
  ];
  for (const pick of strategies) {
    let value;
    try {
      value = pick();
    } catch {
      continue;
    }
    if (value == null) continue;
    if (isTool(value)) return value;
    if (typeof value === "function") {
      for (const args of [[], [{ ...REQUEST.env }]]) {
        const made = await tryFactory(value, args);
        if (made) return made;
      }
    }
  }
  throw new ToolResolutionError(
    `Tool "${REQUEST.exportName}" not found in package "${REQUEST.packageName}": `
    + "no export, default member, default export or factory exposes execute()"
  );
}

function finish(stream, payload, code) {
  stream.write("\\n" + JSON.stringify(payload) + "\\n");
  process.exit(code);
}

function fail(err) {
  const message = err instanceof Error ? err.message : String(err);
  const code = err instanceof ToolResolutionError ? RESOLUTION_EXIT_CODE : 1;
  finish(process.stderr, { [ERROR_KEY]: message || "Unknown error" }, code);
}

async function loadTool() {
  const mod = await import(REQUEST.packageName);
  return resolveTool(mod);
}
"""

_EXECUTE_MAIN = """
async function main() {
  const tool = await loadTool();
  const context = {
    toolCallId: "tool-sandbox",
    messages: [],
    abortSignal: new AbortController().signal,
  };
  const output = await tool.execute(REQUEST.params, context);
  finish(process.stdout, { [RESULT_KEY]: output === undefined ? null : output }, 0);
}

main().catch(fail);
"""

_DESCRIBE_MAIN = """
function attempt(read) {
  try {
    const value = read();
    return value && typeof value === "object" ? value : null;
  } catch {
    return null;
  }
}

async function convertZodV3(schema) {
  try {
    const { zodToJsonSchema } = await import("zod-to-json-schema");
    return attempt(() => zodToJsonSchema(schema));
  } catch {
    return null;
  }
}

async function toJsonSchema(schema) {
  if (schema == null || typeof schema !== "object") return null;
  const strategies = [
    () => typeof schema.toJSONSchema === "function" ? schema.toJSONSchema() : null,
    () => typeof schema.jsonSchema === "function" ? schema.jsonSchema() : null,
    () => schema.schema,
    () => schema.jsonSchema,
  ];
  for (const read of strategies) {
    const found = attempt(read);
    if (found) return found;
  }
  if (schema._def) return convertZodV3(schema);
  if (schema.type || schema.properties) return schema;
  return null;
}

async function main() {
  const tool = await loadTool();
  const inputSchema = await toJsonSchema(tool.inputSchema ?? tool.parameters);
  finish(process.stdout, {
    [RESULT_KEY]: {
      inputSchema,
      description: typeof tool.description === "string" ? tool.description : null,
    },
  }, 0);
}

main().catch(fail);
"""


def _preamble(reference: ToolReference, parameters: dict[str, Any], environment: dict[str, str]) -> str:
	request = {
		"packageName": reference.package_name,
		"exportName": reference.export_name,
		"params": parameters,
		"env": environment,
	}
	runtime = _RUNTIME % {
		"result_key": json.dumps(RESULT_KEY),
		"error_key": json.dumps(ERROR_KEY),
		"resolution_exit_code": RESOLUTION_EXIT_CODE,
	}
	return f"const REQUEST = {json.dumps(request)};\n{runtime}"


def synthesize(
	reference: ToolReference,
	parameters: dict[str, Any],
	environment: dict[str, str],
) -> str:
	"""Build the script that resolves and executes a tool."""
	return _preamble(reference, parameters, environment) + _EXECUTE_MAIN


def synthesize_describe(reference: ToolReference, environment: dict[str, str]) -> str:
	"""Build the script that resolves a tool and reports its input schema without executing it."""
	return _preamble(reference, {}, environment) + _DESCRIBE_MAIN
