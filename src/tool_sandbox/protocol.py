"""Result envelope codec for tool processes.

A tool process reports its outcome as a single JSON object written last,
on one line: ``{"__tool_result__": <value>}`` on stdout for success, or
``{"__tool_error__": "<message>"}`` on stderr for failure. Anything else the
tool prints is incidental and decodes as unstructured output.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

RESULT_KEY = "__tool_result__"
ERROR_KEY = "__tool_error__"

# Exit code the entry script uses when no export strategy yields a tool
RESOLUTION_EXIT_CODE = 3


@dataclass
class Envelope:
	"""Decoded stream. ``structured`` is False when no envelope was found."""

	structured: bool
	value: Any = None


def encode_result(value: Any) -> str:
	return json.dumps({RESULT_KEY: value}, separators=(",", ":"))


def encode_error(message: str) -> str:
	return json.dumps({ERROR_KEY: message}, separators=(",", ":"))


def _unwrap(text: str, key: str) -> Envelope | None:
	try:
		raw = json.loads(text)
	except (json.JSONDecodeError, ValueError):
		return None
	if isinstance(raw, dict) and key in raw:
		return Envelope(structured=True, value=raw[key])
	return None


def _decode(stream: str, key: str) -> Envelope:
	if not stream or not stream.strip():
		return Envelope(structured=False, value=stream)

	found = _unwrap(stream, key)
	if found is not None:
		return found

	# Tools may print diagnostics before the envelope line
	for line in reversed(stream.splitlines()):
		if line.strip():
			found = _unwrap(line, key)
			if found is not None:
				return found
			break

	return Envelope(structured=False, value=stream)


def decode_result(stdout: str) -> Envelope:
	"""Decode a success envelope from captured stdout."""
	return _decode(stdout, RESULT_KEY)


def decode_error(stderr: str) -> Envelope:
	"""Decode an error envelope from captured stderr.

	A structured error value is always returned as a string.
	"""
	env = _decode(stderr, ERROR_KEY)
	if env.structured and not isinstance(env.value, str):
		env.value = json.dumps(env.value)
	return env


def truncate(text: str, limit: int) -> str:
	"""Truncate text to limit chars, noting how much was dropped."""
	if limit <= 0 or len(text) <= limit:
		return text
	return text[:limit] + f"\n... [truncated, {len(text) - limit} more chars]"
