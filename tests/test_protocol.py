"""Tests for the result envelope codec."""

from __future__ import annotations

import json

from tool_sandbox.protocol import (
	ERROR_KEY,
	RESULT_KEY,
	decode_error,
	decode_result,
	encode_error,
	encode_result,
	truncate,
)


class TestEncode:
	def test_result_is_single_line(self) -> None:
		"""Encoded envelopes never contain a newline, even for nested values."""
		line = encode_result({"a": [1, 2, {"b": "multi\nline"}]})
		assert "\n" not in line
		assert json.loads(line) == {RESULT_KEY: {"a": [1, 2, {"b": "multi\nline"}]}}

	def test_error_envelope(self) -> None:
		assert json.loads(encode_error("boom")) == {ERROR_KEY: "boom"}


class TestDecodeResult:
	def test_whole_stream_is_envelope(self) -> None:
		env = decode_result(encode_result(42))
		assert env.structured
		assert env.value == 42

	def test_null_value_is_structured(self) -> None:
		"""A tool that returned nothing still produced a structured envelope."""
		env = decode_result(encode_result(None))
		assert env.structured
		assert env.value is None

	def test_noise_before_envelope(self) -> None:
		stream = "loading model...\nwarn: deprecated\n" + encode_result({"ok": True}) + "\n\n"
		env = decode_result(stream)
		assert env.structured
		assert env.value == {"ok": True}

	def test_envelope_not_last_is_unstructured(self) -> None:
		"""Only the last non-empty line is considered."""
		stream = encode_result(1) + "\ntrailing log line\n"
		env = decode_result(stream)
		assert not env.structured
		assert env.value == stream

	def test_plain_output(self) -> None:
		env = decode_result("hello world")
		assert not env.structured
		assert env.value == "hello world"

	def test_json_without_key(self) -> None:
		env = decode_result('{"something": "else"}')
		assert not env.structured

	def test_empty_stream(self) -> None:
		env = decode_result("")
		assert not env.structured
		assert env.value == ""

	def test_error_key_on_stdout_is_not_a_result(self) -> None:
		assert not decode_result(encode_error("x")).structured


class TestDecodeError:
	def test_structured_message(self) -> None:
		env = decode_error("stack trace here\n" + encode_error("Invalid input: text is required"))
		assert env.structured
		assert env.value == "Invalid input: text is required"

	def test_non_string_value_is_stringified(self) -> None:
		env = decode_error(json.dumps({ERROR_KEY: {"code": 7}}))
		assert env.structured
		assert env.value == '{"code": 7}'

	def test_unstructured_stderr(self) -> None:
		env = decode_error("Segmentation fault")
		assert not env.structured
		assert env.value == "Segmentation fault"


class TestTruncate:
	def test_short_text_unchanged(self) -> None:
		assert truncate("abc", 10) == "abc"

	def test_long_text_notes_dropped_chars(self) -> None:
		result = truncate("x" * 25, 10)
		assert result.startswith("x" * 10)
		assert result.endswith("[truncated, 15 more chars]")

	def test_zero_limit_disables(self) -> None:
		assert truncate("x" * 25, 0) == "x" * 25
