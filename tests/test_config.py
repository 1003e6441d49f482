"""Tests for config loading."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from tool_sandbox import config as config_module
from tool_sandbox.config import (
	_ENV_DENYLIST,
	SandboxServiceConfig,
	build_config,
	load_config,
	sandbox_host_env,
	validate_config,
)


@pytest.fixture(autouse=True)
def _reset_extra_env_keys(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setattr(config_module, "_extra_env_keys", set())
	monkeypatch.delenv("TOOL_SANDBOX_ENV", raising=False)
	monkeypatch.delenv("TOOL_SANDBOX_EXECUTOR_API_KEY", raising=False)


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "tool-sandbox.toml"
	toml.write_text("""\
[sandbox]
backend = "container"
timeout = 120
cpus = "2"
memory = "512m"
max_output_chars = 2000

[sandbox.container]
image = "node:20-alpine"
network = "none"
pids_limit = 64
cap_drop = ["ALL"]

[schema]
cooldown_seconds = 30
zod_converter = ""

[verification]
development = false
probe_timeout = 5
test_execution = true

[mcp]
server_name_prefix = "acme"

[health]
db_path = "health.db"
self_heal = false
batch_size = 3

[server]
host = "0.0.0.0"
port = 9000

[tracing]
enabled = true
exporter = "none"

[security]
extra_env_keys = ["HTTPS_PROXY", "GITHUB_TOKEN"]

[collections.weather]
name = "Weather"
description = "Forecast tools"

[collections.weather.executor]
type = "custom_url"
url = "https://exec.example.com"

[[collections.weather.tools]]
package = "@acme/weather"
export = "forecastTool"
version = "2.1.0"
description = "Daily forecast"
env = { WEATHER_KEY = "abc" }
""")
	return toml


def test_load_full_config(full_config: Path) -> None:
	cfg = load_config(full_config)
	assert cfg.sandbox.backend == "container"
	assert cfg.sandbox.timeout == 120
	assert cfg.sandbox.cpus == "2"
	assert cfg.sandbox.max_output_chars == 2000
	assert cfg.sandbox.container.image == "node:20-alpine"
	assert cfg.sandbox.container.network == "none"
	assert cfg.sandbox.container.pids_limit == 64
	assert cfg.schema.cooldown_seconds == 30.0
	assert cfg.schema.zod_converter == ""
	assert cfg.verification.probe_timeout == 5.0
	assert cfg.verification.test_execution is True
	assert cfg.mcp.server_name_prefix == "acme"
	assert cfg.health.db_path == "health.db"
	assert cfg.health.self_heal is False
	assert cfg.health.batch_size == 3
	assert cfg.server.port == 9000
	assert cfg.tracing.enabled is True

	weather = cfg.collections["weather"]
	assert weather.name == "Weather"
	assert weather.executor.type == "custom_url"
	assert weather.executor.url == "https://exec.example.com"
	assert weather.tools[0].package == "@acme/weather"
	assert weather.tools[0].env == {"WEATHER_KEY": "abc"}


def test_defaults_when_sections_missing() -> None:
	cfg = build_config({})
	assert cfg.sandbox.backend == "container"
	assert cfg.sandbox.timeout == 300
	assert cfg.sandbox.container.run_as_user == "1000:1000"
	assert cfg.schema.cooldown_seconds == 60.0
	assert cfg.schema.zod_converter == "zod-to-json-schema@3.25.0"
	assert cfg.verification.development is False
	assert cfg.mcp.protocol_version == "2024-11-05"
	assert cfg.collections == {}


def test_config_file_not_found() -> None:
	with pytest.raises(FileNotFoundError):
		load_config("/nonexistent/tool-sandbox.toml")


def test_development_env_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("TOOL_SANDBOX_ENV", "development")
	assert build_config({}).verification.development is True


def test_executor_api_key_env_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setenv("TOOL_SANDBOX_EXECUTOR_API_KEY", "from-env")
	cfg = build_config({"collections": {"c": {"executor": {"type": "custom_url", "url": "https://x"}}}})
	assert cfg.collections["c"].executor.api_key == "from-env"


class TestSandboxHostEnv:
	def test_secrets_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
		monkeypatch.setenv("PATH", "/usr/bin")
		env = sandbox_host_env()
		assert "OPENAI_API_KEY" not in env
		assert env["PATH"] == "/usr/bin"

	def test_unknown_keys_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("SOME_RANDOM_SETTING", "1")
		assert "SOME_RANDOM_SETTING" not in sandbox_host_env()

	def test_extra_keys_allowed_but_denylist_wins(self, full_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("HTTPS_PROXY", "http://proxy:3128")
		monkeypatch.setenv("GITHUB_TOKEN", "ghp_x")
		load_config(full_config)
		env = sandbox_host_env()
		assert env["HTTPS_PROXY"] == "http://proxy:3128"
		assert "GITHUB_TOKEN" not in env
		assert "GITHUB_TOKEN" in _ENV_DENYLIST


class TestValidateConfig:
	def test_valid_container_config(self) -> None:
		with patch("tool_sandbox.config.shutil.which", return_value="/usr/bin/docker"):
			issues = validate_config(SandboxServiceConfig())
		assert [i for i in issues if i[0] == "error"] == []

	def test_unknown_backend(self) -> None:
		cfg = SandboxServiceConfig()
		cfg.sandbox.backend = "vm"
		issues = validate_config(cfg)
		assert any(lvl == "error" and "sandbox.backend" in msg for lvl, msg in issues)

	def test_docker_missing(self) -> None:
		with patch("tool_sandbox.config.shutil.which", return_value=None):
			issues = validate_config(SandboxServiceConfig())
		assert any("docker executable not found" in msg for _, msg in issues)

	def test_local_backend_warns(self) -> None:
		cfg = SandboxServiceConfig()
		cfg.sandbox.backend = "local"
		with patch("tool_sandbox.config.shutil.which", return_value="/usr/bin/node"):
			issues = validate_config(cfg)
		assert ("warning", "local sandbox backend offers process isolation only") in issues

	def test_bad_budgets(self) -> None:
		cfg = SandboxServiceConfig()
		cfg.sandbox.timeout = 0
		cfg.schema.cooldown_seconds = -1
		cfg.health.batch_size = 0
		with patch("tool_sandbox.config.shutil.which", return_value="/usr/bin/docker"):
			errors = [msg for lvl, msg in validate_config(cfg) if lvl == "error"]
		assert len(errors) == 3

	def test_development_mode_warns(self) -> None:
		cfg = SandboxServiceConfig()
		cfg.verification.development = True
		with patch("tool_sandbox.config.shutil.which", return_value="/usr/bin/docker"):
			issues = validate_config(cfg)
		assert any(lvl == "warning" and "development" in msg for lvl, msg in issues)

	def test_custom_executor_needs_url(self) -> None:
		cfg = build_config({
			"collections": {"c": {
				"executor": {"type": "custom_url"},
				"tools": [{"package": "demo-tool"}],
			}},
		})
		with patch("tool_sandbox.config.shutil.which", return_value="/usr/bin/docker"):
			errors = [msg for lvl, msg in validate_config(cfg) if lvl == "error"]
		assert any("executor.url required" in msg for msg in errors)
		assert any("needs package and export" in msg for msg in errors)
