"""Tests for LaunchConfig (YAML / env driven run descriptions)."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from hostspine.core.settings import LauncherSettings
from hostspine.launch.config import LaunchConfig
from hostspine.launch.profiles import CONTAINER_PROFILE, FUNCTION_PROFILE, GENERIC_PROFILE, JDWP_AGENT_ARGS


class TestFromYaml:
    def test_minimal(self):
        config = LaunchConfig.from_yaml("artifact: build/app\n")
        assert config.profile == "function"
        assert config.artifact == Path("build/app")
        assert config.debug is False

    def test_full_document(self):
        content = """
profile: function
artifact: target/azure-functions/orders
settings_key: orders
settings:
  FUNCTIONS_WORKER_RUNTIME: java
debug: true
debug_port: 5007
readiness:
  - "Host is up"
"""
        config = LaunchConfig.from_yaml(content)
        assert config.settings_key == "orders"
        assert config.to_declared().run_settings == {"FUNCTIONS_WORKER_RUNTIME": "java"}
        assert config.debug_port == 5007

    def test_invalid_yaml(self):
        with pytest.raises(ValueError, match="Invalid YAML"):
            LaunchConfig.from_yaml("artifact: [unclosed")

    def test_non_mapping(self):
        with pytest.raises(ValueError, match="mapping"):
            LaunchConfig.from_yaml("- just\n- a list\n")

    def test_relative_paths_resolved_against_file(self, tmp_path):
        config_file = tmp_path / "launch.yaml"
        config_file.write_text(
            "artifact: build/app\nhost_config: conf/host.json\nextra_files: [proxies.json, /abs/x.json]\n",
            encoding="utf-8",
        )
        config = LaunchConfig.from_yaml_file(config_file)
        base = tmp_path.resolve()
        assert config.artifact == base / "build/app"
        assert config.to_artifacts().host_config_path == base / "conf/host.json"
        assert config.extra_files == [base / "proxies.json", Path("/abs/x.json")]


class TestValidation:
    def test_unknown_profile(self):
        with pytest.raises(ValidationError, match="Unknown profile"):
            LaunchConfig(profile="lambda", artifact=Path("x"))

    def test_generic_requires_executable(self):
        with pytest.raises(ValidationError, match="executable"):
            LaunchConfig(profile="generic", artifact=Path("x"))

    def test_container_requires_image(self):
        with pytest.raises(ValidationError, match="image"):
            LaunchConfig(profile="container", artifact=Path("x"))

    def test_debug_port_range(self):
        with pytest.raises(ValidationError):
            LaunchConfig(artifact=Path("x"), debug_port=70000)


class TestFromEnv:
    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("HOSTSPINE_LAUNCH_ARTIFACT", "/srv/app")
        monkeypatch.setenv("HOSTSPINE_LAUNCH_DEBUG", "yes")
        monkeypatch.setenv("HOSTSPINE_LAUNCH_DEBUG_PORT", "5010")
        config = LaunchConfig.from_env()
        assert config.artifact == Path("/srv/app")
        assert config.debug is True
        assert config.debug_port == 5010

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("HOSTSPINE_LAUNCH_ARTIFACT", "/srv/app")
        monkeypatch.setenv("HOSTSPINE_LAUNCH_SETTINGS_KEY", "from-env")
        config = LaunchConfig.from_env(settings_key="explicit")
        assert config.settings_key == "explicit"


class TestBuilders:
    def test_function_defaults(self):
        config = LaunchConfig(artifact=Path("app"), debug=True)
        spec = config.to_run_spec(FUNCTION_PROFILE, LauncherSettings(func_path="/opt/func/func"))
        assert spec.executable == "/opt/func/func"
        assert spec.args == ("host", "start")
        assert spec.debug.enabled is True
        assert spec.debug.agent_args == JDWP_AGENT_ARGS

    def test_explicit_executable_wins(self):
        config = LaunchConfig(artifact=Path("app"), executable="/usr/local/bin/func")
        spec = config.to_run_spec(FUNCTION_PROFILE, LauncherSettings(func_path="/opt/func/func"))
        assert spec.executable == "/usr/local/bin/func"

    def test_container_image_appended(self):
        config = LaunchConfig(profile="container", artifact=Path("app.jar"), image="orders:local")
        spec = config.to_run_spec(CONTAINER_PROFILE, LauncherSettings(docker_path="podman"))
        assert spec.executable == "podman"
        assert spec.args == ("run", "--rm", "orders:local")

    def test_custom_debug_args(self):
        config = LaunchConfig(
            profile="generic",
            artifact=Path("app"),
            executable="node",
            debug=True,
            debug_args=["--inspect=127.0.0.1:{port}"],
        )
        spec = config.to_run_spec(GENERIC_PROFILE, LauncherSettings())
        assert spec.debug.agent_args == ("--inspect=127.0.0.1:{port}",)

    def test_signal_overrides(self):
        config = LaunchConfig(
            profile="generic",
            artifact=Path("app"),
            executable="node",
            readiness=[r"listening on \d+"],
            failure=["EADDRINUSE"],
        )
        profile = config.resolve_profile()
        assert profile.readiness.matches("listening on 3000")
        assert profile.failure.matches("Error: listen EADDRINUSE")
        assert GENERIC_PROFILE.readiness.matches("listening on 3000") is False

    def test_profile_unchanged_without_overrides(self):
        assert LaunchConfig(artifact=Path("app")).resolve_profile() is FUNCTION_PROFILE
