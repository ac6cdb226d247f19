"""Tests for capability inspection, classification tables and host profiles."""

from __future__ import annotations

from pathlib import Path

import pytest

from hostspine.core.errors import PreparationError
from hostspine.launch.capabilities import (
    exposed_port,
    inspect_dockerfile,
    inspect_function_descriptors,
    requires_install,
    triggers_requiring_storage,
)
from hostspine.launch.models import ProjectArtifacts, StagingManifest
from hostspine.launch.profiles import (
    CONTAINER_PROFILE,
    FUNCTION_PROFILE,
    GENERIC_PROFILE,
    get_profile,
    list_profiles,
)


class TestClassification:
    def test_http_only_needs_no_install(self):
        assert not requires_install({"httpTrigger", "http"})

    def test_queue_needs_install(self):
        assert requires_install({"httpTrigger", "queueTrigger"})

    def test_no_capabilities_needs_no_install(self):
        assert not requires_install(set())

    def test_storage_exempt_case_insensitive(self):
        caps = {"HTTPTRIGGER", "kafkaTrigger", "rabbitMQTrigger", "orchestrationTrigger", "activityTrigger", "entityTrigger"}
        assert triggers_requiring_storage(caps) == ()

    def test_timer_requires_storage(self):
        assert triggers_requiring_storage({"timerTrigger", "httpTrigger", "blob"}) == ("timerTrigger",)


class TestFunctionDescriptors:
    def test_collects_binding_types(self, queue_app: Path):
        caps = inspect_function_descriptors(ProjectArtifacts(artifact_path=queue_app))
        assert caps == frozenset({"queueTrigger", "httpTrigger", "http"})

    def test_file_artifact_has_no_descriptors(self, tmp_path: Path):
        jar = tmp_path / "app.jar"
        jar.write_bytes(b"jar")
        assert inspect_function_descriptors(ProjectArtifacts(artifact_path=jar)) == frozenset()

    def test_malformed_descriptor_raises(self, tmp_path: Path):
        (tmp_path / "Broken").mkdir()
        (tmp_path / "Broken" / "function.json").write_text("{oops", encoding="utf-8")
        with pytest.raises(PreparationError):
            inspect_function_descriptors(ProjectArtifacts(artifact_path=tmp_path))

    def test_bindings_must_be_list(self, tmp_path: Path):
        (tmp_path / "Odd").mkdir()
        (tmp_path / "Odd" / "function.json").write_text('{"bindings": {}}', encoding="utf-8")
        with pytest.raises(PreparationError):
            inspect_function_descriptors(ProjectArtifacts(artifact_path=tmp_path))


class TestDockerfile:
    def test_exposed_port(self):
        assert exposed_port("FROM eclipse-temurin:17\nEXPOSE 9090\n") == 9090

    def test_default_port(self):
        assert exposed_port("FROM scratch") == 8080

    def test_war_default_port(self):
        assert exposed_port("", "orders.war") == 80

    def test_inspect_reads_dockerfile_next_to_artifact(self, tmp_path: Path):
        jar = tmp_path / "orders.jar"
        jar.write_bytes(b"jar")
        (tmp_path / "Dockerfile").write_text("FROM x\nexpose 7000\n", encoding="utf-8")
        assert inspect_dockerfile(ProjectArtifacts(artifact_path=jar)) == frozenset({"http:7000"})


class TestProfiles:
    def test_registry(self):
        assert [p.name for p in list_profiles()] == ["container", "function", "generic"]
        assert get_profile("function") is FUNCTION_PROFILE

    def test_unknown_profile(self):
        with pytest.raises(KeyError, match="Available"):
            get_profile("lambda")

    def test_function_signals(self):
        assert FUNCTION_PROFILE.readiness.matches("Job host started")
        assert FUNCTION_PROFILE.readiness.matches("Listening for transport dt_socket at address: 5005")
        assert FUNCTION_PROFILE.failure.matches("Port 7071 is unavailable")

    def test_function_debug_template(self):
        joined = " ".join(FUNCTION_PROFILE.debug_agent_args)
        assert "--language-worker" in joined
        assert "address={port}" in joined

    def test_declares_bundle_accepts_known_id(self):
        host = {"extensionBundle": {"id": "microsoft.azure.functions.extensionbundle", "version": "[2.*, 3.0.0)"}}
        assert FUNCTION_PROFILE.declares_bundle(host)

    def test_declares_bundle_rejects_other_id(self):
        assert not FUNCTION_PROFILE.declares_bundle({"extensionBundle": {"id": "Contoso.Bundle"}})

    def test_declares_bundle_missing(self):
        assert not FUNCTION_PROFILE.declares_bundle({"version": "2.0"})

    def test_installer_flags(self):
        assert FUNCTION_PROFILE.has_installer
        assert not CONTAINER_PROFILE.has_installer
        assert not GENERIC_PROFILE.has_installer

    def test_container_args_insert_before_image(self, tmp_path: Path):
        manifest = StagingManifest(
            staging_dir=tmp_path,
            profile="container",
            settings={"SPRING_PROFILES_ACTIVE": "local"},
            capabilities=frozenset({"http:8080"}),
        )
        args = CONTAINER_PROFILE.launch_args(("run", "--rm", "orders:local"), manifest)
        assert args == ("run", "--rm", "-p", "8080:8080", "-e", "SPRING_PROFILES_ACTIVE", "orders:local")
