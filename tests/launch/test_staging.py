"""Tests for StagingDirectoryPreparer."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from hostspine.core.errors import PreparationError
from hostspine.core.secrets import DictSettingsStore
from hostspine.launch.models import DeclaredConfig, ProjectArtifacts
from hostspine.launch.profiles import CONTAINER_PROFILE, FUNCTION_PROFILE, GENERIC_PROFILE
from hostspine.launch.staging import StagingDirectoryPreparer, merge_settings


def _preparer(staging_root: Path, store=None, profile=FUNCTION_PROFILE) -> StagingDirectoryPreparer:
    return StagingDirectoryPreparer(profile, store=store or DictSettingsStore(), staging_root=staging_root, run_id="test-run")


def _staged_values(manifest) -> dict:
    doc = json.loads((manifest.staging_dir / "local.settings.json").read_text(encoding="utf-8"))
    return doc


class TestMergeSettings:
    def test_later_layers_win(self):
        assert merge_settings({"A": "1", "B": "1"}, {"B": "2"}, {"C": "3"}) == {"A": "1", "B": "2", "C": "3"}

    def test_none_layers_skipped(self):
        assert merge_settings(None, {"A": "1"}, None) == {"A": "1"}


class TestMaterialize:
    def test_copies_directory_contents(self, http_artifacts, staging_root):
        manifest = _preparer(staging_root).prepare(http_artifacts, DeclaredConfig())
        assert (manifest.staging_dir / "app.jar").is_file()
        assert (manifest.staging_dir / "HttpExample" / "function.json").is_file()
        assert manifest.staging_dir.parent == staging_root
        assert manifest.staging_dir.name.startswith("hostspine-test-run")

    def test_copies_single_file(self, tmp_path, staging_root):
        jar = tmp_path / "orders.jar"
        jar.write_bytes(b"jar")
        manifest = _preparer(staging_root, profile=GENERIC_PROFILE).prepare(
            ProjectArtifacts(artifact_path=jar), DeclaredConfig()
        )
        assert manifest.files == ("orders.jar",)

    def test_default_host_config_written(self, http_artifacts, staging_root):
        manifest = _preparer(staging_root).prepare(http_artifacts, DeclaredConfig())
        host = json.loads((manifest.staging_dir / "host.json").read_text(encoding="utf-8"))
        assert host["version"] == "2.0"
        assert manifest.host_config["extensionBundle"]["id"] == "Microsoft.Azure.Functions.ExtensionBundle"

    def test_explicit_host_config_copied(self, http_app, tmp_path, staging_root):
        host = tmp_path / "custom-host.json"
        host.write_text(json.dumps({"version": "2.0"}), encoding="utf-8")
        artifacts = ProjectArtifacts(artifact_path=http_app, host_config_path=host)
        manifest = _preparer(staging_root).prepare(artifacts, DeclaredConfig())
        assert dict(manifest.host_config) == {"version": "2.0"}

    def test_extra_files_copied(self, http_app, tmp_path, staging_root):
        extra = tmp_path / "proxies.json"
        extra.write_text("{}", encoding="utf-8")
        artifacts = ProjectArtifacts(artifact_path=http_app, extra_files=(extra,))
        manifest = _preparer(staging_root).prepare(artifacts, DeclaredConfig())
        assert "proxies.json" in manifest.files


class TestSettingsMerge:
    def test_precedence_run_over_store_over_file(self, http_app, tmp_path, staging_root):
        local = tmp_path / "local.settings.json"
        local.write_text(
            json.dumps({"IsEncrypted": False, "Values": {"A": "file", "B": "file", "C": "file"}}),
            encoding="utf-8",
        )
        store = DictSettingsStore({"app": {"B": "store", "C": "store"}})
        artifacts = ProjectArtifacts(artifact_path=http_app, local_settings_path=local)
        declared = DeclaredConfig(run_settings={"C": "run"}, settings_key="app")

        manifest = _preparer(staging_root, store=store).prepare(artifacts, declared)

        assert manifest.settings["A"] == "file"
        assert manifest.settings["B"] == "store"
        assert manifest.settings["C"] == "run"
        staged = _staged_values(manifest)
        assert staged["IsEncrypted"] is False
        assert staged["Values"]["C"] == "run"

    def test_missing_store_key_is_no_value(self, http_artifacts, staging_root):
        declared = DeclaredConfig(settings_key="never-saved")
        manifest = _preparer(staging_root).prepare(http_artifacts, declared)
        assert manifest.settings["FUNCTIONS_WORKER_RUNTIME"] == "java"

    def test_malformed_store_document_is_preparation_error(self, http_artifacts, staging_root):
        class BrokenStore(DictSettingsStore):
            def load(self, key):
                raise ValueError("invalid JSON")

        with pytest.raises(PreparationError):
            _preparer(staging_root, store=BrokenStore()).prepare(http_artifacts, DeclaredConfig(settings_key="x"))
        assert list(staging_root.iterdir()) == []

    def test_container_profile_has_no_local_settings_file(self, tmp_path, staging_root):
        jar = tmp_path / "orders.jar"
        jar.write_bytes(b"jar")
        manifest = _preparer(staging_root, profile=CONTAINER_PROFILE).prepare(
            ProjectArtifacts(artifact_path=jar), DeclaredConfig(run_settings={"PORT": "8080"})
        )
        assert dict(manifest.settings) == {"PORT": "8080"}
        assert not (manifest.staging_dir / "local.settings.json").exists()
        assert manifest.capabilities == frozenset({"http:8080"})


class TestMissingSettings:
    def test_http_only_missing_storage_is_warning(self, http_artifacts, staging_root):
        manifest = _preparer(staging_root).prepare(http_artifacts, DeclaredConfig())
        assert len(manifest.missing_settings) == 1
        missing = manifest.missing_settings[0]
        assert missing.key == "AzureWebJobsStorage"
        assert missing.blocking is False
        assert manifest.blocking_missing_settings == ()

    def test_queue_trigger_missing_storage_is_blocking(self, queue_artifacts, staging_root):
        manifest = _preparer(staging_root).prepare(queue_artifacts, DeclaredConfig())
        (missing,) = manifest.missing_settings
        assert missing.blocking is True
        assert missing.required_by == ("queueTrigger",)
        assert "queueTrigger" in manifest.warnings[0]

    def test_storage_present_no_warning(self, queue_artifacts, staging_root):
        declared = DeclaredConfig(run_settings={"AzureWebJobsStorage": "UseDevelopmentStorage=true"})
        manifest = _preparer(staging_root).prepare(queue_artifacts, declared)
        assert manifest.missing_settings == ()


class TestFailures:
    def test_missing_artifact(self, tmp_path, staging_root):
        with pytest.raises(PreparationError, match="not found"):
            _preparer(staging_root).prepare(ProjectArtifacts(artifact_path=tmp_path / "nope"), DeclaredConfig())

    def test_malformed_local_settings_removes_staging(self, http_app, tmp_path, staging_root):
        local = tmp_path / "local.settings.json"
        local.write_text("{broken", encoding="utf-8")
        artifacts = ProjectArtifacts(artifact_path=http_app, local_settings_path=local)
        with pytest.raises(PreparationError) as excinfo:
            _preparer(staging_root).prepare(artifacts, DeclaredConfig())
        assert excinfo.value.context.run_id == "test-run"
        assert list(staging_root.iterdir()) == []

    def test_malformed_descriptor_removes_staging(self, http_app, staging_root, make_function):
        (http_app / "Broken").mkdir()
        (http_app / "Broken" / "function.json").write_text("not json", encoding="utf-8")
        with pytest.raises(PreparationError):
            _preparer(staging_root).prepare(ProjectArtifacts(artifact_path=http_app), DeclaredConfig())
        assert list(staging_root.iterdir()) == []

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs non-root POSIX permissions")
    def test_unreadable_artifact(self, http_app, staging_root):
        secret = http_app / "secret.bin"
        secret.write_bytes(b"x")
        secret.chmod(0)
        try:
            with pytest.raises(PreparationError):
                _preparer(staging_root).prepare(ProjectArtifacts(artifact_path=http_app), DeclaredConfig())
        finally:
            secret.chmod(0o600)
        assert list(staging_root.iterdir()) == []


class TestIdempotence:
    def test_same_inputs_same_content(self, queue_artifacts, staging_root):
        store = DictSettingsStore({"app": {"X": "1"}})
        declared = DeclaredConfig(run_settings={"Y": "2"}, settings_key="app")
        first = _preparer(staging_root, store=store).prepare(queue_artifacts, declared)
        second = _preparer(staging_root, store=store).prepare(queue_artifacts, declared)
        assert first.staging_dir != second.staging_dir
        assert first.content_key() == second.content_key()
