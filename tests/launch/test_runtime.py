"""Tests for the host tool version checks, using fake func/java scripts."""

from __future__ import annotations

import os

import pytest

from hostspine.core.errors import LaunchError
from hostspine.core.settings import LauncherSettings
from hostspine.launch.runtime import (
    SKIPPED_WARNING,
    find_java,
    minimum_func_version,
    parse_version,
    read_java_version,
    validate_function_runtime,
)

posix_only = pytest.mark.skipif(os.name != "posix", reason="shell-script tools")


def _java_banner(version: str) -> str:
    return (
        f"echo 'openjdk version \"{version}\" 2022-01-18' >&2\n"
        "echo 'OpenJDK Runtime Environment (build 1)' >&2"
    )


@pytest.fixture
def tools(tmp_path, make_tool):
    """Write fake func and java scripts; returns (func_path, settings)."""

    def build(func_version: str, java_version: str | None):
        func = make_tool(tmp_path / "func" / "func", f"echo {func_version}")
        java_path = None
        if java_version is not None:
            java_path = make_tool(tmp_path / "jdk" / "bin" / "java", _java_banner(java_version))
        return func, LauncherSettings(java_path=java_path or str(tmp_path / "no-java"))

    return build


# ── Version parsing ──────────────────────────────────────────────────────


class TestParseVersion:
    def test_dotted(self):
        assert parse_version("4.0.5198") == (4, 0, 5198)

    def test_legacy_java(self):
        assert parse_version("1.8.0_292") == (1, 8, 0, 292)

    def test_suffix_ignored(self):
        assert parse_version("17-ea") == (17,)

    def test_unparseable(self):
        assert parse_version("command not found") is None
        assert parse_version("") is None
        assert parse_version(None) is None


class TestMinimumFuncVersion:
    def test_java_8_needs_nothing(self):
        assert minimum_func_version((2, 0, 1), (1, 8, 0, 292)) is None

    def test_java_9_with_v3_tools(self):
        assert minimum_func_version((3, 0, 1), (9,)) == (3, 0, 2630)

    def test_java_11_with_v2_tools(self):
        assert minimum_func_version((2, 7, 1), (11, 0, 2)) == (2, 7, 2628)


# ── Tool discovery ───────────────────────────────────────────────────────


@posix_only
class TestFindJava:
    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JAVA_HOME", str(tmp_path))
        assert find_java(LauncherSettings(java_path="/opt/jdk/bin/java")) == "/opt/jdk/bin/java"

    def test_java_home_before_path(self, tmp_path, make_tool, monkeypatch):
        java = make_tool(tmp_path / "jdk" / "bin" / "java", _java_banner("17.0.2"))
        monkeypatch.setenv("JAVA_HOME", str(tmp_path / "jdk"))
        assert find_java(LauncherSettings(java_path=None)) == java

    @pytest.mark.asyncio
    async def test_reads_version_from_stderr(self, tmp_path, make_tool):
        java = make_tool(tmp_path / "java", _java_banner("11.0.2"))
        assert await read_java_version(java) == (11, 0, 2)


# ── Validation ───────────────────────────────────────────────────────────


@posix_only
class TestValidateFunctionRuntime:
    @pytest.mark.asyncio
    async def test_current_tools_pass(self, tools):
        func, settings = tools("4.0.5198", "17.0.2")
        assert await validate_function_runtime(func, settings) == []

    @pytest.mark.asyncio
    async def test_old_v3_tools_with_java_11_fail(self, tools):
        func, settings = tools("3.0.2000", "11.0.2")
        with pytest.raises(LaunchError) as excinfo:
            await validate_function_runtime(func, settings)
        assert excinfo.value.context.metadata["minimum_func_version"] == "3.0.2630"
        assert excinfo.value.context.stage == "validate"

    @pytest.mark.asyncio
    async def test_old_v2_tools_with_java_9_fail(self, tools):
        func, settings = tools("2.7.2000", "9")
        with pytest.raises(LaunchError) as excinfo:
            await validate_function_runtime(func, settings)
        assert excinfo.value.context.metadata["minimum_func_version"] == "2.7.2628"

    @pytest.mark.asyncio
    async def test_minimum_v2_tools_pass(self, tools):
        func, settings = tools("2.7.2628", "11.0.2")
        assert await validate_function_runtime(func, settings) == []

    @pytest.mark.asyncio
    async def test_java_8_skips_comparison(self, tools):
        func, settings = tools("2.0.1", "1.8.0_292")
        assert await validate_function_runtime(func, settings) == []

    @pytest.mark.asyncio
    async def test_missing_java_only_warns(self, tools):
        func, settings = tools("3.0.2000", None)
        assert await validate_function_runtime(func, settings) == [SKIPPED_WARNING]

    @pytest.mark.asyncio
    async def test_unreadable_func_version_only_warns(self, tools):
        func, settings = tools("'Azure Functions Core Tools'", "17.0.2")
        assert await validate_function_runtime(func, settings) == [SKIPPED_WARNING]

    @pytest.mark.asyncio
    async def test_missing_func_raises(self, tmp_path):
        with pytest.raises(LaunchError):
            await validate_function_runtime(str(tmp_path / "func"), LauncherSettings())
