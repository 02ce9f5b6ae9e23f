"""Tests for artifact packaging and manifests."""

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from mpv_stt_build.builds.artifacts import (
    ArtifactCopyError,
    compiled_output_path,
    destination_path,
    discover_artifacts,
    feature_suffix,
    format_size,
    generate_manifest,
    manifest_data,
    package_artifact,
    write_manifest,
)
from mpv_stt_build.builds.models import BuildJob
from mpv_stt_build.types import ArtifactKind

DESKTOP_PLUGIN = BuildJob(
    "linux-x86_64",
    ArtifactKind.PLUGIN,
    "stt_remote_http",
    "mpv-stt-plugin",
    "x86_64-unknown-linux-gnu",
)
DESKTOP_SERVER = BuildJob(
    "linux-x86_64",
    ArtifactKind.SERVER,
    "stt_local_cuda",
    "mpv-stt-server",
    "x86_64-unknown-linux-gnu",
)
ANDROID_PLUGIN = BuildJob(
    "android",
    ArtifactKind.PLUGIN,
    "stt_local_cpu",
    "mpv-stt-plugin",
    "aarch64-linux-android",
    abi="arm64-v8a",
)


def write_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


class TestPaths:
    """Tests for output and destination paths."""

    @pytest.mark.parametrize(
        ("feature", "suffix"),
        [
            ("stt_local_cpu", "cpu"),
            ("stt_local_cuda", "cuda"),
            ("stt_remote_http", "remote"),
            ("stt_experimental", "stt_experimental"),
        ],
    )
    def test_feature_suffix(self, feature, suffix):
        assert feature_suffix(feature) == suffix

    def test_compiled_output_paths(self, tmp_path: Path):
        assert compiled_output_path(DESKTOP_PLUGIN, tmp_path) == (
            tmp_path / "x86_64-unknown-linux-gnu" / "release" / "libmpv_stt_plugin.so"
        )
        assert compiled_output_path(DESKTOP_SERVER, tmp_path) == (
            tmp_path / "x86_64-unknown-linux-gnu" / "release" / "mpv-stt-server"
        )

    def test_destination_paths(self, tmp_path: Path):
        assert destination_path(DESKTOP_PLUGIN, tmp_path) == (
            tmp_path / "linux-x86_64" / "plugin" / "libmpv_stt_plugin_remote.so"
        )
        assert destination_path(DESKTOP_SERVER, tmp_path) == (
            tmp_path / "linux-x86_64" / "server" / "mpv-stt-server_cuda"
        )
        assert destination_path(ANDROID_PLUGIN, tmp_path) == (
            tmp_path / "android" / "arm64-v8a" / "plugin" / "libmpv_stt_plugin_cpu.so"
        )


class TestPackageArtifact:
    """Tests for package_artifact."""

    def test_copies_and_describes(self, tmp_path: Path):
        output = write_file(tmp_path / "target" / "libmpv_stt_plugin.so", 100)
        dist = tmp_path / "dist"

        info = package_artifact(ANDROID_PLUGIN, output, dist)

        dest = dist / "android" / "arm64-v8a" / "plugin" / "libmpv_stt_plugin_cpu.so"
        assert dest.read_bytes() == output.read_bytes()
        assert info.relative_path == "android/arm64-v8a/plugin/libmpv_stt_plugin_cpu.so"
        assert info.size_bytes == 100
        assert info.sha256 == hashlib.sha256(b"x" * 100).hexdigest()
        assert info.platform == "android/arm64-v8a"
        assert info.labels == ["cpu"]

    def test_missing_output(self, tmp_path: Path):
        with pytest.raises(ArtifactCopyError) as exc_info:
            package_artifact(DESKTOP_PLUGIN, tmp_path / "missing.so", tmp_path / "dist")

        assert exc_info.value.code == "artifact_missing"
        assert not (tmp_path / "dist").exists()

    def test_copy_failure(self, tmp_path: Path):
        output = write_file(tmp_path / "libmpv_stt_plugin.so", 10)

        with patch(
            "mpv_stt_build.builds.artifacts.shutil.copy2",
            side_effect=PermissionError("read-only"),
        ), pytest.raises(ArtifactCopyError) as exc_info:
            package_artifact(DESKTOP_PLUGIN, output, tmp_path / "dist")

        assert exc_info.value.code == "artifact_copy_failed"


class TestFormatSize:
    """Tests for format_size."""

    @pytest.mark.parametrize(
        ("size", "expected"),
        [
            (0, "0B"),
            (512, "512B"),
            (2048, "2.0K"),
            (20 * 1024, "20K"),
            (5 * 1024 * 1024, "5.0M"),
            (300 * 1024 * 1024, "300M"),
        ],
    )
    def test_du_style(self, size, expected):
        assert format_size(size) == expected


@pytest.fixture
def dist(tmp_path: Path) -> Path:
    root = tmp_path / "dist"
    write_file(root / "linux-x86_64" / "server" / "mpv-stt-server_cpu", 2048)
    write_file(root / "linux-x86_64" / "plugin" / "libmpv_stt_plugin_remote.so", 512)
    write_file(root / "linux-x86_64" / "plugin" / "libmpv_stt_plugin_cpu.so", 20 * 1024)
    write_file(root / "android" / "armeabi-v7a" / "plugin" / "libmpv_stt_plugin_cpu.so", 100)
    write_file(root / "android" / "arm64-v8a" / "plugin" / "libmpv_stt_plugin_cpu.so", 200)
    (root / "build.log").write_text("log\n")
    return root


class TestManifest:
    """Tests for manifest generation."""

    def test_discovery_order(self, dist: Path):
        artifacts = discover_artifacts(dist)

        assert [a.relative_path for a in artifacts] == [
            "linux-x86_64/plugin/libmpv_stt_plugin_cpu.so",
            "linux-x86_64/plugin/libmpv_stt_plugin_remote.so",
            "linux-x86_64/server/mpv-stt-server_cpu",
            "android/arm64-v8a/plugin/libmpv_stt_plugin_cpu.so",
            "android/armeabi-v7a/plugin/libmpv_stt_plugin_cpu.so",
        ]
        assert artifacts[-1].platform == "android/armeabi-v7a"
        assert artifacts[0].kind == "plugin"

    def test_text_manifest(self, dist: Path):
        text = generate_manifest(
            dist,
            workspace_root=Path("/work/mpv-stt"),
            generated_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )

        assert text == (
            "MPV STT Build Artifacts\n"
            "Generated: 2026-01-02T03:04:05+00:00\n"
            "Workspace: /work/mpv-stt\n"
            "\n"
            "=== Build Matrix ===\n"
            "\n"
            "Platform: linux-x86_64 (x86_64-unknown-linux-gnu)\n"
            "  Plugin:\n"
            "    - libmpv_stt_plugin_cpu.so (20K)\n"
            "    - libmpv_stt_plugin_remote.so (512B)\n"
            "  Server:\n"
            "    - mpv-stt-server_cpu (2.0K)\n"
            "\n"
            "Platform: Android arm64-v8a\n"
            "  Plugin:\n"
            "    - libmpv_stt_plugin_cpu.so (200B)\n"
            "\n"
            "Platform: Android armeabi-v7a\n"
            "  Plugin:\n"
            "    - libmpv_stt_plugin_cpu.so (100B)\n"
            "\n"
        )

    def test_empty_dist(self, tmp_path: Path):
        text = generate_manifest(tmp_path / "missing")

        assert "=== Build Matrix ===" in text
        assert "Platform:" not in text

    def test_manifest_data_summary(self, dist: Path):
        data = manifest_data(dist)

        assert data["summary"]["total_artifacts"] == 5
        assert data["summary"]["total_size_bytes"] == 2048 + 512 + 20 * 1024 + 100 + 200
        assert data["summary"]["platforms"] == [
            "android/arm64-v8a",
            "android/armeabi-v7a",
            "linux-x86_64",
        ]

    def test_write_manifest(self, dist: Path):
        text_path = write_manifest(dist, workspace_root=Path("/work"))

        assert text_path == dist / "MANIFEST.txt"
        assert "mpv-stt-server_cpu (2.0K)" in text_path.read_text()
        data = json.loads((dist / "manifest.json").read_text())
        assert len(data["artifacts"]) == 5

    def test_manifest_reflects_disk_only(self, dist: Path):
        """Files removed from dist/ should disappear from the manifest."""
        (dist / "linux-x86_64" / "server" / "mpv-stt-server_cpu").unlink()

        text = generate_manifest(dist)

        assert "Server:" not in text
        assert "mpv-stt-server" not in text
