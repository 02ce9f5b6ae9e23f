"""Tests for the native dependency source cache."""

import hashlib
import io
import json
import logging
import subprocess
import tarfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from mpv_stt_build.config import Settings
from mpv_stt_build.deps.sources import (
    SourceCache,
    SourceFetchError,
    SourceIntegrityError,
    SourceSpec,
    default_source_specs,
    download_archive,
    extract_tarball,
    fetch_git,
    tree_digest,
)

FRIBIDI_URL = "https://example.com/releases/fribidi-1.0.16.tar.xz"


def make_tarball(files: dict[str, bytes], root: str | None = "fribidi-1.0.16") -> bytes:
    """Build a gzip tarball in memory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def tarball() -> bytes:
    return make_tarball(
        {
            "configure": b"#!/bin/sh\necho configure\n",
            "lib/fribidi.c": b"int main(void) { return 0; }\n",
        }
    )


@pytest.fixture
def cache(tmp_path: Path) -> SourceCache:
    specs = {
        "fribidi": SourceSpec("fribidi", "tarball", FRIBIDI_URL),
        "libass": SourceSpec("libass", "git", "https://example.com/libass.git"),
    }
    return SourceCache(tmp_path / "deps", specs)


class TestTreeDigest:
    """Tests for tree_digest."""

    def test_content_changes_digest(self, tmp_path: Path):
        (tmp_path / "a.c").write_text("one")
        before = tree_digest(tmp_path)
        (tmp_path / "a.c").write_text("two")

        assert tree_digest(tmp_path) != before

    def test_build_and_vcs_dirs_ignored(self, tmp_path: Path):
        (tmp_path / "a.c").write_text("one")
        before = tree_digest(tmp_path)
        (tmp_path / "_build-arm64").mkdir()
        (tmp_path / "_build-arm64" / "a.o").write_text("obj")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")

        assert tree_digest(tmp_path) == before


class TestExtractTarball:
    """Tests for extract_tarball."""

    def test_strips_top_directory(self, tmp_path: Path, tarball: bytes):
        archive = tmp_path / "src.tar.gz"
        archive.write_bytes(tarball)

        dest = extract_tarball(archive, tmp_path / "out")

        assert (dest / "configure").is_file()
        assert (dest / "lib" / "fribidi.c").is_file()
        assert not (dest / "fribidi-1.0.16").exists()

    def test_path_traversal_rejected(self, tmp_path: Path):
        archive = tmp_path / "evil.tar.gz"
        archive.write_bytes(make_tarball({"../../evil.sh": b"rm -rf /"}, root="pkg"))

        with pytest.raises(SourceFetchError) as exc_info:
            extract_tarball(archive, tmp_path / "out")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "evil.sh").exists()

    def test_empty_archive(self, tmp_path: Path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            info = tarfile.TarInfo("pkg")
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        archive = tmp_path / "empty.tar.gz"
        archive.write_bytes(buffer.getvalue())

        with pytest.raises(SourceFetchError) as exc_info:
            extract_tarball(archive, tmp_path / "out")

        assert exc_info.value.code == "empty_archive"

    def test_invalid_archive(self, tmp_path: Path):
        archive = tmp_path / "broken.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(SourceFetchError) as exc_info:
            extract_tarball(archive, tmp_path / "out")

        assert exc_info.value.code == "tar_error"


class TestDownloadArchive:
    """Tests for download_archive."""

    @respx.mock
    def test_returns_sha256(self, tmp_path: Path):
        respx.get(FRIBIDI_URL).mock(return_value=httpx.Response(200, content=b"payload"))
        dest = tmp_path / "file.tar.xz"

        with httpx.Client() as client:
            checksum = download_archive(client, FRIBIDI_URL, dest)

        assert dest.read_bytes() == b"payload"
        assert checksum == hashlib.sha256(b"payload").hexdigest()

    @respx.mock
    def test_http_error(self, tmp_path: Path):
        respx.get(FRIBIDI_URL).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(SourceFetchError) as exc_info:
            download_archive(client, FRIBIDI_URL, tmp_path / "file")

        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)

    @respx.mock
    def test_timeout(self, tmp_path: Path):
        respx.get(FRIBIDI_URL).mock(side_effect=httpx.ConnectTimeout("slow"))

        with httpx.Client() as client, pytest.raises(SourceFetchError) as exc_info:
            download_archive(client, FRIBIDI_URL, tmp_path / "file")

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, tmp_path: Path):
        respx.get(FRIBIDI_URL).mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client, pytest.raises(SourceFetchError) as exc_info:
            download_archive(client, FRIBIDI_URL, tmp_path / "file")

        assert exc_info.value.code == "network_error"


class TestFetchGit:
    """Tests for fetch_git."""

    def test_shallow_clone_command(self, tmp_path: Path):
        dest = tmp_path / "deps" / "ffmpeg"
        with patch("subprocess.run") as mock_run:
            result = fetch_git("https://example.com/ffmpeg.git", dest, ref="n8.0")

        assert result == dest
        assert mock_run.call_args.args[0] == [
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            "n8.0",
            "https://example.com/ffmpeg.git",
            str(dest),
        ]

    def test_full_recursive_clone(self, tmp_path: Path):
        with patch("subprocess.run") as mock_run:
            fetch_git("https://example.com/ft.git", tmp_path / "ft", depth=None, recursive=True)

        cmd = mock_run.call_args.args[0]
        assert "--depth" not in cmd
        assert "--recurse-submodules" in cmd

    def test_clone_failure_removes_checkout(self, tmp_path: Path):
        dest = tmp_path / "partial"

        def failing_clone(cmd, **kwargs):
            dest.mkdir()
            raise subprocess.CalledProcessError(128, cmd, stderr="repository not found")

        with patch("subprocess.run", side_effect=failing_clone), pytest.raises(
            SourceFetchError
        ) as exc_info:
            fetch_git("https://example.com/missing.git", dest)

        assert exc_info.value.code == "git_error"
        assert "repository not found" in str(exc_info.value)
        assert not dest.exists()

    def test_missing_git(self, tmp_path: Path):
        with patch("subprocess.run", side_effect=FileNotFoundError("git")), pytest.raises(
            SourceFetchError
        ) as exc_info:
            fetch_git("https://example.com/x.git", tmp_path / "x")

        assert exc_info.value.code == "missing_tool"

    def test_timeout(self, tmp_path: Path):
        with patch(
            "subprocess.run", side_effect=subprocess.TimeoutExpired(["git"], 5)
        ), pytest.raises(SourceFetchError) as exc_info:
            fetch_git("https://example.com/x.git", tmp_path / "x", timeout=5)

        assert exc_info.value.code == "timeout"


class TestDefaultSourceSpecs:
    """Tests for the pinned source definitions."""

    def test_every_chain_member_defined(self, settings: Settings):
        specs = default_source_specs(settings)

        assert set(specs) == {
            "ffmpeg",
            "freetype2",
            "fribidi",
            "harfbuzz",
            "unibreak",
            "libass",
            "libplacebo",
            "mpv",
        }

    def test_pins(self, settings: Settings):
        specs = default_source_specs(settings)

        assert specs["ffmpeg"].ref == "n8.0"
        assert specs["freetype2"].ref == "VER-2-14-1"
        assert specs["freetype2"].depth is None
        assert specs["freetype2"].recursive is True
        assert specs["libplacebo"].recursive is True
        assert specs["harfbuzz"].url.endswith("harfbuzz-12.2.0.tar.xz")
        assert "libunibreak_6_1" in specs["unibreak"].url
        assert {specs[n].kind for n in ("fribidi", "harfbuzz", "unibreak")} == {"tarball"}

    def test_repository_overrides(self, settings: Settings):
        settings.mpv_repo = "https://mirror.example.com/mpv.git"
        settings.ffmpeg_repo = "https://mirror.example.com/ffmpeg.git"
        specs = default_source_specs(settings)

        assert specs["mpv"].url == "https://mirror.example.com/mpv.git"
        assert specs["ffmpeg"].url == "https://mirror.example.com/ffmpeg.git"


class TestSourceCache:
    """Tests for SourceCache."""

    @respx.mock
    def test_fetch_tarball_and_record(self, cache: SourceCache, tarball: bytes):
        respx.get(FRIBIDI_URL).mock(return_value=httpx.Response(200, content=tarball))

        path = cache.ensure("fribidi")

        assert path == cache.deps_dir / "fribidi"
        assert (path / "configure").is_file()
        record = cache.load_record("fribidi")
        assert record is not None
        assert record["archive_sha256"] == hashlib.sha256(tarball).hexdigest()
        assert record["digest"] == tree_digest(path)
        assert record["spec"]["url"] == FRIBIDI_URL
        assert not list(cache.deps_dir.glob("*.tmp"))

    @respx.mock
    def test_existing_tree_not_refetched(self, cache: SourceCache, tarball: bytes):
        route = respx.get(FRIBIDI_URL).mock(
            return_value=httpx.Response(200, content=tarball)
        )

        cache.ensure("fribidi")
        cache.ensure("fribidi")

        assert route.call_count == 1

    @respx.mock
    def test_failed_download_leaves_nothing(self, cache: SourceCache):
        respx.get(FRIBIDI_URL).mock(return_value=httpx.Response(404))

        with pytest.raises(SourceFetchError) as exc_info:
            cache.ensure("fribidi")

        assert exc_info.value.code == "http_error"
        assert not cache.path("fribidi").exists()
        assert cache.load_record("fribidi") is None

    def test_git_source_cloned(self, cache: SourceCache):
        def fake_clone(cmd, **kwargs):
            dest = Path(cmd[-1])
            dest.mkdir(parents=True)
            (dest / "meson.build").write_text("project('libass')\n")
            return MagicMock(returncode=0)

        with patch("subprocess.run", side_effect=fake_clone) as mock_run:
            path = cache.ensure("libass")

        assert mock_run.call_args.args[0][:4] == ["git", "clone", "--depth", "1"]
        assert (path / "meson.build").is_file()
        assert cache.load_record("libass")["digest"] == tree_digest(path)

    def test_unknown_source(self, cache: SourceCache):
        with pytest.raises(SourceFetchError) as exc_info:
            cache.ensure("gstreamer")

        assert exc_info.value.code == "unknown_source"

    def test_adopts_existing_tree(self, cache: SourceCache, caplog):
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        (existing / "meson.build").write_text("")

        with caplog.at_level(logging.WARNING), patch("subprocess.run") as mock_run:
            path = cache.ensure("libass")

        mock_run.assert_not_called()
        assert path == existing
        assert "without a fetch record" in caplog.text
        assert "deps fetch --verify" in caplog.text
        assert "MPV_STT_BUILD_VERIFY_SOURCES" in caplog.text
        record = json.loads(cache.record_path("libass").read_text())
        assert record["digest"] == tree_digest(existing)
        assert not list(cache.record_path("libass").parent.glob("*.tmp"))

    @pytest.mark.parametrize("content", ['{"spec": {"name": "lib', "[]"])
    def test_corrupt_record(self, cache: SourceCache, content: str):
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        record = cache.record_path("libass")
        record.parent.mkdir(parents=True)
        record.write_text(content)

        with pytest.raises(SourceFetchError) as exc_info:
            cache.ensure("libass")

        assert exc_info.value.code == "corrupt_record"
        assert str(record) in str(exc_info.value)

    def test_modified_tree_accepted_without_verify(self, cache: SourceCache):
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        (existing / "meson.build").write_text("one")
        cache.ensure("libass")
        (existing / "meson.build").write_text("two")

        assert cache.ensure("libass") == existing

    def test_verify_detects_modified_tree(self, cache: SourceCache):
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        (existing / "meson.build").write_text("one")
        cache.ensure("libass")
        (existing / "meson.build").write_text("two")
        cache.verify = True

        with pytest.raises(SourceIntegrityError) as exc_info:
            cache.ensure("libass")

        assert exc_info.value.code == "source_integrity"
        assert exc_info.value.name == "libass"

    def test_verify_ignores_build_dirs(self, cache: SourceCache):
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        (existing / "meson.build").write_text("one")
        cache.ensure("libass")
        (existing / "_build-arm64").mkdir()
        (existing / "_build-arm64" / "build.ninja").write_text("rules")
        cache.verify = True

        assert cache.ensure("libass") == existing

    def test_identity_includes_digest(self, cache: SourceCache):
        before = cache.identity("libass")
        existing = cache.path("libass")
        existing.mkdir(parents=True)
        (existing / "meson.build").write_text("")
        cache.ensure("libass")

        after = cache.identity("libass")
        assert before == "git:https://example.com/libass.git@HEAD"
        assert after == f"{before}|{tree_digest(existing)}"

    def test_from_settings(self, settings: Settings):
        settings.verify_sources = True
        cache = SourceCache.from_settings(settings)

        assert cache.deps_dir == settings.resolved_deps_dir
        assert cache.verify is True
        assert "mpv" in cache.specs
