"""Tests for image extraction, growth and compression."""

from datetime import datetime, timezone

import pytest

from pi_image_builder.media.image import (
    compress_image,
    decompress_image,
    expand_image,
    extract_image,
    find_tool,
    timestamped_name,
)
from pi_image_builder.storage.exceptions import CommandFailedError


@pytest.fixture
def tools(mocker):
    return mocker.patch(
        "pi_image_builder.media.image.shutil.which", side_effect=lambda name: f"/usr/bin/{name}"
    )


class TestExpandImage:
    def test_small_image_is_padded(self, tmp_path):
        image = tmp_path / "ubuntu.img"
        image.write_bytes(b"\1" * 10)

        assert expand_image(image, minimum_size=100, padding=50) is True

        data = image.read_bytes()
        assert len(data) == 60
        assert data[:10] == b"\1" * 10
        assert data[10:] == b"\0" * 50

    def test_large_image_is_left_alone(self, tmp_path):
        image = tmp_path / "ubuntu.img"
        image.write_bytes(b"\1" * 200)

        assert expand_image(image, minimum_size=100, padding=50) is False
        assert image.stat().st_size == 200

    def test_expansion_is_not_repeated(self, tmp_path):
        image = tmp_path / "ubuntu.img"
        image.write_bytes(b"\1" * 80)

        expand_image(image, minimum_size=100, padding=50)
        expand_image(image, minimum_size=100, padding=50)

        assert image.stat().st_size == 130


class TestExtractImage:
    def test_runs_xz_keeping_archive(self, command_script, tools, tmp_path):
        archive = tmp_path / "ubuntu.img.xz"
        archive.write_bytes(b"xz")

        extracted = extract_image(archive)

        assert extracted == tmp_path / "ubuntu.img"
        assert command_script.calls == [["/usr/bin/xz", "-d", "-k", str(archive)]]

    def test_skipped_when_already_extracted(self, command_script, tools, tmp_path):
        archive = tmp_path / "ubuntu.img.xz"
        (tmp_path / "ubuntu.img").write_bytes(b"raw")

        assert extract_image(archive) == tmp_path / "ubuntu.img"
        assert command_script.calls == []

    def test_missing_archive(self, command_script, tools, tmp_path):
        with pytest.raises(FileNotFoundError):
            extract_image(tmp_path / "ubuntu.img.xz")


class TestCompression:
    def test_timestamped_name(self):
        now = datetime(2022, 10, 30, 12, 0, 0, tzinfo=timezone.utc)

        assert timestamped_name("ubuntu-20-04-arm64", now) == (
            "ubuntu-20-04-arm64-10-30-2022-1667131200000.img"
        )

    def test_compress_renames_then_runs_zstd(self, command_script, tools, tmp_path):
        image = tmp_path / "ubuntu.img"
        image.write_bytes(b"raw")
        now = datetime(2022, 10, 30, 12, 0, 0, tzinfo=timezone.utc)

        compressed = compress_image(image, "ubuntu-20-04-arm64", now)

        renamed = tmp_path / "ubuntu-20-04-arm64-10-30-2022-1667131200000.img"
        assert not image.exists()
        assert renamed.read_bytes() == b"raw"
        assert compressed == tmp_path / f"{renamed.name}.zstd"
        assert command_script.calls == [
            ["/usr/bin/zstd", "-19", "-f", "-q", str(renamed), "-o", str(compressed)]
        ]

    def test_decompress(self, command_script, tools, tmp_path):
        source = tmp_path / "node.img.zstd"
        destination = tmp_path / "image-to-be-flashed.img"

        assert decompress_image(source, destination) == destination
        assert command_script.calls == [
            ["/usr/bin/zstd", "-d", "-f", "-q", str(source), "-o", str(destination)]
        ]

    def test_missing_tool(self, mocker):
        mocker.patch("pi_image_builder.media.image.shutil.which", return_value=None)

        with pytest.raises(CommandFailedError, match="zstd not found"):
            find_tool("zstd")
