"""Tests for block device naming."""

import pytest

from pi_image_builder.storage.naming import (
    DeviceKind,
    device_kind,
    mapper_path,
    partition_path,
    trailing_slash,
)


@pytest.mark.parametrize(
    "device,number,expected",
    [
        ("/dev/loop8", 2, "/dev/loop8p2"),
        ("/dev/sdb", 1, "/dev/sdb1"),
        ("/dev/vda", 2, "/dev/vda2"),
        ("/dev/nvme0n1", 1, "/dev/nvme0n1p1"),
        ("/dev/mmcblk0", 2, "/dev/mmcblk0p2"),
    ],
)
def test_partition_path(device, number, expected):
    assert partition_path(device, number) == expected


def test_partition_numbers_start_at_one():
    with pytest.raises(ValueError):
        partition_path("/dev/sdb", 0)


@pytest.mark.parametrize(
    "device,kind",
    [
        ("/dev/loop0", DeviceKind.LOOP),
        ("/dev/nvme0n1", DeviceKind.NVME),
        ("/dev/mmcblk1", DeviceKind.MMC),
        ("/dev/sda", DeviceKind.SCSI),
    ],
)
def test_device_kind(device, kind):
    assert device_kind(device) is kind


def test_mapper_path():
    assert mapper_path("rootvg", "rootlv") == "/dev/mapper/rootvg-rootlv"


def test_mapper_path_escapes_dashes():
    assert mapper_path("node-vg", "csi-lv") == "/dev/mapper/node--vg-csi--lv"


def test_trailing_slash():
    assert trailing_slash("mnt/boot/firmware") == "mnt/boot/firmware/"
    assert trailing_slash("mnt/") == "mnt/"
