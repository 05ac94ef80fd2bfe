"""Tests for volume group sizing and logical volume creation."""

import pytest

from conftest import vgs_document
from pi_image_builder.domain import GIB, MIB, LogicalVolumeSizing, SizingPolicy, VolumeGroupSnapshot
from pi_image_builder.storage.exceptions import CommandFailedError, InsufficientCapacityError
from pi_image_builder.storage.lvm import (
    VolumeGroupSizer,
    parse_vgs_report,
    plan_logical_volume_sizes,
    to_lvm_argument,
)

VGS = ("vgs", "rootvg")


def snapshot(free: int) -> VolumeGroupSnapshot:
    return VolumeGroupSnapshot(name="rootvg", pv_count=1, lv_count=0, size=free, free=free)


class TestPlanLogicalVolumeSizes:
    def test_csi_takes_the_remainder(self):
        policy = SizingPolicy(container_runtime_bytes=0)

        plan = plan_logical_volume_sizes(snapshot(31394365440), policy)

        assert plan.root == 10737418240
        assert plan.csi == 20120076288
        assert plan.container_runtime == 0

    def test_default_policy_on_32gb_card_is_insufficient(self):
        with pytest.raises(InsufficientCapacityError) as exc_info:
            plan_logical_volume_sizes(snapshot(31394365440))

        error = exc_info.value
        assert error.volume_group == "rootvg"
        assert error.available == 31394365440
        assert error.required == 2 * 256 * MIB + 10 * GIB + 30 * GIB + 5 * GIB

    def test_default_policy_on_64gb_card(self):
        free = 63_350_767_616
        policy = SizingPolicy()

        plan = plan_logical_volume_sizes(snapshot(free))

        assert plan.root == 10 * GIB
        assert plan.container_runtime == 30 * GIB
        assert plan.csi >= policy.csi_floor_bytes
        assert plan.total == free - policy.reserve_bytes

    def test_csi_exactly_at_floor(self):
        policy = SizingPolicy()
        free = policy.reserve_bytes + policy.root_bytes + policy.container_runtime_bytes + 5 * GIB

        assert plan_logical_volume_sizes(snapshot(free)).csi == 5 * GIB

    def test_free_below_reserve_raises(self):
        with pytest.raises(InsufficientCapacityError):
            plan_logical_volume_sizes(snapshot(100 * MIB))

    def test_fixed_allocations_are_never_truncated(self):
        policy = SizingPolicy(root_bytes=8 * GIB, container_runtime_bytes=4 * GIB, csi_floor_bytes=GIB)

        plan = plan_logical_volume_sizes(snapshot(20 * GIB), policy)

        assert (plan.root, plan.container_runtime) == (8 * GIB, 4 * GIB)


class TestParseVgsReport:
    def test_parses_first_volume_group(self):
        parsed = parse_vgs_report(vgs_document(31394365440, size=31394365440))

        assert parsed == VolumeGroupSnapshot("rootvg", 1, 0, 31394365440, 31394365440)

    def test_empty_report(self):
        with pytest.raises(ValueError, match="no volume group"):
            parse_vgs_report('{"report": [{"vg": []}]}')

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_vgs_report("  Volume group \"rootvg\" not found")


def test_to_lvm_argument():
    assert to_lvm_argument(10737418240) == "10737418240B"


class TestVolumeGroupSizer:
    def test_create_volume_group(self, command_script):
        VolumeGroupSizer().create_volume_group("/dev/sdb2")

        assert command_script.calls == [
            ["pvcreate", "/dev/sdb2"],
            ["vgcreate", "rootvg", "/dev/sdb2"],
        ]

    def test_snapshot_runs_json_report(self, command_script):
        command_script.on(*VGS, stdout=vgs_document(1000))

        assert VolumeGroupSizer().snapshot().free == 1000
        assert command_script.calls == [
            ["vgs", "rootvg", "--reportformat", "json", "--units", "B"]
        ]

    def test_snapshot_with_unparseable_report(self, command_script):
        command_script.on(*VGS, stdout="garbage")

        with pytest.raises(CommandFailedError, match="Unable to parse vgs report"):
            VolumeGroupSizer().snapshot()

    def test_plan_sizes_uses_policy(self):
        sizer = VolumeGroupSizer(policy=SizingPolicy(container_runtime_bytes=0))

        assert sizer.plan_sizes(snapshot(31394365440)).csi == 20120076288

    def test_creates_volumes_in_order_requerying_free_space(self, command_script):
        command_script.on(*VGS, stdout=vgs_document(60 * GIB))
        plan = LogicalVolumeSizing(root=10 * GIB, csi=15 * GIB, container_runtime=30 * GIB)

        VolumeGroupSizer().create_logical_volumes(plan)

        relevant = [call for call in command_script.calls if call[0] in ("vgs", "lvcreate")]
        assert [call[0] for call in relevant] == ["vgs", "lvcreate"] * 3
        assert command_script.commands_starting_with("lvcreate") == [
            ["lvcreate", "--size", "10737418240B", "rootvg", "-n", "rootlv", "--wipesignatures", "y"],
            ["lvcreate", "--size", "16106127360B", "rootvg", "-n", "csilv", "--wipesignatures", "y"],
            ["lvcreate", "--size", "32212254720B", "rootvg", "-n", "containerdlv", "--wipesignatures", "y"],
        ]

    def test_aborts_when_free_space_runs_out(self, command_script):
        command_script.on(*VGS, stdout=vgs_document(60 * GIB))
        command_script.on(*VGS, stdout=vgs_document(2 * GIB))
        plan = LogicalVolumeSizing(root=10 * GIB, csi=15 * GIB, container_runtime=30 * GIB)

        with pytest.raises(InsufficientCapacityError) as exc_info:
            VolumeGroupSizer().create_logical_volumes(plan)

        assert exc_info.value.required == 15 * GIB
        assert len(command_script.commands_starting_with("lvcreate")) == 1

    def test_create_filesystems_boot_first(self, command_script):
        VolumeGroupSizer().create_filesystems("/dev/sdb1")

        assert command_script.calls == [
            ["mkfs.vfat", "-F", "32", "-n", "system-boot", "/dev/sdb1"],
            ["mkfs.ext4", "-L", "writable", "/dev/mapper/rootvg-rootlv"],
            ["mkfs.ext4", "/dev/mapper/rootvg-csilv"],
            ["mkfs.ext4", "/dev/mapper/rootvg-containerdlv"],
        ]

    def test_deactivate(self, command_script):
        VolumeGroupSizer("nodevg").deactivate()

        assert command_script.calls == [["vgchange", "-a", "n", "nodevg"]]
