"""Tests for partition table inspection, creation and growth."""

import pytest

from conftest import parted_document
from pi_image_builder.domain import PartitionRecord
from pi_image_builder.storage.exceptions import (
    CommandFailedError,
    InvalidDevicePathError,
    NonEmptyPartitionTableError,
)
from pi_image_builder.storage.partition import (
    PartitionPlanner,
    find_partition,
    parse_machine_output,
    parse_parted_json,
)

PARTED_JSON = ("parted", "-s", "-j", "/dev/sdb")
PARTED_MUTATE = ("parted", "-s", "/dev/sdb")
LOOP_MACHINE = ("parted", "-s", "/dev/loop8", "-m")


class TestParseMachineOutput:
    def test_parses_disk_and_partitions(self, loop_machine_output):
        disk, partitions = parse_machine_output(loop_machine_output)

        assert disk.path == "/dev/loop8"
        assert disk.size == 5343543296
        assert disk.label == "msdos"
        assert partitions == [
            PartitionRecord(1, 1048576, 269484031, 268435456, "fat32", ("boot", "lba")),
            PartitionRecord(2, 269484032, 3496001535, 3226517504, "ext4", ()),
        ]
        assert disk.partitions == tuple(partitions)

    def test_skips_lines_with_unexpected_field_count(self):
        output = "BYT;\nWarning: something odd\n1:1B:2B:2B:ext4;\n"

        disk, partitions = parse_machine_output(output)

        assert disk is None
        assert partitions == []

    def test_find_partition_returns_first_match(self, loop_machine_output):
        _, partitions = parse_machine_output(loop_machine_output)

        assert find_partition(partitions, "ext4").number == 2
        assert find_partition(partitions, "fat32").number == 1

    def test_find_partition_absent(self):
        assert find_partition([], "ext4") is None


class TestParsePartedJson:
    def test_partitions_in_table_order(self, partitioned_parted_json):
        table = parse_parted_json(partitioned_parted_json)

        assert [p.number for p in table.partitions] == [1, 2]
        assert table.partitions[1].lvm_enabled
        assert table.partitions[1].filesystem == ""

    def test_no_partitions_key_is_empty(self, empty_parted_json):
        assert parse_parted_json(empty_parted_json).is_empty

    def test_invalid_output(self):
        with pytest.raises(ValueError):
            parse_parted_json("Error: Could not stat device /dev/sdz")


class TestGetPartitionTable:
    def test_unlabelled_disk_is_empty(self, command_script):
        command_script.on(
            *PARTED_JSON,
            returncode=1,
            stdout=parted_document(label="unknown"),
            stderr="Error: /dev/sdb: unrecognised disk label",
        )

        table = PartitionPlanner().get_partition_table("/dev/sdb")

        assert table.is_empty

    def test_unparseable_output_raises(self, command_script):
        command_script.on(*PARTED_JSON, returncode=1, stderr="Error: Could not stat device")

        with pytest.raises(CommandFailedError, match="Could not stat device"):
            PartitionPlanner().get_partition_table("/dev/sdb")

    def test_invalid_device_path_runs_nothing(self, command_script):
        with pytest.raises(InvalidDevicePathError):
            PartitionPlanner().get_partition_table("sdb")

        assert command_script.calls == []


class TestCreateTable:
    def test_non_empty_table_is_never_modified(self, command_script, partitioned_parted_json):
        command_script.on(*PARTED_JSON, stdout=partitioned_parted_json)

        with pytest.raises(NonEmptyPartitionTableError) as exc_info:
            PartitionPlanner().create_table("/dev/sdb")

        assert exc_info.value.partition_count == 2
        assert command_script.commands_starting_with(*PARTED_MUTATE) == []

    def test_creates_boot_and_lvm_partitions(
        self, command_script, empty_parted_json, partitioned_parted_json
    ):
        command_script.on(*PARTED_JSON, stdout=empty_parted_json)
        command_script.on(*PARTED_JSON, stdout=partitioned_parted_json)

        table = PartitionPlanner().create_table("/dev/sdb")

        assert command_script.commands_starting_with(*PARTED_MUTATE) == [
            ["parted", "-s", "/dev/sdb", "mktable", "msdos"],
            ["parted", "-s", "/dev/sdb", "mkpart", "primary", "fat32", "2048s", "257MiB"],
            ["parted", "-s", "/dev/sdb", "mkpart", "primary", "ext4", "257MiB", "100%"],
            ["parted", "-s", "/dev/sdb", "set", "2", "lvm", "on"],
        ]
        assert [p.number for p in table.partitions] == [1, 2]

    def test_layout_without_lvm_flag_fails(self, command_script, empty_parted_json):
        command_script.on(*PARTED_JSON, stdout=empty_parted_json)
        command_script.on(
            *PARTED_JSON,
            stdout=parted_document(
                partitions=[
                    {"number": 1, "start": "1B", "end": "2B", "size": "2B", "flags": []},
                    {"number": 2, "start": "3B", "end": "4B", "size": "2B", "flags": []},
                ]
            ),
        )

        with pytest.raises(CommandFailedError, match="unexpected layout"):
            PartitionPlanner().create_table("/dev/sdb")

    def test_parted_failure_propagates(self, command_script, empty_parted_json):
        command_script.on(*PARTED_JSON, stdout=empty_parted_json)
        command_script.on(*PARTED_MUTATE, "mktable", returncode=1, stderr="Error: Device busy")

        with pytest.raises(CommandFailedError, match="Device busy"):
            PartitionPlanner().create_table("/dev/sdb")

        assert command_script.commands_starting_with(*PARTED_MUTATE, "mkpart") == []


class TestGrowLastPartition:
    def test_resize_then_check_then_grow(
        self, command_script, loop_machine_output, grown_machine_output
    ):
        command_script.on(*LOOP_MACHINE, stdout=loop_machine_output)
        command_script.on(*LOOP_MACHINE, stdout=grown_machine_output)

        grown = PartitionPlanner().grow_last_partition("/dev/loop8")

        resize = command_script.index_of("parted", "-s", "/dev/loop8", "resizepart")
        check = command_script.index_of("e2fsck")
        grow = command_script.index_of("resize2fs")
        assert resize < check < grow
        assert command_script.calls[resize] == [
            "parted", "-s", "/dev/loop8", "resizepart", "2", "5343543295B"
        ]
        assert command_script.calls[check] == ["e2fsck", "-p", "-f", "/dev/loop8p2"]
        assert command_script.calls[grow] == ["resize2fs", "/dev/loop8p2"]
        assert grown.end == 5343543295

    def test_corrected_filesystem_errors_are_accepted(
        self, command_script, loop_machine_output, grown_machine_output
    ):
        command_script.on(*LOOP_MACHINE, stdout=loop_machine_output)
        command_script.on(*LOOP_MACHINE, stdout=grown_machine_output)
        command_script.on("e2fsck", returncode=1)

        PartitionPlanner().grow_last_partition("/dev/loop8")

        assert command_script.commands_starting_with("resize2fs")

    def test_uncorrected_filesystem_errors_abort(self, command_script, loop_machine_output):
        command_script.on(*LOOP_MACHINE, stdout=loop_machine_output)
        command_script.on("e2fsck", returncode=4, stderr="UNEXPECTED INCONSISTENCY")

        with pytest.raises(CommandFailedError, match="UNEXPECTED INCONSISTENCY"):
            PartitionPlanner().grow_last_partition("/dev/loop8")

        assert command_script.commands_starting_with("resize2fs") == []

    def test_no_ext4_partition_is_left_alone(self, command_script):
        command_script.on(
            *LOOP_MACHINE,
            stdout=(
                "BYT;\n"
                "/dev/loop8:5343543296B:loopback:512:512:msdos:Loopback device:;\n"
                "1:1048576B:269484031B:268435456B:fat32::lba;\n"
            ),
        )

        assert PartitionPlanner().grow_last_partition("/dev/loop8") is None
        assert command_script.commands_starting_with("e2fsck") == []

    def test_partition_already_at_disk_end(self, command_script, grown_machine_output):
        command_script.on(*LOOP_MACHINE, stdout=grown_machine_output)

        PartitionPlanner().grow_last_partition("/dev/loop8")

        assert command_script.commands_starting_with("parted", "-s", "/dev/loop8", "resizepart") == []
        assert command_script.commands_starting_with("resize2fs") == [
            ["resize2fs", "/dev/loop8p2"]
        ]
