"""
Pytest configuration and shared fixtures for pi-image-builder tests.

External tools are never executed: ``subprocess.run`` is replaced by a
scripted responder that records every command and answers with canned
losetup, parted and vgs output.
"""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from pi_image_builder.config.settings import BuildSettings


# ==============================================================================
# Command Fixtures
# ==============================================================================


class CommandScript:
    """Scripted stand-in for subprocess.run.

    Responses are registered per command prefix. The longest matching prefix
    wins; several responses for one prefix are returned in order, the last
    one repeating. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.kwargs: List[Dict[str, Any]] = []
        self._responses: Dict[tuple, List[Any]] = {}

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        raises: Optional[BaseException] = None,
    ) -> "CommandScript":
        self._responses.setdefault(tuple(prefix), []).append(
            raises if raises is not None else (returncode, stdout, stderr)
        )
        return self

    def __call__(self, command, **kwargs):
        command = list(command)
        self.calls.append(command)
        self.kwargs.append(kwargs)
        matches = [
            prefix
            for prefix in self._responses
            if tuple(command[: len(prefix)]) == prefix
        ]
        if not matches:
            return subprocess.CompletedProcess(command, 0, "", "")
        queue = self._responses[max(matches, key=len)]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        returncode, stdout, stderr = response
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def commands_starting_with(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def index_of(self, *prefix: str) -> int:
        for index, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return index
        raise AssertionError(f"{prefix} was never run; calls: {self.calls}")


@pytest.fixture
def command_script(mocker) -> CommandScript:
    """
    Fixture replacing subprocess.run with a CommandScript.

    Returns:
        The script, for registering responses and inspecting calls.
    """
    script = CommandScript()
    mocker.patch("subprocess.run", side_effect=script)
    return script


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


def losetup_document(*entries: Dict[str, Any]) -> str:
    return json.dumps({"loopdevices": list(entries)})


def loop_entry(name: str, back_file: str) -> Dict[str, Any]:
    return {
        "name": name,
        "sizelimit": 0,
        "offset": 0,
        "autoclear": False,
        "ro": False,
        "back-file": back_file,
        "dio": False,
        "log-sec": 512,
    }


def vgs_document(free: int, size: Optional[int] = None, name: str = "rootvg") -> str:
    size = size if size is not None else free
    return json.dumps(
        {
            "report": [
                {
                    "vg": [
                        {
                            "vg_name": name,
                            "pv_count": "1",
                            "lv_count": "0",
                            "snap_count": "0",
                            "vg_attr": "wz--n-",
                            "vg_size": f"{size}B",
                            "vg_free": f"{free}B",
                        }
                    ]
                }
            ]
        }
    )


def parted_document(
    device: str = "/dev/sdb",
    label: str = "msdos",
    partitions: Optional[List[Dict[str, Any]]] = None,
) -> str:
    disk: Dict[str, Any] = {
        "path": device,
        "size": "32010928128B",
        "model": "Generic Flash Disk",
        "transport": "usb",
        "logical-sector-size": 512,
        "physical-sector-size": 512,
        "label": label,
        "max-partitions": 4,
    }
    if partitions is not None:
        disk["partitions"] = partitions
    return json.dumps({"disk": disk})


@pytest.fixture
def empty_parted_json() -> str:
    """parted -j output for a device with a label but no partitions."""
    return parted_document()


@pytest.fixture
def partitioned_parted_json() -> str:
    """parted -j output after the boot + LVM layout was created."""
    return parted_document(
        partitions=[
            {
                "number": 1,
                "start": "1048576B",
                "end": "269484031B",
                "size": "268435456B",
                "type": "primary",
                "filesystem": "fat32",
                "flags": ["lba"],
            },
            {
                "number": 2,
                "start": "269484032B",
                "end": "32010928127B",
                "size": "31741444096B",
                "type": "primary",
                "flags": ["lvm"],
            },
        ]
    )


@pytest.fixture
def loop_machine_output() -> str:
    """parted -m output for an expanded Ubuntu raspi image on a loop device."""
    return (
        "BYT;\n"
        "/dev/loop8:5343543296B:loopback:512:512:msdos:Loopback device:;\n"
        "1:1048576B:269484031B:268435456B:fat32::boot, lba;\n"
        "2:269484032B:3496001535B:3226517504B:ext4::;\n"
    )


@pytest.fixture
def grown_machine_output() -> str:
    return (
        "BYT;\n"
        "/dev/loop8:5343543296B:loopback:512:512:msdos:Loopback device:;\n"
        "1:1048576B:269484031B:268435456B:fat32::boot, lba;\n"
        "2:269484032B:5343543295B:5074059264B:ext4::;\n"
    )


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def build_settings(tmp_path) -> BuildSettings:
    """
    Fixture providing default settings rooted in a temporary work directory.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.
    """
    settings = BuildSettings()
    settings.values["work_dir"] = str(tmp_path)
    return settings


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    settings_dir = tmp_path / ".config" / "pi-image-builder"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"
