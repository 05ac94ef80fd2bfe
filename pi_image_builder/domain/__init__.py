"""Domain models for image build operations."""

from __future__ import annotations

from .models import (
    GIB,
    MIB,
    BuildSession,
    BuildState,
    DiskRecord,
    LogicalVolumeSizing,
    LoopDeviceEntry,
    MediaArtifact,
    MountPoint,
    PartitionRecord,
    SizingPolicy,
    VolumeGroupSnapshot,
    parse_byte_size,
)


__all__ = [
    "GIB",
    "MIB",
    "BuildSession",
    "BuildState",
    "DiskRecord",
    "LogicalVolumeSizing",
    "LoopDeviceEntry",
    "MediaArtifact",
    "MountPoint",
    "PartitionRecord",
    "SizingPolicy",
    "VolumeGroupSnapshot",
    "parse_byte_size",
]
