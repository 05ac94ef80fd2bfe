"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions so the orchestrator can tell a
precondition violation from a tool failure, a verification failure, or a leaked
host resource, and report each with the right context.

Exception Hierarchy:
    ImageBuilderError (base)
        ├── PreconditionError
        │   ├── InvalidDevicePathError
        │   └── NonEmptyPartitionTableError
        ├── CommandFailedError
        │   └── CommandTimeoutError
        ├── VerificationError
        │   ├── ChecksumMismatchError
        │   └── MalformedChecksumFileError
        ├── InsufficientCapacityError
        ├── TransferError
        │   ├── DownloadError
        │   └── UploadError
        ├── LoopDeviceError
        ├── MountError
        ├── CleanupError
        ├── BuildStepError
        └── TemplateRenderError

Usage:
    from pi_image_builder.storage.exceptions import NonEmptyPartitionTableError

    if table.partitions:
        raise NonEmptyPartitionTableError(device, len(table.partitions))
"""

from __future__ import annotations

from typing import Sequence


class ImageBuilderError(Exception):
    """Base exception for all image build operations."""


class PreconditionError(ImageBuilderError):
    """A safety check failed before any destructive action was taken."""


class InvalidDevicePathError(PreconditionError):
    """Device path is not an acceptable block device path."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Invalid device path: {device!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NonEmptyPartitionTableError(PreconditionError):
    """Device already holds partitions and must not be repartitioned."""

    def __init__(self, device: str, partition_count: int):
        self.device = device
        self.partition_count = partition_count
        super().__init__(
            f"Device {device} does not have an empty partition table "
            f"({partition_count} partition(s) found)"
        )


class CommandFailedError(ImageBuilderError):
    """External tool exited non-zero. Carries the combined output."""

    def __init__(self, command: Sequence[str], returncode: int | None, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command failed ({' '.join(self.command)}): exit code {returncode}"
        if output:
            message += f", output: {output}"
        super().__init__(message)


class CommandTimeoutError(CommandFailedError):
    """External tool exceeded its deadline and was killed."""

    def __init__(self, command: Sequence[str], timeout: float, output: str = ""):
        self.timeout = timeout
        super().__init__(command, None, output)
        self.args = (
            f"Command timed out after {timeout}s ({' '.join(self.command)})",
        )


class VerificationError(ImageBuilderError):
    """Downloaded media could not be verified."""


class ChecksumMismatchError(VerificationError):
    """Media digest does not match the published checksum."""

    def __init__(self, file_name: str, expected: str | None, actual: str):
        self.file_name = file_name
        self.expected = expected
        self.actual = actual
        if expected is None:
            msg = f"No checksum entry for {file_name} (computed {actual})"
        else:
            msg = f"Checksums do not match for {file_name}: expected {expected}, got {actual}"
        super().__init__(msg)


class MalformedChecksumFileError(VerificationError):
    """Checksum manifest line could not be split into digest and filename."""

    def __init__(self, line_number: int, line: str):
        self.line_number = line_number
        self.line = line
        super().__init__(
            f"Malformed checksum file at line {line_number}: {line!r} "
            f"(length mismatch check file format)"
        )


class InsufficientCapacityError(ImageBuilderError):
    """Volume group cannot hold the requested logical volume layout."""

    def __init__(self, volume_group: str, available: int, required: int):
        self.volume_group = volume_group
        self.available = available
        self.required = required
        super().__init__(
            f"Volume group {volume_group} does not have enough capacity: "
            f"{available} bytes available, {required} bytes required"
        )


class TransferError(ImageBuilderError):
    """Base exception for HTTP transfers."""


class DownloadError(TransferError):
    """Download of a remote file failed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Download of {url} failed: {reason}")


class UploadError(TransferError):
    """Upload of a local file failed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Upload to {url} failed: {reason}")


class LoopDeviceError(ImageBuilderError):
    """Loop device could not be resolved or released."""


class MountError(ImageBuilderError):
    """Mount or unmount of a session mount point failed."""

    def __init__(self, source: str, target: str, reason: str):
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(f"Mount error for {source} on {target}: {reason}")


class CleanupError(ImageBuilderError):
    """One or more teardown steps failed. Indicates a leaked host resource."""

    def __init__(self, failures: Sequence[Exception]):
        self.failures = list(failures)
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(f"{len(self.failures)} cleanup step(s) failed: {details}")


class BuildStepError(ImageBuilderError):
    """A build step failed. Wraps the cause and any cleanup failures."""

    def __init__(
        self,
        step: str,
        cause: BaseException,
        cleanup_errors: Sequence[Exception] | None = None,
    ):
        self.step = step
        self.cause = cause
        self.cleanup_errors = list(cleanup_errors or [])
        msg = f"Step '{step}' failed: {cause}"
        if self.cleanup_errors:
            msg += f" (and {len(self.cleanup_errors)} cleanup error(s))"
        super().__init__(msg)


class TemplateRenderError(ImageBuilderError):
    """A guest configuration template could not be rendered."""

    def __init__(self, template: str, reason: str):
        self.template = template
        self.reason = reason
        super().__init__(f"Failed to render template {template}: {reason}")
