"""Guest file writes.

Files are only rewritten when their content changes, so running the
configuration twice against the same root leaves mtimes untouched.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class RenderRequest:
    """A template to render into the guest root at ``destination``."""

    template: str
    destination: str  # relative to the guest root, e.g. "etc/fstab"
    data: dict[str, Any] = field(default_factory=dict)
    mode: int = 0o644


def guest_path(root: str | Path, destination: str) -> Path:
    """Resolve a guest path below ``root``.

    Raises:
        ValueError: If the destination escapes the guest root
    """
    root = Path(root).resolve()
    path = (root / destination.lstrip("/")).resolve()
    if path != root and root not in path.parents:
        raise ValueError(f"{destination} is outside of {root}")
    return path


def idempotent_write(path: str | Path, data: bytes, mode: int = 0o644) -> bool:
    """Write ``data`` to ``path`` only if the current bytes differ.

    The mode is applied in both cases.

    Returns:
        True if the file was written
    """
    path = Path(path)
    try:
        if path.read_bytes() == data:
            os.chmod(path, mode)
            return False
    except FileNotFoundError:
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)
    return True
