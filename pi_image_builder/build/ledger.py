"""Ordered record of acquired host resources."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from pi_image_builder.logging import LoggerFactory
from pi_image_builder.storage.exceptions import CleanupError

if TYPE_CHECKING:
    from loguru import Logger


class ResourceLedger:
    """Host resources in acquisition order, released in reverse.

    A resource stays on the ledger until its release call succeeds, so a
    failed release is attempted again by ``release_all``.
    """

    def __init__(self, log: Logger | None = None):
        self.log = log or LoggerFactory.for_build()
        self._entries: list[tuple[str, Callable[[], None]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._entries]

    def push(self, name: str, release: Callable[[], None]) -> None:
        self._entries.append((name, release))
        self.log.debug(f"Acquired {name}")

    def release_all(self) -> list[Exception]:
        """Release every resource newest first, attempting all of them.

        Returns:
            The errors raised by failed releases
        """
        errors: list[Exception] = []
        for entry in reversed(list(self._entries)):
            name, release = entry
            try:
                release()
            except Exception as error:
                self.log.error(f"Failed to release {name}: {error}")
                errors.append(error)
                continue
            self._entries.remove(entry)
            self.log.debug(f"Released {name}")
        return errors

    def close(self) -> None:
        """Release everything.

        Raises:
            CleanupError: If any release failed
        """
        errors = self.release_all()
        if errors:
            raise CleanupError(errors)
