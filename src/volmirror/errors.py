from __future__ import annotations

from pathlib import Path


class MirrorError(Exception):
    """Base class for failures that end a mirror run."""


class PreconditionError(MirrorError):
    """A mirror root is missing. ``reason`` is short enough to show to a user."""

    def __init__(self, reason: str, path: Path | None = None) -> None:
        super().__init__(f"{reason}: {path}" if path is not None else reason)
        self.reason = reason
        self.path = path


class TraversalError(MirrorError):
    """A directory could not be listed or one of its entries could not be inspected."""


class FileOperationError(MirrorError):
    """Reading, writing or creating an entry failed during the copy pass."""


class PathResolutionError(MirrorError):
    pass
