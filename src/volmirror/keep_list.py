from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Iterable

from volmirror.errors import PathResolutionError


KEEP_MATCH_EXACT = "exact"
KEEP_MATCH_PREFIX = "prefix"
KEEP_MATCH_MODES = (KEEP_MATCH_EXACT, KEEP_MATCH_PREFIX)

log = logging.getLogger("volmirror.keep")


def canonicalize(path: Path | str) -> Path:
    try:
        return Path(os.path.abspath(path)).resolve(strict=False)
    except (OSError, RuntimeError, ValueError) as exc:
        raise PathResolutionError(f"Cannot resolve {path}: {exc}") from exc


def normalize_keep_entries(entries: Iterable[str]) -> tuple[str, ...]:
    """Trim entries, drop blanks and strip leading separators.

    Every entry is relative to the destination root, so ``/world`` and
    ``world`` name the same path.
    """
    normalized: list[str] = []
    for entry in entries:
        stripped = entry.strip().lstrip("/\\")
        if stripped:
            normalized.append(stripped)
    return tuple(normalized)


@dataclass(frozen=True, slots=True)
class KeepList:
    entries: tuple[str, ...] = ()
    match: str = KEEP_MATCH_EXACT

    def __post_init__(self) -> None:
        if self.match not in KEEP_MATCH_MODES:
            raise ValueError(f"keep match must be one of: {', '.join(KEEP_MATCH_MODES)}")

    @property
    def protects_descendants(self) -> bool:
        return self.match == KEEP_MATCH_PREFIX

    def _resolved_entries(self, destination_root: Path) -> list[Path]:
        resolved: list[Path] = []
        for entry in self.entries:
            try:
                resolved.append(canonicalize(Path(destination_root) / entry))
            except PathResolutionError as exc:
                log.warning("Ignoring keep entry %r: %s", entry, exc)
        return resolved

    def is_protected(self, candidate: Path, destination_root: Path) -> bool:
        if not self.entries:
            return False

        try:
            resolved_candidate = canonicalize(candidate)
        except PathResolutionError as exc:
            # Unresolvable paths are treated as unprotected and may be deleted or overwritten.
            log.error("%s; treating it as not protected", exc)
            return False

        for keep_path in self._resolved_entries(destination_root):
            if resolved_candidate == keep_path:
                return True
            if self.protects_descendants and resolved_candidate.is_relative_to(keep_path):
                return True
        return False


def build_keep_list(entries: Iterable[str], match: str = KEEP_MATCH_EXACT) -> KeepList:
    return KeepList(entries=normalize_keep_entries(entries), match=match)


def is_protected(candidate: Path, destination_root: Path, keep_list: KeepList) -> bool:
    return keep_list.is_protected(candidate, destination_root)
