from __future__ import annotations

from dataclasses import dataclass
import errno
import logging
import os
from pathlib import Path
import shutil
import stat
import tempfile

from volmirror.config import MirrorConfig
from volmirror.errors import FileOperationError, MirrorError, PreconditionError, TraversalError
from volmirror.keep_list import KeepList, canonicalize
from volmirror.models import MirrorOutcome, MirrorRequest, MirrorState, MirrorStats


log = logging.getLogger("volmirror.engine")

FAILURE_REASONS = {
    MirrorState.IDLE: "mirror roots could not be resolved",
    MirrorState.DELETING: "removing destination files failed",
    MirrorState.COPYING: "copying files failed",
}


@dataclass(slots=True)
class MirrorRunOptions:
    delete_before_copy: bool = True


def _list_children(dir_path: Path) -> list[os.DirEntry[str]]:
    try:
        with os.scandir(dir_path) as entries:
            return sorted(entries, key=lambda entry: entry.name)
    except OSError as exc:
        raise TraversalError(f"Cannot list directory {dir_path}: {exc}") from exc


def _is_directory(entry: os.DirEntry[str]) -> bool:
    # Symlinks are never descended into; a link to a directory is removed as a link.
    try:
        return entry.is_dir(follow_symlinks=False)
    except OSError as exc:
        raise TraversalError(f"Cannot inspect {entry.path}: {exc}") from exc


def _remove_entry(path: Path, is_dir: bool, stats: MirrorStats) -> None:
    # Leaf removal is fail-soft, unlike listing. A directory that still holds
    # kept entries cannot be removed and that is expected.
    try:
        if is_dir:
            path.rmdir()
        else:
            path.unlink()
    except OSError as exc:
        stats.removal_failures += 1
        if exc.errno in (errno.ENOTEMPTY, errno.EEXIST):
            log.debug("Leaving non-empty directory %s", path)
        else:
            log.warning("Could not remove %s: %s", path, exc)
        return
    stats.deleted += 1


def delete_tree(
    dir_path: Path,
    destination_root: Path,
    keep_list: KeepList,
    stats: MirrorStats | None = None,
) -> MirrorStats:
    """Remove everything below ``dir_path`` that the keep list does not protect.

    Protection is always evaluated against ``destination_root``. A protected
    directory is never removed itself; with exact matching its unprotected
    children are still removed, with prefix matching its subtree is left alone.
    The copy pass skips protected destination paths entirely, so in exact mode
    a protected directory ``D`` ends up empty: the source's ``D/*`` is never
    copied back into it.

    Raises:
        TraversalError: a directory below ``dir_path`` could not be listed.
    """
    stats = stats if stats is not None else MirrorStats()

    for entry in _list_children(dir_path):
        path = Path(entry.path)
        is_dir = _is_directory(entry)

        if keep_list.is_protected(path, destination_root):
            stats.protected += 1
            log.debug("Keeping %s", path)
            if is_dir and not keep_list.protects_descendants:
                delete_tree(path, destination_root, keep_list, stats)
            continue

        if is_dir:
            delete_tree(path, destination_root, keep_list, stats)
        _remove_entry(path, is_dir, stats)

    return stats


def _source_mode(source_path: Path) -> int:
    try:
        return stat.S_IMODE(source_path.stat().st_mode)
    except OSError as exc:
        raise FileOperationError(f"Cannot stat {source_path}: {exc}") from exc


def _safe_copy(source_file: Path, destination_file: Path) -> None:
    mode = _source_mode(source_file)
    try:
        with tempfile.NamedTemporaryFile(
            delete=False, dir=str(destination_file.parent), prefix=f".{destination_file.name}.", suffix=".tmp"
        ) as tmp:
            tmp_path = Path(tmp.name)
        try:
            shutil.copyfile(source_file, tmp_path)
            os.chmod(tmp_path, mode)
            tmp_path.replace(destination_file)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
    except OSError as exc:
        raise FileOperationError(f"Cannot copy {source_file} to {destination_file}: {exc}") from exc


def _ensure_directory(path: Path, stats: MirrorStats) -> None:
    # A symlink is never written through; it is replaced by a real directory.
    if path.is_symlink():
        try:
            path.unlink()
        except OSError as exc:
            raise FileOperationError(f"Cannot replace symlink {path}: {exc}") from exc
    elif path.is_dir():
        return
    try:
        path.mkdir()
    except OSError as exc:
        raise FileOperationError(f"Cannot create directory {path}: {exc}") from exc
    stats.directories_created += 1


def _apply_mode(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as exc:
        raise FileOperationError(f"Cannot set mode {oct(mode)} on {path}: {exc}") from exc


def copy_tree(
    src_dir: Path,
    dst_dir: Path,
    destination_root: Path,
    keep_list: KeepList,
    stats: MirrorStats | None = None,
) -> MirrorStats:
    """Copy the children of ``src_dir`` into ``dst_dir``.

    Destination paths protected by the keep list are skipped together with
    everything below them. Files keep their mode bits and replace existing
    destination files through a temporary file in the same directory.
    Symlinks in the source are followed and copied as regular files.

    Raises:
        TraversalError: a source directory could not be listed.
        FileOperationError: a file could not be read or written, or a
            directory could not be created.
    """
    stats = stats if stats is not None else MirrorStats()

    for entry in _list_children(src_dir):
        source_path = Path(entry.path)
        destination_path = Path(dst_dir) / entry.name

        if keep_list.is_protected(destination_path, destination_root):
            stats.protected += 1
            log.debug("Not overwriting kept path %s", destination_path)
            continue

        if _is_directory(entry):
            mode = _source_mode(source_path)
            _ensure_directory(destination_path, stats)
            copy_tree(source_path, destination_path, destination_root, keep_list, stats)
            # Applied after the children so read-only source directories can still be filled.
            _apply_mode(destination_path, mode)
            continue

        _safe_copy(source_path, destination_path)
        stats.copied += 1

    return stats


def _require_directory(path: Path, reason: str) -> None:
    if not path.is_dir():
        raise PreconditionError(reason, path)


def _require_disjoint_roots(request: MirrorRequest) -> None:
    source_root = request.source_root
    destination_root = request.destination_root
    if source_root == destination_root:
        raise PreconditionError("source and destination are the same directory", destination_root)
    if destination_root.is_relative_to(source_root) or source_root.is_relative_to(destination_root):
        raise PreconditionError("source and destination directories overlap", destination_root)


def build_request(config: MirrorConfig) -> MirrorRequest:
    return MirrorRequest(
        source_root=canonicalize(config.source_root),
        destination_root=canonicalize(config.destination_root),
    )


def mirror(config: MirrorConfig, options: MirrorRunOptions | None = None) -> MirrorOutcome:
    """Replace the destination's contents with the source's, sparing kept paths.

    The destination is checked and emptied before the source is checked, so a
    missing source still leaves an emptied destination behind. Every failure
    ends the run; there are no retries.
    """
    options = options or MirrorRunOptions()
    stats = MirrorStats()
    state = MirrorState.IDLE

    def _enter(next_state: MirrorState) -> MirrorState:
        log.debug("Mirror state %s -> %s", state.value, next_state.value)
        return next_state

    try:
        request = build_request(config)
        log.info("Mirror started: %s -> %s", request.source_root, request.destination_root)
        _require_disjoint_roots(request)

        state = _enter(MirrorState.CHECK_DST)
        _require_directory(request.destination_root, "destination directory does not exist")

        if options.delete_before_copy:
            state = _enter(MirrorState.DELETING)
            delete_tree(request.destination_root, request.destination_root, config.keep_list, stats)

        state = _enter(MirrorState.CHECK_SRC)
        _require_directory(request.source_root, "source directory does not exist")

        state = _enter(MirrorState.COPYING)
        copy_tree(request.source_root, request.destination_root, request.destination_root, config.keep_list, stats)
    except MirrorError as exc:
        log.error("Mirror failed during %s: %s", state.value, exc)
        reason = exc.reason if isinstance(exc, PreconditionError) else FAILURE_REASONS.get(state, str(exc))
        return MirrorOutcome(success=False, state=state, reason=reason, error=str(exc), stats=stats)

    _enter(MirrorState.DONE)
    log.info(
        "Mirror completed: deleted=%s copied=%s directories=%s protected=%s removal_failures=%s",
        stats.deleted,
        stats.copied,
        stats.directories_created,
        stats.protected,
        stats.removal_failures,
    )
    return MirrorOutcome(success=True, state=MirrorState.DONE, stats=stats)
