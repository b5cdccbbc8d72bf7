from pathlib import Path
import stat

import pytest

from volmirror.config import MirrorConfig
from volmirror.errors import FileOperationError, TraversalError
from volmirror.keep_list import build_keep_list
from volmirror import mirror_engine
from volmirror.mirror_engine import MirrorRunOptions, copy_tree, delete_tree, mirror
from volmirror.models import MirrorState, MirrorStats


def _write(path: Path, content: str, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)


def _snapshot(root: Path) -> dict[str, tuple[str, int]]:
    files: dict[str, tuple[str, int]] = {}
    for path in sorted(root.rglob("*")):
        if path.is_file():
            files[path.relative_to(root).as_posix()] = (
                path.read_text(encoding="utf-8"),
                stat.S_IMODE(path.stat().st_mode),
            )
    return files


def _config(source: Path, destination: Path, keep: list[str] | None = None, match: str = "exact") -> MirrorConfig:
    return MirrorConfig(
        source_root=source,
        destination_root=destination,
        keep_list=build_keep_list(keep or [], match=match),
    )


def _roots(tmp_path: Path) -> tuple[Path, Path]:
    source = tmp_path / "source"
    destination = tmp_path / "destination"
    source.mkdir()
    destination.mkdir()
    return source, destination


def test_full_scenario_replaces_destination_and_keeps_listed_file(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi")
    _write(source / "sub" / "b.txt", "yo")
    _write(destination / "old.txt", "x")
    _write(destination / "keep.txt", "k")

    outcome = mirror(_config(source, destination, ["keep.txt"]))

    assert outcome.success is True
    assert outcome.state is MirrorState.DONE
    assert sorted(_snapshot(destination)) == ["a.txt", "keep.txt", "sub/b.txt"]
    assert (destination / "keep.txt").read_text(encoding="utf-8") == "k"
    assert (destination / "a.txt").read_text(encoding="utf-8") == "hi"
    assert (destination / "sub" / "b.txt").read_text(encoding="utf-8") == "yo"
    assert not (destination / "old.txt").exists()
    assert outcome.stats.deleted == 1
    assert outcome.stats.copied == 2
    assert outcome.stats.directories_created == 1


def test_mirror_is_idempotent(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi", mode=0o640)
    _write(source / "nested" / "deep" / "c.cfg", "value=1", mode=0o600)
    _write(source / "run.sh", "#!/bin/sh\n", mode=0o755)
    _write(destination / "keep.txt", "k")
    config = _config(source, destination, ["keep.txt"])

    first = mirror(config)
    after_first = _snapshot(destination)
    second = mirror(config)
    after_second = _snapshot(destination)

    expected = dict(_snapshot(source))
    expected["keep.txt"] = after_first["keep.txt"]
    assert first.success and second.success
    assert after_first == expected
    assert after_second == expected


def test_keep_list_is_exact(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(destination / "A", "protected")
    _write(destination / "B", "doomed")

    outcome = mirror(_config(source, destination, ["A"]))

    assert outcome.success
    assert (destination / "A").read_text(encoding="utf-8") == "protected"
    assert not (destination / "B").exists()


def test_protecting_a_directory_does_not_protect_its_children(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(destination / "D" / "child", "removed")
    _write(destination / "D" / "listed", "kept")

    outcome = mirror(_config(source, destination, ["D", "D/listed"]))

    assert outcome.success
    assert (destination / "D").is_dir()
    assert not (destination / "D" / "child").exists()
    assert (destination / "D" / "listed").read_text(encoding="utf-8") == "kept"


def test_prefix_match_leaves_protected_subtree_alone(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "world" / "level.dat", "new")
    _write(source / "server.jar", "jar")
    _write(destination / "world" / "level.dat", "old")
    _write(destination / "world" / "region" / "r.0.0.mca", "chunks")

    outcome = mirror(_config(source, destination, ["world"], match="prefix"))

    assert outcome.success
    assert (destination / "world" / "level.dat").read_text(encoding="utf-8") == "old"
    assert (destination / "world" / "region" / "r.0.0.mca").exists()
    assert (destination / "server.jar").exists()


def test_copy_skips_protected_directory_entirely(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "plugins" / "a.jar", "a")
    (destination / "plugins").mkdir()

    outcome = mirror(_config(source, destination, ["plugins"]))

    assert outcome.success
    assert (destination / "plugins").is_dir()
    assert not (destination / "plugins" / "a.jar").exists()


def test_keep_entry_below_unprotected_directory_survives(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "config" / "server.cfg", "from-source")
    _write(source / "config" / "ops.json", "[]")
    _write(destination / "config" / "ops.json", '["admin"]')
    _write(destination / "config" / "stale.cfg", "stale")

    outcome = mirror(_config(source, destination, ["config/ops.json"]))

    assert outcome.success
    assert (destination / "config" / "ops.json").read_text(encoding="utf-8") == '["admin"]'
    assert (destination / "config" / "server.cfg").read_text(encoding="utf-8") == "from-source"
    assert not (destination / "config" / "stale.cfg").exists()
    assert outcome.stats.removal_failures == 1


def test_missing_destination_fails_without_mutations(tmp_path: Path) -> None:
    source = tmp_path / "source"
    _write(source / "a.txt", "hi")
    destination = tmp_path / "missing"
    before = _snapshot(tmp_path)

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.state is MirrorState.CHECK_DST
    assert outcome.reason == "destination directory does not exist"
    assert not destination.exists()
    assert _snapshot(tmp_path) == before


def test_destination_that_is_a_file_fails(tmp_path: Path) -> None:
    source, _ = _roots(tmp_path)
    destination = tmp_path / "file-destination"
    _write(destination, "not a directory")

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.reason == "destination directory does not exist"
    assert destination.read_text(encoding="utf-8") == "not a directory"


def test_missing_source_fails_after_deletion(tmp_path: Path) -> None:
    destination = tmp_path / "destination"
    _write(destination / "keep.txt", "k")
    _write(destination / "old" / "data.bin", "x")

    outcome = mirror(_config(tmp_path / "missing-source", destination, ["keep.txt"]))

    assert outcome.success is False
    assert outcome.state is MirrorState.CHECK_SRC
    assert outcome.reason == "source directory does not exist"
    assert sorted(path.name for path in destination.iterdir()) == ["keep.txt"]


def test_mode_bits_are_preserved(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "secret.key", "s", mode=0o600)
    _write(source / "start.sh", "#!/bin/sh", mode=0o751)
    (source / "logs").mkdir()
    (source / "logs").chmod(0o711)

    outcome = mirror(_config(source, destination))

    assert outcome.success
    assert stat.S_IMODE((destination / "secret.key").stat().st_mode) == 0o600
    assert stat.S_IMODE((destination / "start.sh").stat().st_mode) == 0o751
    assert stat.S_IMODE((destination / "logs").stat().st_mode) == 0o711


def test_existing_file_mode_is_replaced(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "new", mode=0o644)
    _write(destination / "a.txt", "old", mode=0o600)

    outcome = mirror(_config(source, destination), MirrorRunOptions(delete_before_copy=False))

    assert outcome.success
    assert (destination / "a.txt").read_text(encoding="utf-8") == "new"
    assert stat.S_IMODE((destination / "a.txt").stat().st_mode) == 0o644


def test_no_delete_option_keeps_extra_destination_files(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi")
    _write(destination / "extra.txt", "extra")

    outcome = mirror(_config(source, destination), MirrorRunOptions(delete_before_copy=False))

    assert outcome.success
    assert (destination / "extra.txt").exists()
    assert (destination / "a.txt").exists()
    assert outcome.stats.deleted == 0


def test_copy_does_not_leave_temporary_files(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi")
    _write(source / "sub" / "b.txt", "yo")

    mirror(_config(source, destination))

    assert sorted(_snapshot(destination)) == ["a.txt", "sub/b.txt"]


def test_symlink_in_destination_is_removed_not_followed(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    outside = tmp_path / "outside"
    _write(outside / "precious.txt", "do not touch")
    (destination / "link").symlink_to(outside, target_is_directory=True)

    outcome = mirror(_config(source, destination))

    assert outcome.success
    assert not (destination / "link").exists()
    assert (outside / "precious.txt").read_text(encoding="utf-8") == "do not touch"


def test_symlinked_source_file_is_copied_as_regular_file(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    _write(tmp_path / "real.txt", "content")
    (source / "alias.txt").symlink_to(tmp_path / "real.txt")

    outcome = mirror(_config(source, destination))

    assert outcome.success
    assert not (destination / "alias.txt").is_symlink()
    assert (destination / "alias.txt").read_text(encoding="utf-8") == "content"


def test_dangling_source_symlink_fails_copy(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    (source / "broken").symlink_to(tmp_path / "nowhere")

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.state is MirrorState.COPYING
    assert outcome.reason == "copying files failed"
    assert "broken" in (outcome.error or "")


def test_delete_tree_raises_when_directory_cannot_be_listed(tmp_path: Path) -> None:
    with pytest.raises(TraversalError):
        delete_tree(tmp_path / "missing", tmp_path, build_keep_list([]))


def test_delete_tree_ignores_removal_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write(tmp_path / "stuck.txt", "x")
    _write(tmp_path / "gone.txt", "y")
    real_unlink = Path.unlink

    def fake_unlink(self: Path, missing_ok: bool = False) -> None:
        if self.name == "stuck.txt":
            raise PermissionError("operation not permitted")
        real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", fake_unlink)

    stats = delete_tree(tmp_path, tmp_path, build_keep_list([]))

    assert stats.deleted == 1
    assert stats.removal_failures == 1
    assert (tmp_path / "stuck.txt").exists()
    assert not (tmp_path / "gone.txt").exists()


def test_copy_tree_raises_when_source_cannot_be_listed(tmp_path: Path) -> None:
    with pytest.raises(TraversalError):
        copy_tree(tmp_path / "missing", tmp_path, tmp_path, build_keep_list([]))


def test_copy_tree_raises_when_directory_cannot_be_created(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    (source / "data").mkdir()
    _write(destination / "data", "a file in the way")

    with pytest.raises(FileOperationError):
        copy_tree(source, destination, destination, build_keep_list([]), MirrorStats())


def test_same_source_and_destination_is_rejected_before_deletion(tmp_path: Path) -> None:
    root = tmp_path / "volume"
    _write(root / "data.txt", "precious")

    outcome = mirror(_config(root, root))

    assert outcome.success is False
    assert outcome.state is MirrorState.IDLE
    assert outcome.reason == "source and destination are the same directory"
    assert (root / "data.txt").read_text(encoding="utf-8") == "precious"


@pytest.mark.parametrize("nested", ["destination-inside-source", "source-inside-destination"])
def test_nested_roots_are_rejected_before_deletion(tmp_path: Path, nested: str) -> None:
    outer = tmp_path / "outer"
    inner = outer / "inner"
    _write(outer / "a.txt", "outer")
    _write(inner / "b.txt", "inner")
    source, destination = (outer, inner) if nested == "destination-inside-source" else (inner, outer)
    before = _snapshot(outer)

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.reason == "source and destination directories overlap"
    assert _snapshot(outer) == before
    assert not (inner / "inner").exists()


def test_destination_directory_symlink_is_replaced_not_written_through(tmp_path: Path) -> None:
    source, destination = _roots(tmp_path)
    outside = tmp_path / "outside"
    outside.mkdir()
    outside.chmod(0o755)
    _write(source / "data" / "x.txt", "x")
    (source / "data").chmod(0o700)
    (destination / "data").symlink_to(outside, target_is_directory=True)

    outcome = mirror(_config(source, destination), MirrorRunOptions(delete_before_copy=False))

    assert outcome.success
    assert list(outside.iterdir()) == []
    assert stat.S_IMODE(outside.stat().st_mode) == 0o755
    assert not (destination / "data").is_symlink()
    assert (destination / "data" / "x.txt").read_text(encoding="utf-8") == "x"


def test_listing_failure_during_deletion_fails_the_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi")
    _write(destination / "locked" / "old.txt", "x")
    real_list_children = mirror_engine._list_children

    def failing_list_children(dir_path: Path):
        if Path(dir_path).name == "locked":
            raise TraversalError(f"Cannot list directory {dir_path}: permission denied")
        return real_list_children(dir_path)

    monkeypatch.setattr(mirror_engine, "_list_children", failing_list_children)

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.state is MirrorState.DELETING
    assert outcome.reason == "removing destination files failed"
    assert "locked" in (outcome.error or "")
    assert not (destination / "a.txt").exists()


def test_unreadable_source_file_fails_the_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source, destination = _roots(tmp_path)
    _write(source / "a.txt", "hi")
    _write(source / "unreadable.dat", "secret")
    real_copyfile = mirror_engine.shutil.copyfile

    def failing_copyfile(src, dst, *args, **kwargs):
        if Path(src).name == "unreadable.dat":
            raise PermissionError(13, "Permission denied", str(src))
        return real_copyfile(src, dst, *args, **kwargs)

    monkeypatch.setattr(mirror_engine.shutil, "copyfile", failing_copyfile)

    outcome = mirror(_config(source, destination))

    assert outcome.success is False
    assert outcome.state is MirrorState.COPYING
    assert outcome.reason == "copying files failed"
    assert "unreadable.dat" in (outcome.error or "")
    assert (destination / "a.txt").exists()
    assert sorted(path.name for path in destination.iterdir()) == ["a.txt"]
