from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Mapping

import json
import yaml

from volmirror.keep_list import KEEP_MATCH_EXACT, KEEP_MATCH_MODES, KeepList, build_keep_list


DEFAULT_BASE_DIR = Path("/var/lib/pterodactyl/volumes")


@dataclass(frozen=True, slots=True)
class MirrorConfig:
    source_root: Path
    destination_root: Path
    keep_list: KeepList = field(default_factory=KeepList)
    source_label: str | None = None
    destination_label: str | None = None

    @property
    def source_name(self) -> str:
        return self.source_label or str(self.source_root)

    @property
    def destination_name(self) -> str:
        return self.destination_label or str(self.destination_root)


def _as_path(value: Any, field_name: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string path")
    return Path(value).expanduser()


def _as_name(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value.strip()


def _as_list_of_strings(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ValueError(f"{field_name} must be a list of strings")
    return value


def _as_keep_match(value: Any, field_name: str) -> str:
    if value is None:
        return KEEP_MATCH_EXACT
    if value not in KEEP_MATCH_MODES:
        raise ValueError(f"{field_name} must be one of: {', '.join(KEEP_MATCH_MODES)}")
    return value


def _load_raw_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ValueError(f"Config file does not exist: {config_path}")

    suffix = config_path.suffix.lower()
    text = config_path.read_text(encoding="utf-8")
    if suffix in {".yml", ".yaml"}:
        loaded = yaml.safe_load(text)
    elif suffix == ".json":
        loaded = json.loads(text)
    else:
        raise ValueError("Config file must be .yaml/.yml or .json")

    if not isinstance(loaded, dict):
        raise ValueError("Config root must be an object")
    return loaded


def _roots_from_raw(raw: Mapping[str, Any]) -> tuple[Path, Path, str | None, str | None]:
    if raw.get("source") is not None or raw.get("destination") is not None:
        return (
            _as_path(raw.get("source"), "source"),
            _as_path(raw.get("destination"), "destination"),
            None,
            None,
        )

    raw_base = raw.get("baseDir")
    base_dir = _as_path(raw_base, "baseDir") if raw_base is not None else DEFAULT_BASE_DIR
    source_server = _as_name(raw.get("sourceServer"), "sourceServer")
    destination_server = _as_name(raw.get("destinationServer"), "destinationServer")
    return base_dir / source_server, base_dir / destination_server, source_server, destination_server


def load_config(config_path: Path) -> MirrorConfig:
    raw = _load_raw_config(config_path)
    source_root, destination_root, source_label, destination_label = _roots_from_raw(raw)

    keep_files = _as_list_of_strings(raw.get("keepFiles"), "keepFiles")
    keep_match = _as_keep_match(raw.get("keepMatch"), "keepMatch")

    return MirrorConfig(
        source_root=source_root,
        destination_root=destination_root,
        keep_list=build_keep_list(keep_files, match=keep_match),
        source_label=source_label,
        destination_label=destination_label,
    )


def config_from_env(environ: Mapping[str, str] | None = None) -> MirrorConfig:
    env = os.environ if environ is None else environ

    source_server = env.get("SRC_SERVER_UUID", "").strip()
    if not source_server:
        raise ValueError("SRC_SERVER_UUID must be set to the source server UUID")

    destination_server = env.get("DST_SERVER_UUID", "").strip()
    if not destination_server:
        raise ValueError("DST_SERVER_UUID must be set to the destination server UUID")

    base_dir = Path(env.get("SERVER_BASE_DIR") or DEFAULT_BASE_DIR).expanduser()
    keep_files = env.get("KEEP_FILES", "").split(",")
    keep_match = _as_keep_match(env.get("KEEP_MATCH") or None, "KEEP_MATCH")

    return MirrorConfig(
        source_root=base_dir / source_server,
        destination_root=base_dir / destination_server,
        keep_list=build_keep_list(keep_files, match=keep_match),
        source_label=source_server,
        destination_label=destination_server,
    )


def resolve_config(config_path: Path | None, environ: Mapping[str, str] | None = None) -> MirrorConfig:
    if config_path is not None:
        return load_config(config_path)
    return config_from_env(environ)
