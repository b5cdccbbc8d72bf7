from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class MirrorState(str, Enum):
    IDLE = "idle"
    CHECK_DST = "check-destination"
    DELETING = "deleting"
    CHECK_SRC = "check-source"
    COPYING = "copying"
    DONE = "done"


@dataclass(slots=True)
class MirrorStats:
    deleted: int = 0
    removal_failures: int = 0
    copied: int = 0
    directories_created: int = 0
    protected: int = 0


@dataclass(frozen=True, slots=True)
class MirrorRequest:
    source_root: Path
    destination_root: Path


@dataclass(frozen=True, slots=True)
class MirrorOutcome:
    success: bool
    state: MirrorState = MirrorState.DONE
    reason: str | None = None
    error: str | None = None
    stats: MirrorStats = field(default_factory=MirrorStats)

    @classmethod
    def failed(cls, reason: str, error: str | None = None, state: MirrorState = MirrorState.IDLE,
               stats: MirrorStats | None = None) -> "MirrorOutcome":
        return cls(success=False, state=state, reason=reason, error=error, stats=stats or MirrorStats())
