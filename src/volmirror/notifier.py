from __future__ import annotations

import logging
import sys
from typing import Callable, Protocol, TextIO

from volmirror.config import MirrorConfig
from volmirror.models import MirrorOutcome


STARTED_TITLE = "Copying server files..."
STARTED_WARNING = "Do not add any modifications to the server files while copying!"
COMPLETED_MESSAGE = "Copying has been completed!"
FAILED_MESSAGE = "Copying has failed!"


class Notifier(Protocol):
    def mirror_started(self, config: MirrorConfig) -> None: ...

    def mirror_finished(self, outcome: MirrorOutcome) -> None: ...


def format_started(config: MirrorConfig) -> str:
    keep_files = "\n".join(f"  {entry}" for entry in config.keep_list.entries) or "  (none)"
    return (
        f"{STARTED_TITLE}\n"
        f"{STARTED_WARNING}\n"
        f"Source Server: {config.source_name}\n"
        f"Destination Server: {config.destination_name}\n"
        f"Keep Files ({config.keep_list.match}):\n{keep_files}"
    )


def format_finished(outcome: MirrorOutcome) -> str:
    if outcome.success:
        return COMPLETED_MESSAGE
    if outcome.reason:
        return f"{FAILED_MESSAGE} ({outcome.reason})"
    return FAILED_MESSAGE


class LoggingNotifier:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger("volmirror.notify")

    def mirror_started(self, config: MirrorConfig) -> None:
        self.log.info(
            "%s source=%s destination=%s keep=%s",
            STARTED_TITLE,
            config.source_name,
            config.destination_name,
            list(config.keep_list.entries),
        )

    def mirror_finished(self, outcome: MirrorOutcome) -> None:
        if outcome.success:
            self.log.info("%s", format_finished(outcome))
        else:
            self.log.error("%s", format_finished(outcome))


class ConsoleNotifier:
    def __init__(self, stream: TextIO | None = None, error_stream: TextIO | None = None) -> None:
        self._stream = stream
        self._error_stream = error_stream

    def mirror_started(self, config: MirrorConfig) -> None:
        print(format_started(config), file=self._stream or sys.stdout)

    def mirror_finished(self, outcome: MirrorOutcome) -> None:
        if outcome.success:
            stats = outcome.stats
            print(
                f"{format_finished(outcome)} deleted={stats.deleted} copied={stats.copied} "
                f"directories={stats.directories_created} protected={stats.protected}",
                file=self._stream or sys.stdout,
            )
        else:
            print(format_finished(outcome), file=self._error_stream or sys.stderr)


class CallbackNotifier:
    """Send both messages as plain text to ``send``, e.g. a tray balloon."""

    def __init__(self, send: Callable[[str], None]) -> None:
        self._send = send

    def mirror_started(self, config: MirrorConfig) -> None:
        self._send(f"{STARTED_TITLE}\n{config.source_name} -> {config.destination_name}")

    def mirror_finished(self, outcome: MirrorOutcome) -> None:
        self._send(format_finished(outcome))
