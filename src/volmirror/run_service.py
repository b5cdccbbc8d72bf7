from __future__ import annotations

from concurrent.futures import Future
import logging
from pathlib import Path
import threading
import traceback
from typing import Mapping

from volmirror.config import MirrorConfig, resolve_config
from volmirror.mirror_engine import MirrorRunOptions, mirror
from volmirror.models import MirrorOutcome
from volmirror.notifier import LoggingNotifier, Notifier


EXIT_SUCCESS = 0
EXIT_MIRROR_FAILED = 1
EXIT_INVALID_CONFIG = 3

BUSY_REASON = "a mirror is already in progress"
UNEXPECTED_REASON = "unexpected error, see log for details"


class MirrorService:
    """Runs mirrors in the background, at most one at a time.

    ``request_mirror`` returns immediately with a future that is fulfilled
    exactly once with the run's ``MirrorOutcome``. A request made while a
    run is in flight is rejected with an already-completed failed outcome.
    Runs cannot be cancelled and have no timeout.
    """

    def __init__(
        self,
        config: MirrorConfig,
        options: MirrorRunOptions | None = None,
        notifier: Notifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.options = options or MirrorRunOptions()
        self.log = logger or logging.getLogger("volmirror.run")
        self.notifier = notifier or LoggingNotifier()

        self._lock = threading.Lock()
        self._run_in_progress = False

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._run_in_progress

    def request_mirror(self) -> Future[MirrorOutcome]:
        future: Future[MirrorOutcome] = Future()

        with self._lock:
            if self._run_in_progress:
                rejected = True
            else:
                rejected = False
                self._run_in_progress = True

        if rejected:
            self.log.warning("Mirror request rejected: another mirror is in progress")
            outcome = MirrorOutcome.failed(BUSY_REASON)
            self._notify_finished(outcome)
            future.set_result(outcome)
            return future

        future.set_running_or_notify_cancel()
        threading.Thread(target=self._worker, args=(future,), name="volmirror-run", daemon=True).start()
        return future

    def _worker(self, future: Future[MirrorOutcome]) -> None:
        try:
            self._notify_started()
            outcome = mirror(self.config, self.options)
        except Exception:
            self.log.error("Unhandled error during mirror:\n%s", traceback.format_exc())
            outcome = MirrorOutcome.failed(UNEXPECTED_REASON, error=traceback.format_exc(limit=1))
        finally:
            with self._lock:
                self._run_in_progress = False

        self._notify_finished(outcome)
        future.set_result(outcome)

    def _notify_started(self) -> None:
        try:
            self.notifier.mirror_started(self.config)
        except Exception:
            self.log.warning("Notifier failed on start:\n%s", traceback.format_exc())

    def _notify_finished(self, outcome: MirrorOutcome) -> None:
        try:
            self.notifier.mirror_finished(outcome)
        except Exception:
            self.log.warning("Notifier failed on finish:\n%s", traceback.format_exc())


def run_mirror(
    config: MirrorConfig,
    options: MirrorRunOptions | None = None,
    notifier: Notifier | None = None,
    logger: logging.Logger | None = None,
) -> tuple[int, MirrorOutcome]:
    service = MirrorService(config, options=options, notifier=notifier, logger=logger)
    outcome = service.request_mirror().result()
    exit_code = EXIT_SUCCESS if outcome.success else EXIT_MIRROR_FAILED
    return exit_code, outcome


def run_mirror_job(
    config_path: Path | None = None,
    delete_before_copy: bool = True,
    notifier: Notifier | None = None,
    logger: logging.Logger | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[int, MirrorOutcome | None]:
    log = logger or logging.getLogger("volmirror.run")

    try:
        config = resolve_config(config_path, environ)
    except Exception as exc:
        log.error("Config error: %s", exc)
        return EXIT_INVALID_CONFIG, None

    return run_mirror(
        config,
        options=MirrorRunOptions(delete_before_copy=delete_before_copy),
        notifier=notifier,
        logger=log,
    )
