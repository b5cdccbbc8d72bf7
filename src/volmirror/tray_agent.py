from __future__ import annotations

import argparse
from concurrent.futures import Future
import logging
from logging.handlers import RotatingFileHandler
import os
from pathlib import Path
import subprocess
import sys

from PIL import Image, ImageDraw
import pystray

from volmirror.config import MirrorConfig, resolve_config
from volmirror.models import MirrorOutcome
from volmirror.notifier import CallbackNotifier
from volmirror.run_service import EXIT_INVALID_CONFIG, MirrorService


def default_state_dir() -> Path:
    return Path.home() / ".volmirror"


def default_log_file() -> Path:
    return default_state_dir() / "agent.log"


class TrayAgent:
    def __init__(self, config: MirrorConfig, log_file: Path | None = None) -> None:
        self.config = config
        self.log_file = log_file or default_log_file()

        self.logger = logging.getLogger("volmirror")
        self.logger.setLevel(logging.INFO)
        self._configure_logging()

        self.service = MirrorService(
            config,
            notifier=CallbackNotifier(self._notify),
            logger=logging.getLogger("volmirror.agent"),
        )
        self.icon = pystray.Icon("volmirror-agent", self._create_icon(), "volmirror", self._build_menu())

    def _configure_logging(self) -> None:
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)

        file_handler = RotatingFileHandler(self.log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        self.logger.addHandler(file_handler)

    def _create_icon(self) -> Image.Image:
        image = Image.new("RGBA", (64, 64), (28, 28, 30, 255))
        draw = ImageDraw.Draw(image)
        draw.rectangle((6, 14, 34, 50), outline=(120, 180, 255, 255), width=3)
        draw.rectangle((30, 14, 58, 50), fill=(120, 180, 255, 255))
        draw.polygon([(22, 26), (34, 32), (22, 38)], fill=(255, 255, 255, 255))
        return image

    def _build_menu(self) -> pystray.Menu:
        return pystray.Menu(
            pystray.MenuItem(
                lambda _: "Mirror running..." if self.service.busy else "Mirror now",
                self._menu_mirror_now,
                enabled=lambda _: not self.service.busy,
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Open log", self._menu_open_log),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Quit", self._menu_quit),
        )

    def run(self) -> None:
        self.logger.info(
            "Agent starting: source=%s destination=%s",
            self.config.source_root,
            self.config.destination_root,
        )
        self.icon.run()

    def stop(self) -> None:
        self.logger.info("Agent stopping")
        self.icon.stop()

    def _notify(self, message: str) -> None:
        try:
            self.icon.notify(message, "volmirror")
        except Exception:
            self.logger.debug("Tray notification unavailable")

    def _on_mirror_done(self, future: Future[MirrorOutcome]) -> None:
        outcome = future.result()
        if not outcome.success:
            self.logger.error("Mirror failed: %s", outcome.error or outcome.reason)
        self.icon.update_menu()

    def _menu_mirror_now(self, icon: pystray.Icon, item: pystray.MenuItem) -> None:
        future = self.service.request_mirror()
        self.icon.update_menu()
        future.add_done_callback(self._on_mirror_done)

    def _menu_open_log(self, icon: pystray.Icon, item: pystray.MenuItem) -> None:
        try:
            if sys.platform == "win32":
                os.startfile(self.log_file)  # type: ignore[attr-defined]
            elif sys.platform == "darwin":
                subprocess.Popen(["open", str(self.log_file)])
            else:
                subprocess.Popen(["xdg-open", str(self.log_file)])
        except OSError:
            self._notify(f"Open failed: {self.log_file}")

    def _menu_quit(self, icon: pystray.Icon, item: pystray.MenuItem) -> None:
        self.stop()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="volmirror-agent", description="volmirror task tray agent")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = resolve_config(args.config)
    except Exception as exc:
        print(f"Invalid config: {exc}", file=sys.stderr)
        return EXIT_INVALID_CONFIG
    agent = TrayAgent(config=config, log_file=args.log_file)
    agent.run()
    return 0
