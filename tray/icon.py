from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

import pystray
from PIL import Image, ImageDraw

from tray.app import Command
from tray.indicator import TOOLTIPS, Indicator, IndicatorStatus

COLORS: dict[IndicatorStatus, tuple[int, int, int]] = {
    IndicatorStatus.NORMAL: (46, 160, 67),
    IndicatorStatus.TOUCH_REQUIRED: (240, 180, 0),
    IndicatorStatus.NO_CARD: (128, 128, 128),
    IndicatorStatus.ERROR: (207, 34, 46),
    IndicatorStatus.RESTARTING: (56, 132, 244),
    IndicatorStatus.MANUAL_RESTART_REQUIRED: (130, 20, 30),
    IndicatorStatus.STOPPED: (70, 70, 70),
}


def render_icon(status: IndicatorStatus, size: int = 64) -> Image.Image:
    img = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    pad = size // 8
    draw.ellipse((pad, pad, size - pad, size - pad), fill=COLORS[status], outline=(255, 255, 255), width=2)
    if status is IndicatorStatus.TOUCH_REQUIRED:
        inner = size // 3
        draw.ellipse((inner, inner, size - inner, size - inner), fill=(255, 255, 255))
    return img


class TrayIcon(Indicator):
    def __init__(self, name: str = "yubikey-tray") -> None:
        super().__init__()
        self.logger = logging.getLogger("tray.icon")
        self.name = name
        self._icon: pystray.Icon | None = None
        self._images = {status: render_icon(status) for status in IndicatorStatus}

    def start(self, enqueue: Callable[[Any], None]) -> None:
        def _enqueue(cmd: Command):
            def _handler(icon, item):
                enqueue(cmd)

            return _handler

        menu = pystray.Menu(
            pystray.MenuItem(lambda item: TOOLTIPS[self.status], None, enabled=False),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Restart gpg-agent", _enqueue(Command.RESTART)),
            pystray.MenuItem("Stop gpg-agent", _enqueue(Command.STOP)),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Exit", _enqueue(Command.EXIT)),
        )
        self._icon = pystray.Icon(self.name, self._images[self.status], TOOLTIPS[self.status], menu)
        threading.Thread(target=self._icon.run, name="tray-icon", daemon=True).start()

    def show(self, status: IndicatorStatus) -> None:
        changed = status != self.status
        super().show(status)
        if self._icon is None or not changed:
            return
        self._icon.icon = self._images[status]
        self._icon.title = TOOLTIPS[status]
        self._icon.update_menu()

    def notify(self, title: str, message: str) -> None:
        if self._icon is None:
            self.logger.warning("%s: %s", title, message)
            return
        try:
            self._icon.notify(message, title)
        except NotImplementedError:
            self.logger.warning("%s: %s", title, message)

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None
