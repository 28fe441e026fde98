from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum


class IndicatorStatus(str, Enum):
    NORMAL = "normal"
    TOUCH_REQUIRED = "touch_required"
    NO_CARD = "no_card"
    ERROR = "error"
    RESTARTING = "restarting"
    MANUAL_RESTART_REQUIRED = "manual_restart_required"
    STOPPED = "stopped"


TOOLTIPS: dict[IndicatorStatus, str] = {
    IndicatorStatus.NORMAL: "YubiKey: ready",
    IndicatorStatus.TOUCH_REQUIRED: "YubiKey: touch required",
    IndicatorStatus.NO_CARD: "YubiKey: no card",
    IndicatorStatus.ERROR: "YubiKey: gpg-agent not responding",
    IndicatorStatus.RESTARTING: "YubiKey: restarting gpg-agent...",
    IndicatorStatus.MANUAL_RESTART_REQUIRED: "YubiKey: manual restart required",
    IndicatorStatus.STOPPED: "YubiKey: stopped",
}


class Indicator(ABC):
    """Where the tray app reports state; subclasses render it."""

    def __init__(self) -> None:
        self.status = IndicatorStatus.NORMAL

    def show(self, status: IndicatorStatus) -> None:
        self.status = status

    @abstractmethod
    def notify(self, title: str, message: str) -> None: ...

    def start(self, enqueue) -> None:
        pass

    def stop(self) -> None:
        pass


class LogIndicator(Indicator):
    def __init__(self) -> None:
        super().__init__()
        self.logger = logging.getLogger("tray.indicator")

    def show(self, status: IndicatorStatus) -> None:
        if status != self.status:
            self.logger.info("indicator: %s", TOOLTIPS[status])
        super().show(status)

    def notify(self, title: str, message: str) -> None:
        self.logger.warning("%s: %s", title, message)
