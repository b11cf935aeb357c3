"""Operator notifications.

Components that report an outcome take a :class:`Notifier` explicitly instead
of reaching for shared listener state. The package ships a logging-backed
notifier for the CLI; other front-ends pass their own implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from . import log
from .constants import Severity


@dataclass(frozen=True)
class Notification:
    """A single message destined for the operator."""

    title: str
    description: str
    severity: Severity = Severity.INFO


class Notifier(Protocol):
    """Anything able to display a :class:`Notification`. Return values are ignored."""

    def notify(self, notification: Notification) -> None:
        ...


_LEVELS = {
    Severity.SUCCESS: logging.INFO,
    Severity.INFO: logging.INFO,
    Severity.ERROR: logging.ERROR,
}


class LoggingNotifier:
    """Notifier that writes every notification to the package logger."""

    def __init__(self, logger: logging.Logger = log) -> None:
        self._logger = logger

    def notify(self, notification: Notification) -> None:
        self._logger.log(
            _LEVELS.get(notification.severity, logging.INFO),
            "%s: %s",
            notification.title,
            notification.description,
        )
