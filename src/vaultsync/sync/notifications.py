"""Summary notifications emitted by the sync engine.

This module provides:
- NotificationType: Severity of a notification
- Notification: One user-facing summary
- Notifier: Callback type the host supplies
- log_notifier: Notifier that writes to the log

Each public sync operation emits exactly one notification describing its
terminal outcome.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CONFLICT = auto()


@dataclass
class Notification:
    """Represents a notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


Notifier = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationType.INFO: logging.INFO,
    NotificationType.WARNING: logging.WARNING,
    NotificationType.ERROR: logging.ERROR,
    NotificationType.CONFLICT: logging.WARNING,
}


def log_notifier(notification: Notification) -> None:
    """Notifier that writes notifications to the log."""
    logger.log(
        _LOG_LEVELS[notification.type], f"{notification.title}: {notification.message}"
    )
