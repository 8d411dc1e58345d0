"""Progress sinks receiving per-action events from executors.

For every action a sink sees ``on_start``, then any number of
``on_progress`` calls, then exactly one ``on_complete``. Events for different
actions interleave; key off ``action.repo`` rather than arrival order.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .auth import mask_token_in_url
from .models import Action, ActionResult

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def on_start(self, action: Action) -> None: ...

    def on_progress(self, action: Action, message: str, fraction: float) -> None: ...

    def on_complete(self, result: ActionResult) -> None: ...


class NoopProgressSink:
    """Discards all events. Injected when the caller passes no sink."""

    def on_start(self, action: Action) -> None:
        pass

    def on_progress(self, action: Action, message: str, fraction: float) -> None:
        pass

    def on_complete(self, result: ActionResult) -> None:
        pass


class LoggingProgressSink:
    """Writes progress events to a logger."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def on_start(self, action: Action) -> None:
        self.log.info(
            "[%s] %s (%s) from %s",
            action.type,
            action.repo.name,
            action.repo.target_path,
            mask_token_in_url(action.repo.clone_url) or "-",
        )

    def on_progress(self, action: Action, message: str, fraction: float) -> None:
        self.log.debug("[%s] %s: %s (%.0f%%)", action.type, action.repo.name, message, fraction * 100)

    def on_complete(self, result: ActionResult) -> None:
        action = result.action
        if result.failed:
            self.log.warning("[%s] %s failed: %s", action.type, action.repo.name, result.error)
        else:
            self.log.info("[%s] %s: %s", action.type, action.repo.name, result.message)
