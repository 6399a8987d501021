"""Lifecycle stage broadcasting for QemuClaw."""

from __future__ import annotations

from typing import Callable, List, Optional

from qemuclaw.utils import log

StageListener = Callable[[str, str], None]


class StatusBroadcaster:
    """Fan out ``(stage, message)`` notifications to listeners."""

    def __init__(self) -> None:
        self.last_stage: Optional[str] = None
        self._listeners: List[StageListener] = []

    def add_listener(self, listener: StageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def update(self, stage: str, message: str) -> None:
        self.last_stage = stage
        log("DEBUG", f"Status: {stage} - {message}")
        for listener in list(self._listeners):
            try:
                listener(stage, message)
            except Exception as exc:
                log("WARN", f"Status listener failed on '{stage}': {exc}")

    def reset(self) -> None:
        self.last_stage = None
