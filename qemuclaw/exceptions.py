"""Custom exceptions for QemuClaw."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Invalid configuration value."""


class IllegalTransitionError(ManagerError):
    """A state machine was asked to move along an edge it does not have."""


# Resources


class NoFreePortError(ManagerError):
    pass


class ImageMissingError(ManagerError):
    pass


class QemuNotFoundError(ManagerError):
    pass


class NoImageReleaseError(ManagerError):
    pass


class NoImageAssetsError(ManagerError):
    pass


# Process lifecycle


class AlreadyRunningError(ManagerError):
    pass


class ImmediateExitError(ManagerError):
    """QEMU died inside the startup grace period."""

    def __init__(self, message: str, log_tail: str = "") -> None:
        super().__init__(f"{message}\n{log_tail}" if log_tail else message)
        self.log_tail = log_tail


class StartAbortedError(ManagerError):
    """A stop request arrived while the VM was still starting."""


class HealthTimeoutError(ManagerError):
    pass


# Connections and protocols


class ConnectExhaustedError(ManagerError):
    """Every dial attempt failed; ``__cause__`` holds the last underlying error."""


class NotConnectedError(ManagerError):
    pass


class NotReadyError(ManagerError):
    """The control channel has not finished capabilities negotiation."""


class CommandTimeoutError(ManagerError):
    pass


class ChannelClosedError(ManagerError):
    pass


class QMPCommandError(ManagerError):
    """The hypervisor answered a command with an error object."""

    def __init__(self, error_class: str, desc: str) -> None:
        super().__init__(f"QMP error: {error_class} - {desc}")
        self.error_class = error_class
        self.desc = desc


# Console automation


class NotAuthenticatedError(ManagerError):
    pass


class LoginAbortedError(ManagerError):
    pass


# I/O


class DownloadHTTPError(ManagerError):
    def __init__(self, url: str, status: Optional[int], reason: str = "") -> None:
        detail = f"HTTP {status}" if status is not None else "request failed"
        if reason:
            detail += f" {reason}"
        super().__init__(f"Download failed: {detail} ({url})")
        self.url = url
        self.status = status


class ExtractionError(ManagerError):
    pass


class ChecksumMismatchError(ManagerError):
    pass
