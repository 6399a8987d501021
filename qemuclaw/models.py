"""Data models for QemuClaw."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional

from qemuclaw.constants import (
    CHECKSUM_SUFFIX,
    DEFAULT_CPUS,
    DEFAULT_MEMORY_MB,
    IMAGE_SUFFIX,
    MIN_MEMORY_MB,
    SPLIT_PART_RE,
)
from qemuclaw.exceptions import ConfigError, IllegalTransitionError


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass
class VMConfig:
    memory_mb: int = DEFAULT_MEMORY_MB
    cpus: int = DEFAULT_CPUS
    shared_folder: Optional[Path] = None
    auto_start: bool = False
    qemu_path: Optional[str] = None

    def __post_init__(self):
        if self.memory_mb < MIN_MEMORY_MB:
            raise ConfigError(f"memory_mb must be >= {MIN_MEMORY_MB} (got {self.memory_mb})")
        if self.cpus < 1:
            raise ConfigError(f"cpus must be >= 1 (got {self.cpus})")
        if self.shared_folder is not None and not isinstance(self.shared_folder, Path):
            self.shared_folder = Path(self.shared_folder)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_mb": self.memory_mb,
            "cpus": self.cpus,
            "shared_folder": str(self.shared_folder) if self.shared_folder else None,
            "auto_start": self.auto_start,
            "qemu_path": self.qemu_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMConfig":
        try:
            return cls(
                memory_mb=int(data.get("memory_mb", DEFAULT_MEMORY_MB)),
                cpus=int(data.get("cpus", DEFAULT_CPUS)),
                shared_folder=data.get("shared_folder") or None,
                auto_start=bool(data.get("auto_start", False)),
                qemu_path=data.get("qemu_path") or None,
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid stored configuration: {exc}") from exc


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    RUNNING = "running"
    STOPPING = "stopping"


# Every non-terminal state may also fall back to STOPPED on error.
SUPERVISOR_TRANSITIONS: Dict[SupervisorState, FrozenSet[SupervisorState]] = {
    SupervisorState.STOPPED: frozenset({SupervisorState.STARTING}),
    SupervisorState.STARTING: frozenset({SupervisorState.CONNECTING, SupervisorState.STOPPED}),
    SupervisorState.CONNECTING: frozenset({SupervisorState.AUTHENTICATING, SupervisorState.STOPPED}),
    SupervisorState.AUTHENTICATING: frozenset({SupervisorState.RUNNING, SupervisorState.STOPPED}),
    SupervisorState.RUNNING: frozenset({SupervisorState.STOPPING, SupervisorState.STOPPED}),
    SupervisorState.STOPPING: frozenset({SupervisorState.STOPPED}),
}


class LoginState(str, Enum):
    IDLE = "idle"
    WAITING_LOGIN = "waiting_login"
    WAITING_PASSWORD = "waiting_password"
    WAITING_SHELL = "waiting_shell"
    CONFIGURING = "configuring"
    READY = "ready"


LOGIN_TRANSITIONS: Dict[LoginState, LoginState] = {
    LoginState.IDLE: LoginState.WAITING_LOGIN,
    LoginState.WAITING_LOGIN: LoginState.WAITING_PASSWORD,
    LoginState.WAITING_PASSWORD: LoginState.WAITING_SHELL,
    LoginState.WAITING_SHELL: LoginState.CONFIGURING,
    LoginState.CONFIGURING: LoginState.READY,
}


def check_transition(current: Enum, new: Enum, table: Dict) -> None:
    """Raise IllegalTransitionError unless ``table`` allows ``current -> new``."""
    allowed = table.get(current)
    if allowed is None:
        ok = False
    elif isinstance(allowed, frozenset):
        ok = new in allowed
    else:
        ok = new == allowed
    if not ok:
        raise IllegalTransitionError(f"Illegal transition {current.value} -> {new.value}")


class ShutdownPhase(str, Enum):
    GRACEFUL = "graceful"
    SIGNALING = "signaling"
    KILLING = "killing"
    EXITED = "exited"


@dataclass
class VMProcess:
    """Owned QEMU process handle plus the resources allocated for it."""

    process: Any
    serial_port: int
    qmp_port: int
    args: List[str]
    log_path: Path

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def has_exited(self) -> bool:
        return self.process.returncode is not None


@dataclass
class StatusSnapshot:
    is_running: bool
    pid: Optional[int]
    serial_port: Optional[int]
    qmp_port: Optional[int]
    terminal_ready: bool
    state: SupervisorState = SupervisorState.STOPPED


@dataclass
class ReleaseAsset:
    name: str
    size: int
    url: str

    @property
    def is_image(self) -> bool:
        return self.name.endswith(IMAGE_SUFFIX)

    @property
    def is_split_part(self) -> bool:
        return SPLIT_PART_RE.search(self.name) is not None

    @property
    def is_checksum(self) -> bool:
        return self.name.endswith(CHECKSUM_SUFFIX)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReleaseAsset":
        return cls(
            name=data["name"],
            size=int(data.get("size") or 0),
            url=data["browser_download_url"],
        )


@dataclass
class Release:
    tag: str
    assets: List[ReleaseAsset] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Release":
        return cls(
            tag=data.get("tag_name") or "",
            assets=[ReleaseAsset.from_api(a) for a in data.get("assets", [])],
        )


@dataclass
class DownloadProgress:
    downloaded: int
    total: int
    percent: int
    speed: float  # MiB/s
    status: str = ""


@dataclass
class ImageResult:
    version: str
    image_path: Path
