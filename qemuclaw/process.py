"""QEMU binary discovery, process spawning and the shutdown escalation chain."""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from qemuclaw.constants import GRACEFUL_SHUTDOWN_TIMEOUT, TERMINATE_TIMEOUT, VENDOR_DIR
from qemuclaw.exceptions import QemuNotFoundError
from qemuclaw.models import ShutdownPhase
from qemuclaw.utils import log, run

_VERSION_RE = re.compile(r"version\s+([\d.]+)")


def qemu_executable_name(platform: str = sys.platform) -> str:
    return "qemu-system-x86_64.exe" if platform == "win32" else "qemu-system-x86_64"


def find_qemu_binary(
    custom: Optional[str] = None,
    vendor_dir: Path = VENDOR_DIR,
    platform: str = sys.platform,
) -> str:
    """Resolve the QEMU executable.

    Order: a user-supplied path (the executable itself or a directory holding
    it), the bundled ``vendor/qemu`` copy, the usual Windows install
    locations, and finally the bare name for a ``PATH`` lookup.
    """
    exe = qemu_executable_name(platform)

    if custom:
        candidate = Path(custom)
        if candidate.is_file() and candidate.name == exe:
            return str(candidate)
        in_dir = candidate / exe
        if in_dir.is_file():
            return str(in_dir)
        log("WARN", f"Configured QEMU path {custom} does not contain {exe}; searching defaults")

    vendored = vendor_dir / "qemu" / exe
    if vendored.is_file():
        return str(vendored)

    if platform == "win32":
        for env_name in ("ProgramFiles", "ProgramFiles(x86)"):
            base = os.environ.get(env_name)
            if base:
                candidate = Path(base) / "qemu" / exe
                if candidate.is_file():
                    return str(candidate)

    return exe


def check_qemu_available(qemu_path: str) -> Tuple[bool, str]:
    """Return ``(True, version)`` if ``qemu --version`` works, else ``(False, reason)``."""
    if os.path.sep not in qemu_path and shutil.which(qemu_path) is None:
        return False, f"{qemu_path} not found on PATH"
    try:
        result = run([qemu_path, "--version"], check=False, capture_output=True, timeout=15)
    except (OSError, subprocess.TimeoutExpired) as exc:
        return False, str(exc)
    if result.returncode != 0:
        return False, (result.stderr or result.stdout or f"exit status {result.returncode}").strip()
    match = _VERSION_RE.search(result.stdout or "")
    return True, match.group(1) if match else "unknown"


class QemuLauncher:
    """Spawns QEMU with stdout and stderr both streamed into ``log_path``."""

    async def spawn(self, qemu_path: str, args: Sequence[str], log_path: Path) -> Any:
        with open(log_path, "wb") as log_file:
            try:
                return await asyncio.create_subprocess_exec(
                    qemu_path,
                    *args,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
            except FileNotFoundError as exc:
                raise QemuNotFoundError(f"QEMU executable not found: {qemu_path}") from exc


class ShutdownEscalation:
    """Graceful request, then SIGTERM, then SIGKILL.

    Each phase waits on the same process-exit future, so an exit at any
    point ends the chain before the next signal is sent. ``graceful`` is a
    best-effort coroutine factory (the QMP power-down); its outcome never
    changes the timers.
    """

    def __init__(
        self,
        process: Any,
        graceful: Optional[Callable[[], Awaitable[Any]]] = None,
        graceful_timeout: float = GRACEFUL_SHUTDOWN_TIMEOUT,
        terminate_timeout: float = TERMINATE_TIMEOUT,
    ) -> None:
        self.process = process
        self.graceful = graceful
        self.graceful_timeout = graceful_timeout
        self.terminate_timeout = terminate_timeout
        self.phase: Optional[ShutdownPhase] = None
        self.history: List[ShutdownPhase] = []
        self._graceful_task: Optional[asyncio.Future] = None

    def _enter(self, phase: ShutdownPhase) -> ShutdownPhase:
        self.phase = phase
        self.history.append(phase)
        return phase

    async def run(self) -> ShutdownPhase:
        exit_waiter = asyncio.ensure_future(self.process.wait())
        try:
            self._enter(ShutdownPhase.GRACEFUL)
            if self.graceful is not None:
                log("INFO", "Sending QMP system_powerdown...")
                self._graceful_task = asyncio.ensure_future(self.graceful())
                self._graceful_task.add_done_callback(_log_graceful_result)
            if await _exited_within(exit_waiter, self.graceful_timeout):
                return self._enter(ShutdownPhase.EXITED)

            self._enter(ShutdownPhase.SIGNALING)
            log("WARN", "Graceful shutdown timeout, sending SIGTERM...")
            with contextlib.suppress(ProcessLookupError):
                self.process.terminate()
            if await _exited_within(exit_waiter, self.terminate_timeout):
                return self._enter(ShutdownPhase.EXITED)

            self._enter(ShutdownPhase.KILLING)
            log("WARN", "SIGTERM timeout, sending SIGKILL...")
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await exit_waiter
            return self._enter(ShutdownPhase.EXITED)
        finally:
            if not exit_waiter.done():
                exit_waiter.cancel()


async def _exited_within(exit_waiter: asyncio.Future, timeout: float) -> bool:
    done, _ = await asyncio.wait({exit_waiter}, timeout=timeout)
    return bool(done)


def _log_graceful_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log("DEBUG", f"Graceful power-down request failed: {exc}")
