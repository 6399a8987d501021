"""VM lifecycle management for QemuClaw."""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from qemuclaw.config import SettingsStore
from qemuclaw.console import ConsoleClient
from qemuclaw.constants import (
    BROWSER_URL,
    CONSOLE_PASSWORD,
    CONSOLE_USER,
    DATA_DIR,
    GRACEFUL_SHUTDOWN_TIMEOUT,
    GUEST_FORWARDS,
    HEALTH_DEFAULT_TIMEOUT,
    HEALTH_POLL_INTERVAL,
    HEALTH_REQUEST_TIMEOUT,
    HEALTH_URL,
    IMAGE_FILENAME,
    LOCALHOST,
    LOG_TAIL_CHARS,
    ONBOARD_COMMAND,
    RESTART_SETTLE,
    SERIAL_PORT_START,
    SHARE_MOUNT_TAG,
    STARTUP_GRACE,
    TERMINATE_TIMEOUT,
    UPDATE_COMMAND,
    USER_AGENT,
    VENDOR_DIR,
)
from qemuclaw.exceptions import (
    AlreadyRunningError,
    ConfigError,
    HealthTimeoutError,
    ImageMissingError,
    ImmediateExitError,
    StartAbortedError,
)
from qemuclaw.models import (
    SUPERVISOR_TRANSITIONS,
    PortForward,
    StatusSnapshot,
    SupervisorState,
    VMConfig,
    VMProcess,
    check_transition,
)
from qemuclaw.ports import find_free_port
from qemuclaw.process import QemuLauncher, ShutdownEscalation, check_qemu_available, find_qemu_binary
from qemuclaw.qmp import QMPClient
from qemuclaw.status import StatusBroadcaster
from qemuclaw.utils import ensure_directory, log, open_path, read_tail


def build_qemu_args(
    cfg: VMConfig,
    image: Path,
    serial_port: int,
    qmp_port: int,
    platform: str = sys.platform,
) -> List[str]:
    """Build the QEMU command line (without the executable)."""
    forwards = [PortForward(port, port) for port in GUEST_FORWARDS]
    user_net = "user," + ",".join(f"hostfwd=tcp::{pf.host_port}-:{pf.guest_port}" for pf in forwards)
    if cfg.shared_folder and platform == "win32":
        # No 9p on Windows hosts; QEMU's user-mode SMB exposes the folder at \\10.0.2.4\qemu
        user_net += f",smb={cfg.shared_folder}"

    args = [
        "-m", str(cfg.memory_mb),
        "-smp", str(cfg.cpus),
        "-hda", str(image),
        "-device", "virtio-rng-pci",
        "-net", "nic,model=virtio",
        "-net", user_net,
        "-display", "none",
        "-chardev", f"socket,id=serial0,host={LOCALHOST},port={serial_port},server=on,wait=off",
        "-serial", "chardev:serial0",
        "-chardev", f"socket,id=mon0,host={LOCALHOST},port={qmp_port},server=on,wait=off",
        "-mon", "chardev=mon0,mode=control",
    ]

    if cfg.shared_folder and platform != "win32":
        args.extend([
            "-virtfs",
            f"local,path={cfg.shared_folder},mount_tag={SHARE_MOUNT_TAG},"
            f"security_model=passthrough,id={SHARE_MOUNT_TAG}",
        ])

    # Accelerators are tried in order; tcg always works.
    if platform == "win32":
        args.extend(["-accel", "whpx,kernel-irqchip=off", "-accel", "hax", "-accel", "tcg"])
    elif platform == "darwin":
        args.extend(["-accel", "hvf", "-accel", "tcg"])
    else:
        args.extend(["-accel", "kvm", "-accel", "tcg"])
    return args


def fetch_health(url: str = HEALTH_URL, timeout: float = HEALTH_REQUEST_TIMEOUT) -> Dict[str, Any]:
    """GET the guest health endpoint; connection errors propagate to the caller."""
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as response:
            status = response.status
            body = response.read()
    except HTTPError as exc:
        status = exc.code
        body = exc.read() or b""
    healthy = 200 <= status < 300
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        data = {"status": "running"} if healthy else {}
    return {**data, "healthy": healthy}


class VMSupervisor:
    """Owns one QEMU process and the two sockets attached to it."""

    def __init__(
        self,
        data_dir: Path = DATA_DIR,
        store: Optional[SettingsStore] = None,
        launcher: Optional[QemuLauncher] = None,
        qmp: Optional[QMPClient] = None,
        console: Optional[ConsoleClient] = None,
        status: Optional[StatusBroadcaster] = None,
        qemu_path: Optional[str] = None,
        vendor_dir: Path = VENDOR_DIR,
        platform: str = sys.platform,
        startup_grace: float = STARTUP_GRACE,
        graceful_timeout: float = GRACEFUL_SHUTDOWN_TIMEOUT,
        terminate_timeout: float = TERMINATE_TIMEOUT,
        restart_settle: float = RESTART_SETTLE,
        health_url: str = HEALTH_URL,
        health_interval: float = HEALTH_POLL_INTERVAL,
    ) -> None:
        self.vm_dir = data_dir / "vm"
        self.logs_dir = data_dir / "logs"
        ensure_directory(self.vm_dir)
        ensure_directory(self.logs_dir)
        self.image_path = self.vm_dir / IMAGE_FILENAME
        self.store = store
        self.launcher = launcher or QemuLauncher()
        self.status = status or StatusBroadcaster()
        self.qmp = qmp or QMPClient()
        self.console = console or ConsoleClient(status=self.status)
        self.vendor_dir = vendor_dir
        self.platform = platform
        self.qemu_path = find_qemu_binary(qemu_path, vendor_dir, platform)
        self.startup_grace = startup_grace
        self.graceful_timeout = graceful_timeout
        self.terminate_timeout = terminate_timeout
        self.restart_settle = restart_settle
        self.health_url = health_url
        self.health_interval = health_interval

        self.state = SupervisorState.STOPPED
        self.vm: Optional[VMProcess] = None
        self.current_log: Optional[Path] = None
        self.last_shutdown: Optional[ShutdownEscalation] = None
        self._config: Optional[VMConfig] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stop_requested = False

    # ---- QEMU binary ----
    def set_qemu_path(self, custom: Optional[str]) -> None:
        self.qemu_path = find_qemu_binary(custom, self.vendor_dir, self.platform)

    def check_qemu_available(self):
        return check_qemu_available(self.qemu_path)

    # ---- state ----
    @property
    def is_running(self) -> bool:
        return self.vm is not None

    def _transition(self, new: SupervisorState) -> None:
        check_transition(self.state, new, SUPERVISOR_TRANSITIONS)
        log("DEBUG", f"Supervisor: {self.state.value} -> {new.value}")
        self.state = new

    def get_status(self) -> StatusSnapshot:
        vm = self.vm
        return StatusSnapshot(
            is_running=vm is not None,
            pid=vm.pid if vm else None,
            serial_port=vm.serial_port if vm else None,
            qmp_port=vm.qmp_port if vm else None,
            terminal_ready=self.console.logged_in,
            state=self.state,
        )

    # ---- start ----
    async def start(self, cfg: VMConfig) -> bool:
        if self.vm is not None or self.state != SupervisorState.STOPPED:
            raise AlreadyRunningError("VM is already running")
        if not self.image_path.exists():
            raise ImageMissingError(f"VM image not found at {self.image_path}. Please download it first.")

        self._stop_requested = False
        self._start_task = asyncio.create_task(self._start_sequence(cfg))
        try:
            await self._start_task
        except asyncio.CancelledError:
            if self._stop_requested:
                raise StartAbortedError("VM startup aborted by stop request") from None
            raise
        finally:
            self._start_task = None
        return True

    async def _start_sequence(self, cfg: VMConfig) -> None:
        self._transition(SupervisorState.STARTING)
        self.status.reset()
        self.status.update("starting", "Starting QEMU...")
        try:
            serial_port = find_free_port(SERIAL_PORT_START)
            qmp_port = find_free_port(serial_port + 1)

            log_path = self.logs_dir / f"vm-{int(time.time() * 1000)}.log"
            self.current_log = log_path
            args = build_qemu_args(cfg, self.image_path, serial_port, qmp_port, self.platform)
            log("INFO", f"Starting QEMU with args: {' '.join(args)}")
            process = await self.launcher.spawn(self.qemu_path, args, log_path)
            vm = VMProcess(process=process, serial_port=serial_port, qmp_port=qmp_port, args=args, log_path=log_path)
            self.vm = vm
            self._exit_task = asyncio.create_task(self._watch_exit(vm))
            log("INFO", f"QEMU started (PID {vm.pid}); serial={serial_port} qmp={qmp_port}")

            await self._until_exit(asyncio.sleep(self.startup_grace), "QEMU process exited immediately.")
            if vm.has_exited():
                raise ImmediateExitError("QEMU process exited immediately.", self._log_tail())

            self._transition(SupervisorState.CONNECTING)
            self.status.update("connecting", "Connecting to QEMU...")
            log("INFO", f"Connecting QMP on port {qmp_port}...")
            await self._until_exit(self.qmp.connect(qmp_port), "QEMU process exited during startup.")
            log("INFO", f"Connecting serial console on port {serial_port}...")
            await self._until_exit(self.console.connect(serial_port), "QEMU process exited during startup.")

            self._transition(SupervisorState.AUTHENTICATING)
            self.status.update("logging_in", "Logging in to the VM console...")
            await self._until_exit(
                self.console.auto_login(CONSOLE_USER, CONSOLE_PASSWORD),
                "QEMU process exited during login.",
            )

            self._transition(SupervisorState.RUNNING)
            self._config = cfg
            self.status.update("running", "VM is running")
            log("SUCCESS", "VM started and logged in")
        except BaseException:
            await self._abort_start()
            raise

    async def _until_exit(self, aw: Awaitable[Any], message: str) -> Any:
        """Await ``aw`` unless the QEMU process exits first."""
        work = asyncio.ensure_future(aw)
        exit_task = self._exit_task
        if exit_task is None:
            return await work
        try:
            done, _ = await asyncio.wait({work, exit_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        if work in done:
            return work.result()
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        raise ImmediateExitError(message, self._log_tail())

    def _log_tail(self) -> str:
        if self.current_log is None:
            return ""
        return read_tail(self.current_log, LOG_TAIL_CHARS)

    async def _abort_start(self) -> None:
        log("WARN", "Startup failed; cleaning up")
        self.qmp.disconnect()
        self.console.disconnect()
        vm = self.vm
        if vm is not None and not vm.has_exited():
            escalation = ShutdownEscalation(vm.process, None, 0, self.terminate_timeout)
            await escalation.run()
        self._release()
        if self.state != SupervisorState.STOPPED:
            self._transition(SupervisorState.STOPPED)
        self.status.update("stopped", "VM stopped")

    async def _watch_exit(self, vm: VMProcess) -> None:
        code = await vm.process.wait()
        log("INFO", f"VM process exited with code {code}")
        if self.vm is vm and self.state == SupervisorState.RUNNING:
            log("WARN", "VM exited while running; releasing resources")
            self.qmp.disconnect()
            self.console.disconnect()
            self._release()
            self._transition(SupervisorState.STOPPED)
            self.status.update("stopped", "VM stopped")

    def _release(self) -> None:
        """Forget the process and its ports."""
        exit_task = self._exit_task
        self._exit_task = None
        if exit_task is not None and exit_task is not asyncio.current_task() and not exit_task.done():
            exit_task.cancel()
        self.vm = None

    # ---- stop ----
    async def stop(self) -> None:
        if self._stop_task is not None and not self._stop_task.done():
            await asyncio.shield(self._stop_task)
            return
        if self._start_task is not None and not self._start_task.done():
            log("INFO", "Stop requested during startup; aborting start")
            self._stop_requested = True
            self._start_task.cancel()
            await asyncio.wait({self._start_task})
            return
        if self.vm is None:
            return
        self._stop_task = asyncio.create_task(self._stop_sequence(self.vm))
        await asyncio.shield(self._stop_task)

    async def _stop_sequence(self, vm: VMProcess) -> None:
        self._transition(SupervisorState.STOPPING)
        self.status.update("stopping", "Stopping VM...")
        graceful = self.qmp.shutdown if self.qmp.ready else None
        escalation = ShutdownEscalation(vm.process, graceful, self.graceful_timeout, self.terminate_timeout)
        self.last_shutdown = escalation
        try:
            await escalation.run()
        finally:
            self.qmp.disconnect()
            self.console.disconnect()
            self._release()
            self._transition(SupervisorState.STOPPED)
            self.status.update("stopped", "VM stopped")
            log("INFO", "VM stopped")

    async def restart(self, cfg: Optional[VMConfig] = None) -> bool:
        if cfg is None and self.store is not None:
            cfg = self.store.load_config()
        cfg = cfg or self._config
        if cfg is None:
            raise ConfigError("No saved configuration to restart with")
        await self.stop()
        await asyncio.sleep(self.restart_settle)
        return await self.start(cfg)

    # ---- guest ----
    async def get_guest_health(self) -> Dict[str, Any]:
        return await asyncio.to_thread(fetch_health, self.health_url)

    async def wait_for_guest_healthy(self, timeout: float = HEALTH_DEFAULT_TIMEOUT) -> Dict[str, Any]:
        """Poll the guest health endpoint until it reports success.

        Connection errors only mean the guest network is not up yet.
        """
        log("INFO", f"Waiting for guest service at {self.health_url}...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                health = await self.get_guest_health()
            except OSError as exc:
                log("DEBUG", f"Health check not ready: {exc}")
            else:
                if health.get("healthy"):
                    log("SUCCESS", "Guest service is ready")
                    return health
            if loop.time() + self.health_interval > deadline:
                raise HealthTimeoutError(f"Guest service did not become healthy within {timeout:g}s")
            await asyncio.sleep(self.health_interval)

    def run_onboarding(self) -> None:
        self.console.exec_command(ONBOARD_COMMAND)

    def update_guest_app(self) -> None:
        self.console.exec_command(UPDATE_COMMAND)

    # ---- shell requests ----
    def open_logs(self) -> None:
        open_path(str(self.logs_dir))

    def open_shared_folder(self) -> bool:
        cfg = self.store.load_config() if self.store is not None else self._config
        if cfg is None or cfg.shared_folder is None:
            return False
        open_path(str(cfg.shared_folder))
        return True

    def open_browser(self) -> None:
        open_path(BROWSER_URL)
