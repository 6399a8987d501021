"""CLI entry points for QemuClaw."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import signal
import sys
from typing import List, Optional

from qemuclaw.config import SettingsStore, parse_env
from qemuclaw.constants import BROWSER_URL, DATA_DIR, HEALTH_DEFAULT_TIMEOUT, IMAGE_FILENAME, VM_DIR
from qemuclaw.exceptions import HealthTimeoutError, ManagerError, StartAbortedError
from qemuclaw.images import ImageDownloader
from qemuclaw.models import DownloadProgress, VMConfig
from qemuclaw.process import check_qemu_available, find_qemu_binary
from qemuclaw.supervisor import VMSupervisor
from qemuclaw.utils import log


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def print_progress(progress: DownloadProgress) -> None:
    bar_len = 30
    filled = bar_len * progress.percent // 100
    bar = "#" * filled + "-" * (bar_len - filled)
    total_mb = progress.total / (1024 * 1024)
    downloaded_mb = progress.downloaded / (1024 * 1024)
    end = "\n" if progress.percent >= 100 else ""
    print(
        f"\r  [{bar}] {progress.percent:3d}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
        f"({progress.speed:.1f} MiB/s) {progress.status}",
        end=end,
        flush=True,
    )


def print_startup_banner(cfg: VMConfig) -> None:
    lines = [
        f"  QemuClaw VM | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus}",
        f"  Gateway: {BROWSER_URL}",
    ]
    if cfg.shared_folder:
        lines.append(f"  Shared folder: {cfg.shared_folder}")
    border_len = max(len(line) for line in lines) + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def download_image(store: SettingsStore, downloader: Optional[ImageDownloader] = None) -> str:
    downloader = downloader or ImageDownloader()
    result = downloader.download_and_extract_image(VM_DIR, print_progress)
    store.set("current_vm_version", result.version)
    return result.version


async def run_vm(
    supervisor: VMSupervisor,
    cfg: VMConfig,
    quiet: bool = False,
    health_timeout: float = HEALTH_DEFAULT_TIMEOUT,
) -> int:
    """Start the VM, wait for the guest service and hold until a signal or VM exit."""
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def _on_stage(stage: str, message: str) -> None:
        log("INFO", f"[{stage}] {message}")
        if stage == "stopped":
            shutdown.set()

    def _on_console(data: bytes) -> None:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()

    supervisor.status.add_listener(_on_stage)
    if not quiet:
        supervisor.console.add_data_listener(_on_console)

    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, shutdown.set)
            installed.append(signum)

    stop_wait = asyncio.create_task(shutdown.wait())
    try:
        start_task = asyncio.create_task(supervisor.start(cfg))
        done, _ = await asyncio.wait({start_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        if start_task not in done:
            log("INFO", "Shutdown requested during startup")
            await supervisor.stop()
            with contextlib.suppress(StartAbortedError, ManagerError):
                await start_task
            return 130
        start_task.result()

        health_task = asyncio.create_task(supervisor.wait_for_guest_healthy(health_timeout))
        done, _ = await asyncio.wait({health_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        if health_task not in done:
            health_task.cancel()
            return 0
        try:
            health_task.result()
        except HealthTimeoutError as exc:
            log("WARN", f"{exc}; the VM keeps running")
        print_startup_banner(cfg)
        if supervisor.store is not None and not supervisor.store.get("onboarding_complete"):
            log("INFO", "First run: complete onboarding inside the VM console")
        await stop_wait
        return 0
    finally:
        stop_wait.cancel()
        for signum in installed:
            loop.remove_signal_handler(signum)
        supervisor.status.remove_listener(_on_stage)
        supervisor.console.remove_data_listener(_on_console)
        await supervisor.stop()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="qemuclaw", description="QemuClaw VM supervisor")
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Start the VM and keep it running until interrupted")
    run_p.add_argument("--quiet", action="store_true", help="Do not mirror the serial console to stdout")
    run_p.add_argument("--no-download", action="store_true", help="Fail instead of downloading a missing image")
    run_p.add_argument(
        "--health-timeout",
        type=float,
        default=HEALTH_DEFAULT_TIMEOUT,
        metavar="SECONDS",
        help="How long to wait for the guest service",
    )
    dl_p = sub.add_parser("download", help="Download the latest VM image")
    dl_p.add_argument("--force", action="store_true", help="Download even if an image is present")
    sub.add_parser("check-qemu", help="Report whether QEMU can be executed")
    sub.add_parser("show-config", help="Show resolved VM configuration")
    sub.add_parser("check-update", help="Check for a newer VM image release")
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    store = SettingsStore()
    try:
        cfg = parse_env(store)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    try:
        if args.command == "show-config":
            log("INFO", f"Data directory: {DATA_DIR}")
            show_config(cfg)
            return 0

        if args.command == "check-qemu":
            qemu = find_qemu_binary(cfg.qemu_path)
            ok, detail = check_qemu_available(qemu)
            if ok:
                log("SUCCESS", f"QEMU {detail} ({qemu})")
                return 0
            log("ERROR", f"QEMU not available: {detail}")
            return 1

        if args.command == "check-update":
            current = store.get("current_vm_version")
            latest = ImageDownloader().check_for_update(current)
            if latest is None:
                log("INFO", f"VM image is up to date ({current})")
            else:
                log("INFO", f"New VM image available: {latest} (installed: {current or 'none'})")
            return 0

        if args.command == "download":
            if (VM_DIR / IMAGE_FILENAME).exists() and not args.force:
                log("INFO", "VM image already present (use --force to re-download)")
                return 0
            version = download_image(store)
            log("SUCCESS", f"Downloaded VM image {version}")
            return 0

        # run
        if not store.has_config():
            store.save_config(cfg)
        supervisor = VMSupervisor(store=store, qemu_path=cfg.qemu_path)
        if not supervisor.image_path.exists():
            if args.no_download:
                log("ERROR", f"VM image not found at {supervisor.image_path}")
                return 1
            log("INFO", "VM image not found; downloading")
            download_image(store)
        return asyncio.run(run_vm(supervisor, cfg, quiet=args.quiet, health_timeout=args.health_timeout))
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
