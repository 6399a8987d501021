"""Global constants and path configuration for QemuClaw."""

from __future__ import annotations

import os
import re
from pathlib import Path

# QEMUCLAW_DATA_DIR provides a single root for the boot image, run logs and settings.
_DATA_DIR = os.environ.get("QEMUCLAW_DATA_DIR")
if _DATA_DIR:
    DATA_DIR = Path(_DATA_DIR)
else:
    DATA_DIR = Path.home() / ".local" / "share" / "qemuclaw"
VM_DIR = DATA_DIR / "vm"
SETTINGS_PATH = DATA_DIR / "settings.yaml"
VENDOR_DIR = Path(os.environ.get("QEMUCLAW_VENDOR_DIR", Path(__file__).resolve().parent.parent / "vendor"))

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Boot image
IMAGE_FILENAME = "openclaw-headless.qcow2"
IMAGE_SUFFIX = ".qcow2"
CHECKSUM_SUFFIX = ".sha256"
SCRATCH_DIRNAME = "_download_temp"

# Port allocation
SERIAL_PORT_START = 14000
PORT_SCAN_RANGE = 100
LOCALHOST = "127.0.0.1"

# Guest forwards and health endpoint
GATEWAY_PORT = 18789
BRIDGE_PORT = 18790
GUEST_FORWARDS = (GATEWAY_PORT, BRIDGE_PORT)
HEALTH_URL = f"http://localhost:{GATEWAY_PORT}/health"
BROWSER_URL = f"http://localhost:{GATEWAY_PORT}"
HEALTH_POLL_INTERVAL = 2.0
HEALTH_REQUEST_TIMEOUT = 5.0
HEALTH_DEFAULT_TIMEOUT = 120.0
SHARE_MOUNT_TAG = "host_share"

# Supervisor timings (seconds)
STARTUP_GRACE = 2.0
GRACEFUL_SHUTDOWN_TIMEOUT = 15.0
TERMINATE_TIMEOUT = 5.0
RESTART_SETTLE = 3.0
LOG_TAIL_CHARS = 500

# Dialing shared by the control channel and the console
CONNECT_TIMEOUT = 5.0
CONNECT_RETRIES = 30
CONNECT_RETRY_DELAY = 2.0

# Control channel (QMP)
COMMAND_TIMEOUT = 10.0
QMP_NEGOTIATE = "qmp_capabilities"
QMP_POWERDOWN = "system_powerdown"
QMP_QUERY_STATUS = "query-status"
QMP_QUIT = "quit"

# Console automation
CONSOLE_USER = "node"
CONSOLE_PASSWORD = "openclaw"
CONSOLE_BUFFER_CAP = 4096
CONSOLE_BUFFER_TAIL = 2048
CONSOLE_NUDGE_INTERVAL = 10.0
CONSOLE_FIRST_NUDGE = 2.0
CONSOLE_SETTLE = 0.5
CONSOLE_EOL = "\r\n"
CONSOLE_TERM = "xterm-256color"
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
LOGIN_PROMPT = "login:"
PASSWORD_PROMPT = "assword:"
SHELL_PROMPTS = ("$", "#", "~]")
GUEST_APP_DIR = "/app"
ONBOARD_COMMAND = f"cd {GUEST_APP_DIR} && node dist/index.js onboard"
UPDATE_COMMAND = f"cd {GUEST_APP_DIR} && node dist/index.js update"

# Release source
GITHUB_API = "https://api.github.com"
RELEASE_REPO = os.environ.get("QEMUCLAW_RELEASE_REPO", "NewJerseyStyle/QemuClaw")
IMAGE_TAG_PREFIX = "vm-"
RELEASES_PER_PAGE = 30
RELEASES_MAX_PAGES = 5
SPLIT_PART_RE = re.compile(r"\.tar\.gz\.[a-z]+$")
USER_AGENT = "QemuClaw-VM-Manager"
DOWNLOAD_CHUNK = 1024 * 256  # 256 KiB
PROGRESS_INTERVAL = 0.5
HTTP_TIMEOUT = 60

# Defaults for VMConfig
DEFAULT_MEMORY_MB = 1024
DEFAULT_CPUS = 2
MIN_MEMORY_MB = 256
