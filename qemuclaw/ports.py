"""Local TCP port allocation."""

from __future__ import annotations

import socket

from qemuclaw.constants import LOCALHOST, PORT_SCAN_RANGE
from qemuclaw.exceptions import NoFreePortError
from qemuclaw.utils import log


def port_is_free(port: int, host: str = LOCALHOST) -> bool:
    """Bind a probe listener on ``port`` and release it straight away."""
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        probe.bind((host, port))
        probe.listen(1)
    except OSError:
        return False
    finally:
        probe.close()
    return True


def find_free_port(start: int, host: str = LOCALHOST, count: int = PORT_SCAN_RANGE) -> int:
    """Return the first bindable port in ``[start, start + count)``.

    The port is released before returning, so another process may still
    grab it before QEMU binds; callers treat that as a startup failure.
    """
    for port in range(start, start + count):
        if port > 65535:
            break
        if port_is_free(port, host):
            log("DEBUG", f"Selected free port {port}")
            return port
    raise NoFreePortError(f"No free port found in range {start}-{start + count - 1}")
