"""Shared test fixtures: fake QEMU processes and in-process QMP/serial servers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from qemuclaw.constants import LOCALHOST
from qemuclaw.models import VMConfig


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process``."""

    def __init__(self, pid: int = 4242, exit_on_terminate: bool = True, exit_on_kill: bool = True) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.exit_on_terminate = exit_on_terminate
        self.exit_on_kill = exit_on_kill
        self.signals: List[str] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        if self.exit_on_kill:
            self.exit(-9)


class FakeLauncher:
    """Records spawn calls and hands out FakeProcess objects."""

    def __init__(self, log_text: str = "", exit_immediately: Optional[int] = None, **process_kw: Any) -> None:
        self.log_text = log_text
        self.exit_immediately = exit_immediately
        self.process_kw = process_kw
        self.calls: List[Dict[str, Any]] = []
        self.processes: List[FakeProcess] = []

    async def spawn(self, qemu_path: str, args, log_path: Path) -> FakeProcess:
        log_path.write_text(self.log_text)
        self.calls.append({"qemu_path": qemu_path, "args": list(args), "log_path": log_path})
        proc = FakeProcess(pid=4242 + len(self.processes), **self.process_kw)
        if self.exit_immediately is not None:
            proc.exit(self.exit_immediately)
        self.processes.append(proc)
        return proc


class FakeQMPServer:
    """Minimal QMP endpoint: greets, acknowledges negotiation, answers via ``responder``."""

    def __init__(self, greet: bool = True, negotiate: bool = True) -> None:
        self.greet = greet
        self.negotiate = negotiate
        self.responder: Optional[Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = lambda msg: {"return": {}}
        self.received: List[Dict[str, Any]] = []
        self.writers: List[asyncio.StreamWriter] = []
        self.server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, LOCALHOST, 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        if self.greet:
            self.send({"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}})
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = json.loads(line)
                self.received.append(msg)
                if msg.get("execute") == "qmp_capabilities":
                    if self.negotiate:
                        self.send({"return": {}})
                    continue
                reply = self.responder(msg) if self.responder else None
                if reply is not None:
                    self.send({**reply, "id": msg["id"]})
        except (ConnectionError, asyncio.CancelledError):
            pass

    def commands(self) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("execute") != "qmp_capabilities"]

    def send(self, msg: Dict[str, Any]) -> None:
        for writer in self.writers:
            writer.write(json.dumps(msg).encode("utf-8") + b"\n")

    async def drop_clients(self) -> None:
        for writer in self.writers:
            writer.close()
        self.writers = []

    async def close(self) -> None:
        await self.drop_clients()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


class FakeSerialServer:
    """Raw byte endpoint that records everything the client writes."""

    def __init__(self) -> None:
        self.data = b""
        self.writers: List[asyncio.StreamWriter] = []
        self.server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, LOCALHOST, 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                self.data += chunk
        except (ConnectionError, asyncio.CancelledError):
            pass

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def send(self, text: str) -> None:
        for writer in self.writers:
            writer.write(text.encode("utf-8"))

    async def drop_clients(self) -> None:
        for writer in self.writers:
            writer.close()
        self.writers = []

    async def close(self) -> None:
        await self.drop_clients()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


@pytest.fixture
def default_vm_config() -> VMConfig:
    """Return a VMConfig with the stock defaults."""
    return VMConfig(memory_mb=1024, cpus=2)


@pytest.fixture
async def qmp_server():
    server = FakeQMPServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
async def serial_server():
    server = FakeSerialServer()
    await server.start()
    yield server
    await server.close()
