"""Serial console client with unattended login.

The console is a raw byte stream. Every inbound chunk is handed verbatim to
data listeners, and, while a login is in progress, decoded and fed to a
LoginAutomation that watches a bounded trailing buffer for prompts.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from qemuclaw.constants import (
    CONNECT_RETRIES,
    CONNECT_RETRY_DELAY,
    CONNECT_TIMEOUT,
    CONSOLE_BUFFER_CAP,
    CONSOLE_BUFFER_TAIL,
    CONSOLE_EOL,
    CONSOLE_FIRST_NUDGE,
    CONSOLE_NUDGE_INTERVAL,
    CONSOLE_PASSWORD,
    CONSOLE_SETTLE,
    CONSOLE_TERM,
    CONSOLE_USER,
    DEFAULT_COLS,
    DEFAULT_ROWS,
    LOCALHOST,
    LOGIN_PROMPT,
    PASSWORD_PROMPT,
    SHELL_PROMPTS,
)
from qemuclaw.exceptions import (
    ConfigError,
    LoginAbortedError,
    NotAuthenticatedError,
    NotConnectedError,
)
from qemuclaw.models import LOGIN_TRANSITIONS, LoginState, check_transition
from qemuclaw.net import connect_with_retry, open_stream
from qemuclaw.status import StatusBroadcaster
from qemuclaw.utils import log

DataListener = Callable[[bytes], None]


def stty_command(cols: int, rows: int) -> str:
    return f"stty cols {cols} rows {rows}{CONSOLE_EOL}"


@dataclass
class LoginStep:
    """What the client must do after a prompt matched."""

    state: LoginState
    stage: str
    message: str
    writes: List[str] = field(default_factory=list)


class LoginAutomation:
    """Prompt-matching state machine for a text login.

    It performs no I/O: ``feed()`` returns the writes to perform and the
    stage to announce, and the owner drives the final ``finish()`` once the
    terminal has been configured.
    """

    def __init__(
        self,
        username: str,
        password: str,
        cap: int = CONSOLE_BUFFER_CAP,
        tail: int = CONSOLE_BUFFER_TAIL,
    ) -> None:
        if tail > cap:
            raise ConfigError("buffer tail must not exceed the buffer cap")
        self.username = username
        self.password = password
        self.cap = cap
        self.tail = tail
        self.state = LoginState.IDLE
        self.buffer = ""

    def _advance(self, new: LoginState) -> None:
        check_transition(self.state, new, LOGIN_TRANSITIONS)
        self.state = new

    def start(self) -> Tuple[str, str]:
        self._advance(LoginState.WAITING_LOGIN)
        return "waiting_boot", "Waiting for VM to boot..."

    def feed(self, text: str) -> Optional[LoginStep]:
        if self.state not in (LoginState.WAITING_LOGIN, LoginState.WAITING_PASSWORD, LoginState.WAITING_SHELL):
            return None

        self.buffer += text
        if len(self.buffer) > self.cap:
            self.buffer = self.buffer[-self.tail:]

        if self.state == LoginState.WAITING_LOGIN and LOGIN_PROMPT in self.buffer:
            self.buffer = ""
            self._advance(LoginState.WAITING_PASSWORD)
            return LoginStep(
                self.state,
                "login_prompt",
                "Login prompt detected, sending credentials...",
                [self.username + CONSOLE_EOL],
            )
        if self.state == LoginState.WAITING_PASSWORD and PASSWORD_PROMPT in self.buffer:
            self.buffer = ""
            self._advance(LoginState.WAITING_SHELL)
            return LoginStep(self.state, "authenticating", "Authenticating...", [self.password + CONSOLE_EOL])
        if self.state == LoginState.WAITING_SHELL and any(p in self.buffer for p in SHELL_PROMPTS):
            self.buffer = ""
            self._advance(LoginState.CONFIGURING)
            return LoginStep(
                self.state,
                "configuring",
                "Configuring terminal...",
                [f"export TERM={CONSOLE_TERM}{CONSOLE_EOL}"],
            )
        return None

    def finish(self) -> Tuple[str, str]:
        self._advance(LoginState.READY)
        return "ready", "Logged in"

    def reset(self) -> None:
        self.state = LoginState.IDLE
        self.buffer = ""


class ConsoleClient:
    def __init__(
        self,
        host: str = LOCALHOST,
        status: Optional[StatusBroadcaster] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        settle: float = CONSOLE_SETTLE,
        first_nudge: float = CONSOLE_FIRST_NUDGE,
        nudge_interval: float = CONSOLE_NUDGE_INTERVAL,
    ) -> None:
        self.host = host
        self.status = status or StatusBroadcaster()
        self.connect_timeout = connect_timeout
        self.settle = settle
        self.first_nudge = first_nudge
        self.nudge_interval = nudge_interval
        self.connected = False
        self.logged_in = False
        self.cols = DEFAULT_COLS
        self.rows = DEFAULT_ROWS
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._configure_task: Optional[asyncio.Task] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._automation: Optional[LoginAutomation] = None
        self._login_future: Optional[asyncio.Future] = None
        self._data_listeners: List[DataListener] = []
        self._close_listeners: List[Callable[[], None]] = []

    @property
    def login_state(self) -> LoginState:
        return self._automation.state if self._automation is not None else LoginState.IDLE

    def add_data_listener(self, listener: DataListener) -> None:
        self._data_listeners.append(listener)

    def remove_data_listener(self, listener: DataListener) -> None:
        if listener in self._data_listeners:
            self._data_listeners.remove(listener)

    def add_close_listener(self, listener: Callable[[], None]) -> None:
        self._close_listeners.append(listener)

    # ---- connection ----
    async def connect(
        self,
        port: int,
        host: Optional[str] = None,
        retries: int = CONNECT_RETRIES,
        retry_delay: float = CONNECT_RETRY_DELAY,
    ) -> None:
        target = host or self.host
        await connect_with_retry(lambda: self._try_connect(port, target), retries, retry_delay, "Serial")
        log("DEBUG", f"Serial: connected to {target}:{port}")

    async def _try_connect(self, port: int, host: str) -> None:
        self.disconnect()
        reader, writer = await open_stream(host, port, self.connect_timeout)
        self._writer = writer
        self._decoder.reset()
        self._automation = None
        self.connected = True
        self._read_task = asyncio.create_task(self._read_loop(reader))

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                self._on_data(data)
        except OSError as exc:
            log("WARN", f"Serial: Socket error: {exc}")
        finally:
            self._handle_close()

    def _on_data(self, data: bytes) -> None:
        for listener in list(self._data_listeners):
            try:
                listener(data)
            except Exception as exc:
                log("WARN", f"Serial: Data listener failed: {exc}")
        text = self._decoder.decode(data)
        automation = self._automation
        if automation is None or not text:
            return
        step = automation.feed(text)
        if step is None:
            return
        for chunk in step.writes:
            self._write_raw(chunk)
        self.status.update(step.stage, step.message)
        if step.state == LoginState.CONFIGURING:
            self._configure_task = asyncio.get_running_loop().create_task(self._configure(automation))

    async def _configure(self, automation: LoginAutomation) -> None:
        await asyncio.sleep(self.settle)
        if not self.connected:
            return
        self._write_raw(stty_command(self.cols, self.rows))
        await asyncio.sleep(self.settle)
        if not self.connected:
            return
        stage, message = automation.finish()
        self.logged_in = True
        self.status.update(stage, message)
        if self._login_future is not None and not self._login_future.done():
            self._login_future.set_result(None)

    def _handle_close(self) -> None:
        if not self.connected and self._writer is None:
            return
        self.connected = False
        self.logged_in = False
        if self._automation is not None:
            self._automation.reset()
        self._automation = None
        if self._configure_task is not None and not self._configure_task.done():
            self._configure_task.cancel()
        self._configure_task = None
        if self._login_future is not None and not self._login_future.done():
            self._login_future.set_exception(LoginAbortedError("Serial: Connection closed during login"))
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        for listener in list(self._close_listeners):
            listener()

    def disconnect(self) -> None:
        task = self._read_task
        self._read_task = None
        self._handle_close()
        if task is not None and not task.done():
            task.cancel()

    # ---- login ----
    async def auto_login(self, username: str = CONSOLE_USER, password: str = CONSOLE_PASSWORD) -> None:
        """Log in through the console. There is no timeout: only a closed connection aborts it."""
        if not self.connected:
            raise NotConnectedError("Serial: Not connected")
        if self.logged_in:
            return

        automation = LoginAutomation(username, password)
        self._automation = automation
        stage, message = automation.start()
        self.status.update(stage, message)

        self._login_future = asyncio.get_running_loop().create_future()
        nudge_task = asyncio.create_task(self._nudge(automation))
        try:
            await self._login_future
        finally:
            nudge_task.cancel()
            self._login_future = None
        log("DEBUG", "Serial: login complete")

    async def _nudge(self, automation: LoginAutomation) -> None:
        """Send bare line endings to coax a login prompt out of a quiet guest."""
        delay = self.first_nudge
        while True:
            await asyncio.sleep(delay)
            if automation.state != LoginState.WAITING_LOGIN:
                return
            if self.connected:
                self._write_raw(CONSOLE_EOL)
            delay = self.nudge_interval

    # ---- I/O ----
    def _write_raw(self, data: Union[str, bytes]) -> None:
        if self._writer is None:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._writer.write(data)

    def write(self, data: Union[str, bytes]) -> None:
        """Pass raw keystrokes through to the guest; ignored while disconnected."""
        if not self.connected:
            log("DEBUG", "Serial: write ignored, not connected")
            return
        self._write_raw(data)

    def exec_command(self, command: str) -> None:
        if not self.logged_in:
            raise NotAuthenticatedError("Serial: Not logged in")
        self._write_raw(command + CONSOLE_EOL)

    def resize(self, cols: int, rows: int) -> None:
        if cols < 1 or rows < 1:
            raise ConfigError(f"Invalid terminal size {cols}x{rows}")
        self.cols = cols
        self.rows = rows
        if self.logged_in and self.connected:
            self._write_raw(stty_command(cols, rows))
