"""Tests for qemuclaw.console module."""

from __future__ import annotations

import asyncio
import itertools
import random
from unittest.mock import MagicMock

import pytest

from conftest import wait_until
from qemuclaw.console import ConsoleClient, LoginAutomation, stty_command
from qemuclaw.exceptions import (
    ConfigError,
    IllegalTransitionError,
    LoginAbortedError,
    NotAuthenticatedError,
    NotConnectedError,
)
from qemuclaw.models import LoginState
from qemuclaw.status import StatusBroadcaster

PROMPTS = {"login": "qemuclaw login: ", "password": "Password: ", "shell": "node@qemuclaw:~$ "}


class TestLoginAutomation:
    def test_full_sequence(self):
        auto = LoginAutomation("node", "openclaw")
        assert auto.start() == ("waiting_boot", "Waiting for VM to boot...")

        step = auto.feed("Booting...\r\n" + PROMPTS["login"])
        assert step.stage == "login_prompt"
        assert step.writes == ["node\r\n"]
        assert auto.state == LoginState.WAITING_PASSWORD

        step = auto.feed(PROMPTS["password"])
        assert step.stage == "authenticating"
        assert step.writes == ["openclaw\r\n"]

        step = auto.feed("Welcome\r\n" + PROMPTS["shell"])
        assert step.stage == "configuring"
        assert step.writes == ["export TERM=xterm-256color\r\n"]
        assert auto.state == LoginState.CONFIGURING

        assert auto.finish() == ("ready", "Logged in")
        assert auto.state == LoginState.READY

    def test_prompt_split_across_chunks(self):
        auto = LoginAutomation("node", "openclaw")
        auto.start()
        assert auto.feed("qemuclaw lo") is None
        assert auto.feed("gin: ") is not None

    def test_buffer_cleared_after_match(self):
        auto = LoginAutomation("node", "openclaw")
        auto.start()
        auto.feed("motd $ login: ")
        assert auto.buffer == ""

    def test_root_shell_prompt(self):
        auto = LoginAutomation("root", "pw")
        auto.start()
        auto.feed("login:")
        auto.feed("Password:")
        assert auto.feed("[root@vm ~]").state == LoginState.CONFIGURING

    @pytest.mark.parametrize(
        "order",
        [p for p in itertools.permutations(["login", "password", "shell"]) if p != ("login", "password", "shell")]
        + [("login", "shell"), ("password", "shell"), ("login", "password")],
    )
    def test_out_of_order_or_missing_prompts_never_complete(self, order):
        auto = LoginAutomation("node", "openclaw")
        auto.start()
        for name in order:
            auto.feed(PROMPTS[name])
        assert auto.state not in (LoginState.CONFIGURING, LoginState.READY)

    def test_buffer_never_exceeds_cap(self):
        auto = LoginAutomation("node", "openclaw", cap=4096, tail=2048)
        auto.start()
        rng = random.Random(1234)
        for _ in range(500):
            auto.feed("x" * rng.randint(1, 9000))
            assert len(auto.buffer) <= 4096

    def test_oversized_chunk_keeps_tail(self):
        auto = LoginAutomation("node", "openclaw", cap=4096, tail=2048)
        auto.start()
        auto.feed("a" * 10000)
        assert auto.buffer == "a" * 2048

    def test_tail_larger_than_cap_rejected(self):
        with pytest.raises(ConfigError):
            LoginAutomation("u", "p", cap=10, tail=20)

    def test_finish_before_shell_is_illegal(self):
        auto = LoginAutomation("node", "openclaw")
        auto.start()
        with pytest.raises(IllegalTransitionError):
            auto.finish()

    def test_idle_automation_ignores_input(self):
        auto = LoginAutomation("node", "openclaw")
        assert auto.feed("login: ") is None
        assert auto.state == LoginState.IDLE

    def test_reset(self):
        auto = LoginAutomation("node", "openclaw")
        auto.start()
        auto.feed("noise")
        auto.reset()
        assert auto.state == LoginState.IDLE
        assert auto.buffer == ""


def _client(status=None) -> ConsoleClient:
    return ConsoleClient(status=status, settle=0.01, first_nudge=0.02, nudge_interval=0.05)


class TestConsoleClient:
    async def test_auto_login_against_scripted_console(self, serial_server):
        status = StatusBroadcaster()
        stages = []
        status.add_listener(lambda stage, message: stages.append(stage))
        client = _client(status)
        await client.connect(serial_server.port, retries=1, retry_delay=0)

        login = asyncio.create_task(client.auto_login("node", "openclaw"))
        await wait_until(lambda: "\r\n" in serial_server.text)
        serial_server.send("Ubuntu 24.04\r\n" + PROMPTS["login"])
        await wait_until(lambda: "node\r\n" in serial_server.text)
        serial_server.send(PROMPTS["password"])
        await wait_until(lambda: "openclaw\r\n" in serial_server.text)
        serial_server.send("\r\n" + PROMPTS["shell"])
        await asyncio.wait_for(login, 2)

        assert client.logged_in is True
        assert client.login_state == LoginState.READY
        await wait_until(lambda: serial_server.text.endswith("stty cols 80 rows 24\r\n"))
        assert "export TERM=xterm-256color\r\n" in serial_server.text
        assert stages == ["waiting_boot", "login_prompt", "authenticating", "configuring", "ready"]
        client.disconnect()

    async def test_data_listener_sees_raw_bytes(self, serial_server):
        client = _client()
        received = []
        client.add_data_listener(received.append)
        await client.connect(serial_server.port, retries=1, retry_delay=0)
        await wait_until(lambda: bool(serial_server.writers))
        serial_server.send("[    0.000000] Linux version 6.8\r\n")
        await wait_until(lambda: bool(received))
        assert b"".join(received) == b"[    0.000000] Linux version 6.8\r\n"
        client.disconnect()

    async def test_failing_data_listener_does_not_abort_login(self, serial_server, capsys):
        client = _client()
        client.add_data_listener(MagicMock(side_effect=BrokenPipeError("stdout closed")))
        await client.connect(serial_server.port, retries=1, retry_delay=0)

        login = asyncio.create_task(client.auto_login("node", "openclaw"))
        await wait_until(lambda: client.login_state == LoginState.WAITING_LOGIN)
        serial_server.send(PROMPTS["login"])
        await wait_until(lambda: "node\r\n" in serial_server.text)
        serial_server.send(PROMPTS["password"])
        await wait_until(lambda: "openclaw\r\n" in serial_server.text)
        serial_server.send(PROMPTS["shell"])
        await asyncio.wait_for(login, 2)

        assert client.connected is True
        assert client.logged_in is True
        assert "Data listener failed: stdout closed" in capsys.readouterr().out
        client.disconnect()

    async def test_close_during_login_aborts(self, serial_server):
        client = _client()
        closed = MagicMock()
        client.add_close_listener(closed)
        await client.connect(serial_server.port, retries=1, retry_delay=0)
        await wait_until(lambda: bool(serial_server.writers))

        login = asyncio.create_task(client.auto_login())
        await wait_until(lambda: client.login_state == LoginState.WAITING_LOGIN)
        serial_server.send(PROMPTS["login"])
        await wait_until(lambda: client.login_state == LoginState.WAITING_PASSWORD)
        await serial_server.drop_clients()

        with pytest.raises(LoginAbortedError):
            await asyncio.wait_for(login, 2)
        assert client.connected is False
        assert client.logged_in is False
        assert client.login_state == LoginState.IDLE
        closed.assert_called_once()

    async def test_auto_login_requires_connection(self):
        with pytest.raises(NotConnectedError):
            await _client().auto_login()

    async def test_auto_login_when_already_logged_in_returns(self):
        client = _client()
        client.connected = True
        client.logged_in = True
        await client.auto_login()

    def test_exec_requires_login(self):
        with pytest.raises(NotAuthenticatedError):
            _client().exec_command("ls")

    def test_exec_writes_command_with_crlf(self):
        client = _client()
        client.connected = True
        client.logged_in = True
        client._writer = MagicMock()
        client.exec_command("cd /app && node dist/index.js onboard")
        client._writer.write.assert_called_once_with(b"cd /app && node dist/index.js onboard\r\n")

    def test_write_ignored_when_disconnected(self):
        client = _client()
        client._writer = MagicMock()
        client.write("abc")
        client._writer.write.assert_not_called()

    def test_write_passes_through_before_login(self):
        client = _client()
        client.connected = True
        client._writer = MagicMock()
        client.write(b"\x03")
        client._writer.write.assert_called_once_with(b"\x03")

    def test_resize_before_login_only_stores_geometry(self):
        client = _client()
        client.connected = True
        client._writer = MagicMock()
        client.resize(120, 40)
        assert (client.cols, client.rows) == (120, 40)
        client._writer.write.assert_not_called()

    def test_resize_after_login_sends_stty(self):
        client = _client()
        client.connected = True
        client.logged_in = True
        client._writer = MagicMock()
        client.resize(132, 50)
        client._writer.write.assert_called_once_with(stty_command(132, 50).encode())

    @pytest.mark.parametrize("cols,rows", [(0, 24), (80, 0), (-1, -1)])
    def test_resize_rejects_invalid_size(self, cols, rows):
        with pytest.raises(ConfigError):
            _client().resize(cols, rows)
