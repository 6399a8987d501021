"""QMP (QEMU Machine Protocol) client over TCP.

The hypervisor speaks newline-delimited JSON. On connect it sends a
greeting (``{"QMP": {...}}``); the client must answer with
``qmp_capabilities`` before any other command is accepted. After that:

* requests are ``{"execute": name, "id": n, "arguments": {...}}``
* replies are ``{"id": n, "return": ...}`` or ``{"id": n, "error": {"class", "desc"}}``
* asynchronous events carry ``event`` and ``timestamp`` and no ``id``

Replies are matched to callers by id, so concurrent ``execute()`` calls may
complete in any order. A single reader task owns the socket; when it ends,
every pending command is failed with ChannelClosedError.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from qemuclaw.constants import (
    COMMAND_TIMEOUT,
    CONNECT_RETRIES,
    CONNECT_RETRY_DELAY,
    CONNECT_TIMEOUT,
    LOCALHOST,
    QMP_NEGOTIATE,
    QMP_POWERDOWN,
    QMP_QUERY_STATUS,
    QMP_QUIT,
)
from qemuclaw.exceptions import (
    ChannelClosedError,
    CommandTimeoutError,
    NotReadyError,
    QMPCommandError,
)
from qemuclaw.net import connect_with_retry, open_stream
from qemuclaw.utils import log

# A record larger than this without a newline is treated as garbage.
MAX_RECORD_BYTES = 1024 * 1024

EventListener = Callable[[Dict[str, Any]], None]
TypedEventListener = Callable[[Any, Any], None]


class QMPClient:
    def __init__(
        self,
        host: str = LOCALHOST,
        command_timeout: float = COMMAND_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.host = host
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout
        self.ready = False
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._buffer = b""
        self._greeted = False
        self._closed = True
        self._negotiated: Optional[asyncio.Future] = None
        self._command_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._event_listeners: List[EventListener] = []
        self._typed_listeners: Dict[str, List[TypedEventListener]] = {}
        self._close_listeners: List[Callable[[], None]] = []

    # ---- listeners ----
    def add_event_listener(self, listener: Callable, event: Optional[str] = None) -> None:
        """Subscribe to all events (``listener(msg)``) or one named event (``listener(data, timestamp)``)."""
        if event is None:
            self._event_listeners.append(listener)
        else:
            self._typed_listeners.setdefault(event, []).append(listener)

    def remove_event_listener(self, listener: Callable, event: Optional[str] = None) -> None:
        bucket = self._event_listeners if event is None else self._typed_listeners.get(event, [])
        if listener in bucket:
            bucket.remove(listener)

    def add_close_listener(self, listener: Callable[[], None]) -> None:
        self._close_listeners.append(listener)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ---- connection ----
    async def connect(
        self,
        port: int,
        host: Optional[str] = None,
        retries: int = CONNECT_RETRIES,
        retry_delay: float = CONNECT_RETRY_DELAY,
    ) -> None:
        """Dial the control socket and complete capabilities negotiation."""
        target = host or self.host
        await connect_with_retry(lambda: self._try_connect(port, target), retries, retry_delay, "QMP")
        log("DEBUG", f"QMP: negotiated on {target}:{port}")

    async def _try_connect(self, port: int, host: str) -> None:
        self.disconnect()
        reader, writer = await open_stream(host, port, self.connect_timeout)
        self._writer = writer
        self._buffer = b""
        self._greeted = False
        self._closed = False
        self._negotiated = asyncio.get_running_loop().create_future()
        self._read_task = asyncio.create_task(self._read_loop(reader))
        try:
            await asyncio.wait_for(self._negotiated, self.connect_timeout)
        except asyncio.TimeoutError:
            self.disconnect()
            raise ChannelClosedError("QMP: Handshake timed out") from None
        except BaseException:
            self.disconnect()
            raise

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                self.feed(data)
        except OSError as exc:
            log("WARN", f"QMP: Socket error: {exc}")
        finally:
            self._handle_close()

    def disconnect(self) -> None:
        task = self._read_task
        self._read_task = None
        self._handle_close()
        if task is not None and not task.done():
            task.cancel()

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.ready = False
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ChannelClosedError("QMP: Connection closed"))
        if self._negotiated is not None and not self._negotiated.done():
            self._negotiated.set_exception(ChannelClosedError("QMP: Connection closed during handshake"))
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        for listener in list(self._close_listeners):
            listener()

    # ---- inbound ----
    def feed(self, data: bytes) -> None:
        """Append raw bytes and dispatch every complete record."""
        self._buffer += data
        *records, self._buffer = self._buffer.split(b"\n")
        if len(self._buffer) > MAX_RECORD_BYTES:
            log("ERROR", f"QMP: Dropping oversized record ({len(self._buffer)} bytes without newline)")
            self._buffer = b""
        for raw in records:
            line = raw.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except ValueError:
                log("WARN", f"QMP: Failed to parse: {line[:200]!r}")
                continue
            if not isinstance(msg, dict):
                log("WARN", f"QMP: Ignoring non-object record: {line[:200]!r}")
                continue
            self._dispatch(msg)

    def _dispatch(self, msg: Dict[str, Any]) -> None:
        if "QMP" in msg:
            self._greeted = True
            self._send({"execute": QMP_NEGOTIATE})
            return

        is_reply = "return" in msg or "error" in msg

        if not self.ready and is_reply and "id" not in msg:
            if not self._greeted:
                log("WARN", "QMP: Reply before greeting ignored")
                return
            if self._negotiated is None or self._negotiated.done():
                return
            if "error" in msg:
                err = msg.get("error") or {}
                self._negotiated.set_exception(QMPCommandError(err.get("class", "?"), err.get("desc", "")))
                return
            self.ready = True
            self._negotiated.set_result(None)
            return

        if "event" in msg:
            self._emit_event(msg)
            return

        if is_reply:
            fut = self._pending.pop(msg.get("id"), None)  # type: ignore[arg-type]
            if fut is None or fut.done():
                log("DEBUG", f"QMP: Dropping reply for unknown id {msg.get('id')!r}")
                return
            if "error" in msg:
                err = msg.get("error") or {}
                fut.set_exception(QMPCommandError(err.get("class", "?"), err.get("desc", "")))
            else:
                fut.set_result(msg["return"])
            return

        log("DEBUG", f"QMP: Unclassified record ignored: {msg!r}")

    def _emit_event(self, msg: Dict[str, Any]) -> None:
        name = msg["event"]
        log("DEBUG", f"QMP: event {name}")
        for listener in list(self._event_listeners):
            try:
                listener(msg)
            except Exception as exc:
                log("WARN", f"QMP: Event listener failed on {name}: {exc}")
        for listener in list(self._typed_listeners.get(name, [])):
            try:
                listener(msg.get("data"), msg.get("timestamp"))
            except Exception as exc:
                log("WARN", f"QMP: Event listener failed on {name}: {exc}")

    def _send(self, msg: Dict[str, Any]) -> None:
        if self._writer is None:
            raise ChannelClosedError("QMP: Connection closed")
        self._writer.write(json.dumps(msg).encode("utf-8") + b"\n")

    # ---- commands ----
    async def execute(self, command: str, args: Optional[Dict[str, Any]] = None) -> Any:
        if not self.ready:
            raise NotReadyError("QMP: Not connected")

        self._command_id += 1
        command_id = self._command_id
        msg: Dict[str, Any] = {"execute": command, "id": command_id}
        if args:
            msg["arguments"] = args

        fut = asyncio.get_running_loop().create_future()
        self._pending[command_id] = fut
        try:
            self._send(msg)
            return await asyncio.wait_for(fut, self.command_timeout)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(f"QMP: Command '{command}' timed out") from None
        finally:
            self._pending.pop(command_id, None)

    async def shutdown(self) -> Any:
        return await self.execute(QMP_POWERDOWN)

    async def query_status(self) -> Any:
        return await self.execute(QMP_QUERY_STATUS)

    async def quit(self) -> Any:
        return await self.execute(QMP_QUIT)
