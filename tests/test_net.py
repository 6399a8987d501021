"""Tests for qemuclaw.net module."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from qemuclaw.exceptions import ConnectExhaustedError
from qemuclaw.net import connect_with_retry


class TestConnectWithRetry:
    async def test_succeeds_after_transient_failures(self):
        attempt = AsyncMock(side_effect=[ConnectionRefusedError(), asyncio.TimeoutError(), "connected"])
        with patch("qemuclaw.net.log") as mock_log:
            result = await connect_with_retry(attempt, retries=5, retry_delay=0, label="Serial")
        assert result == "connected"
        assert attempt.await_count == 3
        mock_log.assert_any_call("INFO", "Serial: Connection attempt 1/5 failed, retrying in 0s...")

    async def test_exhausted_chains_last_error(self):
        last = ConnectionRefusedError("refused")
        attempt = AsyncMock(side_effect=[OSError("first"), last])
        with patch("qemuclaw.net.log"):
            with pytest.raises(ConnectExhaustedError) as exc:
                await connect_with_retry(attempt, retries=2, retry_delay=0, label="QMP")
        assert exc.value.__cause__ is last
        assert str(exc.value).startswith("QMP: Failed to connect after 2 attempts")

    async def test_non_transient_error_propagates(self):
        attempt = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await connect_with_retry(attempt, retries=3, retry_delay=0, label="QMP")
        assert attempt.await_count == 1

    async def test_rejects_zero_retries(self):
        with pytest.raises(ValueError):
            await connect_with_retry(AsyncMock(), retries=0, retry_delay=0, label="QMP")
