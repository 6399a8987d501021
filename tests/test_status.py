"""Tests for qemuclaw.status module."""

from __future__ import annotations

from qemuclaw.status import StatusBroadcaster


class TestStatusBroadcaster:
    def test_listeners_receive_updates(self):
        status = StatusBroadcaster()
        seen = []
        status.add_listener(lambda stage, msg: seen.append((stage, msg)))
        status.update("starting", "Launching QEMU")
        status.update("running", "VM is running")
        assert seen == [("starting", "Launching QEMU"), ("running", "VM is running")]
        assert status.last_stage == "running"

    def test_removed_listener_is_silent(self):
        status = StatusBroadcaster()
        seen = []
        listener = lambda stage, msg: seen.append(stage)  # noqa: E731
        status.add_listener(listener)
        status.remove_listener(listener)
        status.remove_listener(listener)
        status.update("starting", "x")
        assert seen == []

    def test_failing_listener_does_not_block_others(self, capsys):
        status = StatusBroadcaster()
        seen = []

        def broken(stage, msg):
            raise RuntimeError("listener bug")

        status.add_listener(broken)
        status.add_listener(lambda stage, msg: seen.append(stage))
        status.update("connecting", "Connecting")
        assert seen == ["connecting"]
        assert "listener bug" in capsys.readouterr().out

    def test_reset_clears_last_stage(self):
        status = StatusBroadcaster()
        status.update("running", "VM is running")
        status.reset()
        assert status.last_stage is None
