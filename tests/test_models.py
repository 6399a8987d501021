"""Tests for qemuclaw.models module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from qemuclaw.exceptions import ConfigError, IllegalTransitionError
from qemuclaw.models import (
    LOGIN_TRANSITIONS,
    SUPERVISOR_TRANSITIONS,
    LoginState,
    Release,
    ReleaseAsset,
    SupervisorState,
    VMConfig,
    VMProcess,
    check_transition,
)


class TestVMConfig:
    def test_defaults(self):
        cfg = VMConfig()
        assert cfg.memory_mb == 1024
        assert cfg.cpus == 2
        assert cfg.shared_folder is None

    @pytest.mark.parametrize("kwargs", [{"memory_mb": 255}, {"cpus": 0}])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            VMConfig(**kwargs)

    def test_shared_folder_coerced_to_path(self):
        assert VMConfig(shared_folder="/srv/share").shared_folder == Path("/srv/share")

    def test_from_dict_fills_missing_keys(self):
        cfg = VMConfig.from_dict({"memory_mb": "2048"})
        assert cfg.memory_mb == 2048
        assert cfg.cpus == 2

    def test_from_dict_rejects_garbage(self):
        with pytest.raises(ConfigError, match="Invalid stored configuration"):
            VMConfig.from_dict({"cpus": "lots"})

    def test_to_dict_is_yaml_friendly(self):
        data = VMConfig(shared_folder=Path("/srv/share")).to_dict()
        assert data["shared_folder"] == "/srv/share"
        assert VMConfig.from_dict(data).shared_folder == Path("/srv/share")


class TestTransitions:
    def test_supervisor_happy_path(self):
        path = [
            SupervisorState.STOPPED,
            SupervisorState.STARTING,
            SupervisorState.CONNECTING,
            SupervisorState.AUTHENTICATING,
            SupervisorState.RUNNING,
            SupervisorState.STOPPING,
            SupervisorState.STOPPED,
        ]
        for current, new in zip(path, path[1:]):
            check_transition(current, new, SUPERVISOR_TRANSITIONS)

    @pytest.mark.parametrize(
        "current,new",
        [
            (SupervisorState.STOPPED, SupervisorState.RUNNING),
            (SupervisorState.STOPPING, SupervisorState.STARTING),
            (SupervisorState.STARTING, SupervisorState.RUNNING),
        ],
    )
    def test_supervisor_illegal_edges(self, current, new):
        with pytest.raises(IllegalTransitionError):
            check_transition(current, new, SUPERVISOR_TRANSITIONS)

    def test_every_active_state_can_fall_back_to_stopped(self):
        for state in SupervisorState:
            if state is not SupervisorState.STOPPED:
                check_transition(state, SupervisorState.STOPPED, SUPERVISOR_TRANSITIONS)

    def test_login_chain_is_linear(self):
        check_transition(LoginState.WAITING_LOGIN, LoginState.WAITING_PASSWORD, LOGIN_TRANSITIONS)
        with pytest.raises(IllegalTransitionError):
            check_transition(LoginState.WAITING_LOGIN, LoginState.WAITING_SHELL, LOGIN_TRANSITIONS)
        with pytest.raises(IllegalTransitionError):
            check_transition(LoginState.READY, LoginState.IDLE, LOGIN_TRANSITIONS)


class TestReleaseModels:
    def test_release_from_api(self):
        release = Release.from_api(
            {
                "tag_name": "vm-2024.06",
                "assets": [
                    {"name": "img.tar.gz.aa", "size": 10, "browser_download_url": "https://dl/aa"},
                    {"name": "img.tar.gz.ab", "size": None, "browser_download_url": "https://dl/ab"},
                ],
            }
        )
        assert release.tag == "vm-2024.06"
        assert [a.size for a in release.assets] == [10, 0]
        assert all(a.is_split_part for a in release.assets)

    @pytest.mark.parametrize(
        "name,image,part,checksum",
        [
            ("disk.qcow2", True, False, False),
            ("disk.qcow2.sha256", False, False, True),
            ("disk.tar.gz.ac", False, True, False),
            ("disk.tar.gz", False, False, False),
            ("disk.tar.gz.a1", False, False, False),
        ],
    )
    def test_asset_kinds(self, name, image, part, checksum):
        asset = ReleaseAsset(name, 1, "u")
        assert (asset.is_image, asset.is_split_part, asset.is_checksum) == (image, part, checksum)


class TestVMProcess:
    def test_exit_tracking(self, tmp_path):
        proc = MagicMock(pid=99, returncode=None)
        vm = VMProcess(proc, 14000, 14001, ["-m", "1024"], tmp_path / "vm.log")
        assert vm.pid == 99
        assert vm.has_exited() is False
        proc.returncode = 1
        assert vm.has_exited() is True
