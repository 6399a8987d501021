"""Configuration loading, persistence and environment overrides for QemuClaw."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemuclaw.constants import DEFAULT_CPUS, DEFAULT_MEMORY_MB, MIN_MEMORY_MB, SETTINGS_PATH
from qemuclaw.exceptions import ConfigError
from qemuclaw.models import VMConfig
from qemuclaw.utils import ensure_directory, get_env, get_env_bool, log, parse_int_env


class SettingsStore:
    """YAML-backed key/value settings file.

    Keys in use: ``config`` (a VMConfig mapping), ``qemu_path``,
    ``current_vm_version`` and ``onboarding_complete``. A missing file is an
    empty store, which callers treat as a first run.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or SETTINGS_PATH

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text())
        except yaml.YAMLError as exc:
            raise ConfigError(f"Settings file {self.path} is not valid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {self.path} must contain a mapping")
        return data

    def save(self, data: Dict[str, Any]) -> None:
        ensure_directory(self.path.parent)
        with tempfile.NamedTemporaryFile("w", delete=False, dir=self.path.parent, suffix=".tmp") as tmp:
            yaml.safe_dump(data, tmp, default_flow_style=False, sort_keys=True)
            tmp_path = Path(tmp.name)
        tmp_path.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def has(self, key: str) -> bool:
        return key in self.load()

    def set(self, key: str, value: Any) -> None:
        data = self.load()
        data[key] = value
        self.save(data)

    def has_config(self) -> bool:
        return self.has("config")

    def load_config(self) -> Optional[VMConfig]:
        raw = self.get("config")
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ConfigError("Stored 'config' must be a mapping")
        return VMConfig.from_dict(raw)

    def save_config(self, cfg: VMConfig) -> None:
        self.set("config", cfg.to_dict())
        log("DEBUG", f"Saved configuration to {self.path}")


def parse_env(store: Optional[SettingsStore] = None) -> VMConfig:
    """Build the effective VMConfig: stored settings first, environment on top."""
    base = store.load_config() if store is not None else None
    if base is None:
        base = VMConfig()

    memory_mb = parse_int_env("MEMORY", str(base.memory_mb or DEFAULT_MEMORY_MB), min_val=MIN_MEMORY_MB)
    cpus = parse_int_env("CPUS", str(base.cpus or DEFAULT_CPUS))

    shared_folder = base.shared_folder
    shared_env = get_env("SHARED_FOLDER")
    if shared_env is not None:
        shared_env = shared_env.strip()
        shared_folder = Path(shared_env).expanduser() if shared_env else None
    if shared_folder is not None and not shared_folder.is_dir():
        raise ConfigError(f"Shared folder does not exist: {shared_folder}")

    qemu_path = base.qemu_path
    if store is not None and not qemu_path:
        qemu_path = store.get("qemu_path")
    qemu_env = get_env("QEMU_PATH")
    if qemu_env is not None:
        qemu_path = qemu_env.strip() or None

    return VMConfig(
        memory_mb=memory_mb,
        cpus=cpus,
        shared_folder=shared_folder,
        auto_start=get_env_bool("AUTO_START", base.auto_start),
        qemu_path=qemu_path,
    )
