"""Configuration loading for the unlock client."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from .constants import (
    ALLOWED_COMMITMENT,
    CLUSTER_URLS,
    DEFAULT_COMMITMENT,
    DEFAULT_LOCK_DURATION,
    DEFAULT_MINT,
    DEFAULT_OWNER_KEY,
    DEFAULT_PAYER_KEY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PROGRAM_ID,
    DEFAULT_RPC_URL,
    DEFAULT_VM_AUTHORITY,
    DEFAULT_VM_STATE,
    WITHDRAW_MODES,
)
from .errors import ConfigError


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        import tomllib  # Python 3.11+
    except ImportError:  # pragma: no cover
        import tomli as tomllib  # type: ignore
    try:
        return tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc


def parse_pubkey(value: Any, name: str) -> Pubkey:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{name} must be a base58 string")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} is not a valid pubkey: {value}") from exc


def parse_u8(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer")
    if value < 0 or value > 0xFF:
        raise ConfigError(f"{name} must be within u8 range")
    return value


def parse_u16(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer")
    if value < 0 or value > 0xFFFF:
        raise ConfigError(f"{name} must be within u16 range")
    return value


def _table(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a table")
    return value


def resolve_config_path(config_path: Optional[Path], raw_path: str) -> Path:
    expanded = Path(raw_path).expanduser()
    if expanded.is_absolute() or config_path is None:
        return expanded
    return (config_path.parent / expanded).resolve()


@dataclass(frozen=True)
class WithdrawSettings:
    mode: str = "memory"
    memory_account: Optional[Pubkey] = None
    memory_index: Optional[int] = None
    storage_account: Optional[Pubkey] = None
    deposit_bump: Optional[int] = None

    @property
    def mode_code(self) -> int:
        return WITHDRAW_MODES[self.mode]


@dataclass(frozen=True)
class UnlockConfig:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: Pubkey = field(default_factory=lambda: Pubkey.from_string(DEFAULT_PROGRAM_ID))
    mint: Pubkey = field(default_factory=lambda: Pubkey.from_string(DEFAULT_MINT))
    vm_state: Pubkey = field(default_factory=lambda: Pubkey.from_string(DEFAULT_VM_STATE))
    vm_authority: Pubkey = field(default_factory=lambda: Pubkey.from_string(DEFAULT_VM_AUTHORITY))
    lock_duration: int = DEFAULT_LOCK_DURATION
    poll_interval: float = DEFAULT_POLL_INTERVAL
    commitment: str = DEFAULT_COMMITMENT
    owner_key_path: Path = Path(DEFAULT_OWNER_KEY)
    payer_key_path: Path = Path(DEFAULT_PAYER_KEY)
    unlock_address: Optional[Pubkey] = None
    withdraw: WithdrawSettings = field(default_factory=WithdrawSettings)

    def with_overrides(self, **overrides: Any) -> "UnlockConfig":
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


def parse_withdraw(entry: Dict[str, Any]) -> WithdrawSettings:
    mode = entry.get("mode", "memory")
    if not isinstance(mode, str) or mode.strip().lower() not in WITHDRAW_MODES:
        raise ConfigError(f"withdraw.mode must be one of: {', '.join(sorted(WITHDRAW_MODES))}")
    mode = mode.strip().lower()
    memory_account = None
    if entry.get("memory_account") is not None:
        memory_account = parse_pubkey(entry["memory_account"], "withdraw.memory_account")
    memory_index = None
    if entry.get("memory_index") is not None:
        memory_index = parse_u16(entry["memory_index"], "withdraw.memory_index")
    storage_account = None
    if entry.get("storage_account") is not None:
        storage_account = parse_pubkey(entry["storage_account"], "withdraw.storage_account")
    deposit_bump = None
    if entry.get("deposit_bump") is not None:
        deposit_bump = parse_u8(entry["deposit_bump"], "withdraw.deposit_bump")
    return WithdrawSettings(
        mode=mode,
        memory_account=memory_account,
        memory_index=memory_index,
        storage_account=storage_account,
        deposit_bump=deposit_bump,
    )


def config_from_dict(data: Dict[str, Any], config_path: Optional[Path] = None) -> UnlockConfig:
    cluster = _table(data, "cluster")
    vm = _table(data, "vm")
    keys = _table(data, "keys")
    unlock = _table(data, "unlock")
    withdraw = _table(data, "withdraw")

    kwargs: Dict[str, Any] = {}
    rpc_url = cluster.get("rpc_url")
    if rpc_url is not None:
        if not isinstance(rpc_url, str) or not rpc_url:
            raise ConfigError("cluster.rpc_url must be a string")
        kwargs["rpc_url"] = CLUSTER_URLS.get(rpc_url, rpc_url)
    commitment = cluster.get("commitment")
    if commitment is not None:
        if commitment not in ALLOWED_COMMITMENT:
            raise ConfigError("cluster.commitment must be processed, confirmed, or finalized")
        kwargs["commitment"] = commitment
    if cluster.get("program_id") is not None:
        kwargs["program_id"] = parse_pubkey(cluster["program_id"], "cluster.program_id")

    for key in ("mint", "vm_state", "vm_authority"):
        if vm.get(key) is not None:
            kwargs[key] = parse_pubkey(vm[key], f"vm.{key}")
    if vm.get("lock_duration") is not None:
        kwargs["lock_duration"] = parse_u8(vm["lock_duration"], "vm.lock_duration")

    for key in ("owner", "payer"):
        raw = keys.get(key)
        if raw is None:
            continue
        if not isinstance(raw, str) or not raw:
            raise ConfigError(f"keys.{key} must be a path string")
        kwargs[f"{key}_key_path"] = resolve_config_path(config_path, raw)

    interval = unlock.get("poll_interval")
    if interval is not None:
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise ConfigError("unlock.poll_interval must be > 0")
        kwargs["poll_interval"] = float(interval)
    if unlock.get("address") is not None:
        kwargs["unlock_address"] = parse_pubkey(unlock["address"], "unlock.address")

    if withdraw:
        kwargs["withdraw"] = parse_withdraw(withdraw)
    return UnlockConfig(**kwargs)


def load_config(path: str | Path) -> UnlockConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    return config_from_dict(_load_toml(path), config_path=path)
