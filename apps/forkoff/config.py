from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from .errors import ConfigError

DEFAULT_SUDO_KEY = '0xd43593c715fdd31c61141abd04a99fd6822c8558854ccde39a5684e7a56da27d'
STORAGE_CACHE_DISABLED = 'none'


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f'{name} must be an integer, got {raw!r}') from exc
    if value < minimum:
        raise ConfigError(f'{name} must be >= {minimum}, got {value}')
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f'{name} must be a number, got {raw!r}') from exc
    if value < 0:
        raise ConfigError(f'{name} must be >= 0, got {value}')
    return value


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, '').strip()
    return value or None


def _csv_env(name: str, default: str = '') -> tuple[str, ...]:
    raw = os.getenv(name, default).strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(',') if part.strip())


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    node_binary: str | None
    original_chain: str | None
    base_chain: str
    output_path: str
    at_block: str | None
    pin_finalized: bool
    page_size: int
    value_batch_size: int
    max_in_flight: int
    rpc_timeout_seconds: float
    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    storage_cache: str | None
    patch_rules_path: str | None
    runtime_wasm: str | None
    keep_pallets: tuple[str, ...]
    exclude_pallets: tuple[str, ...]
    sudo_key: str | None
    strict_patch_targets: bool
    chain_name: str | None
    chain_id: str | None
    metrics_textfile: str | None
    progress: bool
    patch_edits: tuple[tuple[str, str], ...] = ()

    @property
    def crawl_disabled(self) -> bool:
        return (self.storage_cache or '').lower() == STORAGE_CACHE_DISABLED


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    sudo_key = os.getenv('FORK_SUDO_KEY', DEFAULT_SUDO_KEY).strip()

    return Settings(
        rpc_url=os.getenv('FORK_RPC_URL', 'http://127.0.0.1:9944').strip(),
        node_binary=_env_optional('FORK_NODE_BINARY'),
        original_chain=_env_optional('FORK_ORIGINAL_CHAIN'),
        base_chain=os.getenv('FORK_BASE_CHAIN', 'dev').strip() or 'dev',
        output_path=os.getenv('FORK_OUTPUT_PATH', 'fork.json').strip() or 'fork.json',
        at_block=_env_optional('FORK_AT_BLOCK'),
        pin_finalized=_env_bool('FORK_PIN_FINALIZED', False),
        page_size=_env_int('FORK_PAGE_SIZE', 512),
        value_batch_size=_env_int('FORK_VALUE_BATCH_SIZE', 128),
        max_in_flight=_env_int('FORK_MAX_IN_FLIGHT', 32),
        rpc_timeout_seconds=_env_float('FORK_RPC_TIMEOUT_SECONDS', 30.0),
        retry_max_attempts=_env_int('FORK_RETRY_MAX_ATTEMPTS', 5),
        retry_base_delay_seconds=_env_float('FORK_RETRY_BASE_DELAY_SECONDS', 0.5),
        retry_max_delay_seconds=_env_float('FORK_RETRY_MAX_DELAY_SECONDS', 8.0),
        storage_cache=_env_optional('FORK_STORAGE_CACHE'),
        patch_rules_path=_env_optional('FORK_PATCH_RULES'),
        runtime_wasm=_env_optional('FORK_RUNTIME_WASM'),
        keep_pallets=_csv_env('FORK_KEEP_PALLETS'),
        exclude_pallets=_csv_env('FORK_EXCLUDE_PALLETS', 'System,Authorship'),
        sudo_key=sudo_key or None,
        strict_patch_targets=_env_bool('FORK_STRICT_PATCH_TARGETS', True),
        chain_name=_env_optional('FORK_CHAIN_NAME'),
        chain_id=_env_optional('FORK_CHAIN_ID'),
        metrics_textfile=_env_optional('FORK_METRICS_TEXTFILE'),
        progress=_env_bool('FORK_PROGRESS', True)
    )
