from __future__ import annotations

from substrateinterface.utils.hasher import xxh128

CODE_KEY = b':code'
GENESIS_MARKER_KEY = bytes.fromhex('deadbeef')
GENESIS_MARKER_VALUE = b'\x01'

# //Alice on every development chain.
DEV_SUDO_ACCOUNT = bytes.fromhex('d43593c715fdd31c61141abd04a99fd6822c8558854ccde39a5684e7a56da27d')


def twox128(name: str) -> bytes:
    return bytes(xxh128(name.encode('utf-8')))


def pallet_prefix(pallet: str) -> bytes:
    return twox128(pallet)


def storage_prefix(pallet: str, item: str) -> bytes:
    return twox128(pallet) + twox128(item)


def resolve_storage_path(path: str) -> bytes:
    """Turn 'Pallet' or 'Pallet.Item' into its hashed key prefix."""
    pallet, _, item = path.strip().partition('.')
    if not pallet:
        raise ValueError(f'empty pallet name in {path!r}')
    if item:
        return storage_prefix(pallet, item)
    return pallet_prefix(pallet)


def encode_u64(value: int) -> bytes:
    if value < 0 or value >= 2 ** 64:
        raise ValueError(f'u64 out of range: {value}')
    return value.to_bytes(8, 'little')


SYSTEM_ACCOUNT_PREFIX = storage_prefix('System', 'Account')
LAST_RUNTIME_UPGRADE_KEY = storage_prefix('System', 'LastRuntimeUpgrade')
SUDO_KEY = storage_prefix('Sudo', 'Key')
