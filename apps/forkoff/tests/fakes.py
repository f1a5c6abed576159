from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Sequence
from unittest.mock import patch

from apps.forkoff.baseline import BaselineProvider
from apps.forkoff.chain_spec import ChainSpecification
from apps.forkoff.config import Settings, get_settings
from apps.forkoff.errors import BaselineUnavailable, RpcTransportError
from apps.forkoff.rpc import StorageRpc

BLOCK = bytes.fromhex('ab' * 32)


def make_key_space(size: int) -> dict[bytes, bytes]:
    return {b'key' + index.to_bytes(4, 'big'): index.to_bytes(2, 'big') for index in range(size)}


async def no_sleep(_delay: float) -> None:
    return None


class FakeStorageRpc(StorageRpc):
    """In-memory node serving a fixed key space at a single block."""

    def __init__(
        self,
        storage: dict[bytes, bytes],
        block_hash: bytes = BLOCK,
        failures: dict[str, int] | None = None
    ) -> None:
        self.storage = dict(storage)
        self.block_hash = block_hash
        self.failures = dict(failures or {})
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False
        self.in_flight = 0
        self.max_in_flight_seen = 0

    def _maybe_fail(self, method: str) -> None:
        remaining = self.failures.get(method, 0)
        if remaining:
            self.failures[method] = remaining - 1
            raise RpcTransportError(method, 'injected failure')

    async def pin_block(self, finalized: bool = False) -> bytes:
        self.calls.append(('pin_block', finalized))
        self._maybe_fail('pin_block')
        return self.block_hash

    async def keys_page(self, start_after: bytes | None, count: int, at: bytes) -> list[bytes]:
        self.calls.append(('keys_page', start_after, count, at))
        await asyncio.sleep(0)
        self._maybe_fail('keys_page')
        keys = sorted(self.storage)
        if start_after is not None:
            keys = [key for key in keys if key > start_after]
        return self.shape_page(keys[:count], start_after)

    def shape_page(self, page: list[bytes], start_after: bytes | None) -> list[bytes]:
        return page

    async def values(self, keys: Sequence[bytes], at: bytes) -> list[bytes | None]:
        self.calls.append(('values', tuple(keys), at))
        self.in_flight += 1
        self.max_in_flight_seen = max(self.max_in_flight_seen, self.in_flight)
        try:
            await asyncio.sleep(0)
            self._maybe_fail('values')
            return [self.storage.get(key) for key in keys]
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    def calls_of(self, method: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]


class StaticBaselineProvider(BaselineProvider):
    def __init__(self, specs: dict[str, ChainSpecification], delay: float = 0.0) -> None:
        self.specs = specs
        self.delay = delay
        self.requested: list[str] = []

    async def provide_baseline(self, network_template_id: str) -> ChainSpecification:
        self.requested.append(network_template_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        spec = self.specs.get(network_template_id)
        if spec is None:
            raise BaselineUnavailable(f'unknown template {network_template_id}')
        return spec.copy()


def make_spec(
    top: dict[bytes, bytes] | None = None,
    name: str = 'Development',
    chain_id: str = 'dev',
    protocol_id: str | None = None
) -> ChainSpecification:
    document = {
        'name': name,
        'id': chain_id,
        'chainType': 'Development',
        'bootNodes': ['/ip4/127.0.0.1/tcp/30333/p2p/12D3KooWExample'],
        'telemetryEndpoints': None,
        'protocolId': protocol_id,
        'properties': {'tokenSymbol': 'UNIT', 'tokenDecimals': 12},
        'codeSubstitutes': {},
        'genesis': {
            'raw': {
                'top': {'0x' + key.hex(): '0x' + value.hex() for key, value in (top or {}).items()},
                'childrenDefault': {}
            }
        }
    }
    return ChainSpecification.from_document(document)


def make_settings(**overrides: Any) -> Settings:
    with patch.dict('os.environ', {}, clear=True):
        get_settings.cache_clear()
        base = get_settings()
    get_settings.cache_clear()
    defaults = {
        'progress': False,
        'retry_base_delay_seconds': 0.0,
        'retry_max_delay_seconds': 0.0
    }
    defaults.update(overrides)
    return dataclasses.replace(base, **defaults)
