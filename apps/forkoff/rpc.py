from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

import aiohttp
from pydantic import BaseModel, TypeAdapter, ValidationError
from web3 import AsyncHTTPProvider
from web3.exceptions import Web3Exception
from web3.types import RPCEndpoint

from . import storage_codec
from .errors import CrawlInconsistency, RpcTransportError
from .metrics import RPC_REQUESTS_TOTAL

LOGGER = logging.getLogger('forkoff.rpc')

BLOCK_HASH_LENGTH = 32


class RpcErrorObject(BaseModel):
    code: int
    message: str
    data: Any = None


class RpcEnvelope(BaseModel):
    jsonrpc: str | None = None
    id: Any = None
    result: Any = None
    error: RpcErrorObject | None = None


class StorageChangeSet(BaseModel):
    block: str
    changes: list[tuple[str, str | None]]


_BLOCK_HASH = TypeAdapter(str)
_KEYS_PAGE = TypeAdapter(list[str])
_CHANGE_SETS = TypeAdapter(list[StorageChangeSet])


class StorageRpc(ABC):
    """Read-only view of a node's storage, always queried at an explicit block."""

    @abstractmethod
    async def pin_block(self, finalized: bool = False) -> bytes:
        ...

    @abstractmethod
    async def keys_page(self, start_after: bytes | None, count: int, at: bytes) -> list[bytes]:
        ...

    @abstractmethod
    async def values(self, keys: Sequence[bytes], at: bytes) -> list[bytes | None]:
        ...

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> StorageRpc:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class SubstrateRpcAdapter(StorageRpc):
    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 30.0,
        provider: Any | None = None
    ) -> None:
        self.rpc_url = rpc_url
        self._provider = provider or AsyncHTTPProvider(
            rpc_url,
            request_kwargs={'timeout': aiohttp.ClientTimeout(total=timeout_seconds)}
        )

    async def pin_block(self, finalized: bool = False) -> bytes:
        method = 'chain_getFinalizedHead' if finalized else 'chain_getBlockHash'
        result = await self._request(method, [])
        if result is None:
            raise RpcTransportError(method, 'node returned no block hash')
        block_hash = storage_codec.decode(self._validate(_BLOCK_HASH, result, method))
        if len(block_hash) != BLOCK_HASH_LENGTH:
            raise RpcTransportError(method, f'block hash has {len(block_hash)} bytes')
        return block_hash

    async def keys_page(self, start_after: bytes | None, count: int, at: bytes) -> list[bytes]:
        method = 'state_getKeysPaged'
        start_key = storage_codec.encode(start_after) if start_after is not None else None
        result = await self._request(method, ['0x', count, start_key, storage_codec.encode(at)])
        keys = self._validate(_KEYS_PAGE, result, method)
        return [storage_codec.decode(key) for key in keys]

    async def values(self, keys: Sequence[bytes], at: bytes) -> list[bytes | None]:
        if not keys:
            return []

        method = 'state_queryStorageAt'
        pinned = storage_codec.encode(at)
        result = await self._request(method, [[storage_codec.encode(key) for key in keys], pinned])
        change_sets = self._validate(_CHANGE_SETS, result, method)

        found: dict[bytes, bytes | None] = {}
        for change_set in change_sets:
            if storage_codec.decode(change_set.block) != at:
                raise CrawlInconsistency(
                    f'{method} answered for block {change_set.block}',
                    block_hash=pinned
                )
            for key_text, value_text in change_set.changes:
                key = storage_codec.decode(key_text)
                found[key] = storage_codec.decode(value_text) if value_text is not None else None

        requested = set(keys)
        unexpected = [key for key in found if key not in requested]
        if unexpected:
            raise CrawlInconsistency(
                f'{method} returned {len(unexpected)} keys that were not requested',
                key=storage_codec.encode(min(unexpected)),
                block_hash=pinned
            )
        return [found.get(key) for key in keys]

    async def close(self) -> None:
        disconnect = getattr(self._provider, 'disconnect', None)
        if disconnect is not None:
            await disconnect()

    async def _request(self, method: str, params: list[Any]) -> Any:
        RPC_REQUESTS_TOTAL.labels(method=method).inc()
        LOGGER.debug('rpc request method=%s url=%s', method, self.rpc_url)
        try:
            response = await self._provider.make_request(RPCEndpoint(method), params)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError, Web3Exception) as exc:
            raise RpcTransportError(method, f'{type(exc).__name__}: {exc}') from exc

        try:
            envelope = RpcEnvelope.model_validate(response)
        except ValidationError as exc:
            raise RpcTransportError(method, f'invalid response envelope ({exc.error_count()} errors)') from exc
        if envelope.error is not None:
            raise RpcTransportError(
                method,
                f'rpc error code={envelope.error.code} message={envelope.error.message}'
            )
        return envelope.result

    @staticmethod
    def _validate(adapter: TypeAdapter, result: Any, method: str) -> Any:
        try:
            return adapter.validate_python(result)
        except ValidationError as exc:
            raise RpcTransportError(method, f'unexpected result shape ({exc.error_count()} errors)') from exc
