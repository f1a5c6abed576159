from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, TypeVar

from tqdm import tqdm

from . import storage_codec
from .chain_spec import StorageSnapshot
from .errors import CrawlInconsistency
from .metrics import CRAWL_DURATION_SECONDS, KEYS_CRAWLED_TOTAL, VALUES_FETCHED_TOTAL
from .retry import RetryPolicy, call_with_retry
from .rpc import StorageRpc

LOGGER = logging.getLogger('forkoff.crawler')

T = TypeVar('T')


@dataclass(frozen=True)
class CrawlOptions:
    page_size: int = 512
    value_batch_size: int = 128
    max_in_flight: int = 32
    pin_finalized: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    progress: bool = False

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError('page_size must be >= 1')
        if self.value_batch_size < 1:
            raise ValueError('value_batch_size must be >= 1')
        if self.max_in_flight < 1:
            raise ValueError('max_in_flight must be >= 1')


@dataclass
class FetchCursor:
    page_size: int
    last_key: bytes | None = None
    pages: int = 0
    exhausted: bool = False

    def advance(self, keys: Sequence[bytes]) -> None:
        self.pages += 1
        if not keys:
            self.exhausted = True
            return
        self.last_key = keys[-1]


class StorageCrawler:
    """Walks the whole top-level trie of a live node at one pinned block.

    Key pages are requested one after another, each starting after the last key
    of the previous page. Values for a page are fetched in batches that overlap
    with the enumeration of the following pages; the number of requests in
    flight is bounded by ``max_in_flight``. The first batch that fails stops
    the enumeration and cancels every other batch.
    """

    def __init__(
        self,
        rpc: StorageRpc,
        options: CrawlOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.rpc = rpc
        self.options = options or CrawlOptions()
        self._sleep = sleep

    async def crawl(self, at: bytes | None = None) -> StorageSnapshot:
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.options.max_in_flight)

        if at is None:
            at = await self._call(
                semaphore,
                lambda: self.rpc.pin_block(self.options.pin_finalized),
                'pin block'
            )
        pinned = storage_codec.encode(at)
        LOGGER.info(
            'crawl started block=%s page_size=%s max_in_flight=%s',
            pinned,
            self.options.page_size,
            self.options.max_in_flight
        )

        cursor = FetchCursor(page_size=self.options.page_size)
        seen: set[bytes] = set()
        value_tasks: list[asyncio.Task] = []

        key_bar = tqdm(desc='Fetching storage keys', unit='key', disable=not self.options.progress)
        value_bar = tqdm(desc='Fetching storage values', unit='value', total=0, disable=not self.options.progress)
        try:
            while not cursor.exhausted:
                _raise_first_failure(value_tasks)
                keys = await self._call(
                    semaphore,
                    lambda start=cursor.last_key: self.rpc.keys_page(start, cursor.page_size, at),
                    f'keys page {cursor.pages + 1}'
                )
                self._check_page(keys, cursor, seen, pinned)
                cursor.advance(keys)
                seen.update(keys)
                KEYS_CRAWLED_TOTAL.inc(len(keys))
                key_bar.update(len(keys))
                LOGGER.debug('keys page=%s count=%s total=%s', cursor.pages, len(keys), len(seen))

                if keys:
                    value_bar.total += len(keys)
                    value_bar.refresh()
                for offset in range(0, len(keys), self.options.value_batch_size):
                    batch = keys[offset:offset + self.options.value_batch_size]
                    value_tasks.append(
                        asyncio.create_task(self._fetch_values(semaphore, batch, at, value_bar))
                    )

            batches = await asyncio.gather(*value_tasks)
        except BaseException:
            for task in value_tasks:
                task.cancel()
            await asyncio.gather(*value_tasks, return_exceptions=True)
            raise
        finally:
            key_bar.close()
            value_bar.close()

        entries: dict[bytes, bytes] = {}
        for batch in batches:
            for key, value in batch:
                if key in entries:
                    raise CrawlInconsistency(
                        'value fetched twice for one key',
                        key=storage_codec.encode(key),
                        block_hash=pinned
                    )
                entries[key] = value

        if entries.keys() != seen:
            missing = seen - entries.keys()
            raise CrawlInconsistency(
                f'{len(missing)} enumerated keys have no fetched value',
                key=storage_codec.encode(min(missing)) if missing else None,
                block_hash=pinned
            )

        elapsed = time.monotonic() - started
        CRAWL_DURATION_SECONDS.set(elapsed)
        LOGGER.info(
            'crawl finished block=%s keys=%s pages=%s seconds=%.1f',
            pinned,
            len(entries),
            cursor.pages,
            elapsed
        )
        return StorageSnapshot(entries=entries, block_hash=at)

    def _check_page(
        self,
        keys: Sequence[bytes],
        cursor: FetchCursor,
        seen: set[bytes],
        pinned: str
    ) -> None:
        if len(keys) > cursor.page_size:
            raise CrawlInconsistency(
                f'page {cursor.pages + 1} holds {len(keys)} keys, asked for {cursor.page_size}',
                block_hash=pinned
            )

        previous = cursor.last_key
        for key in keys:
            if key in seen:
                raise CrawlInconsistency(
                    'key returned twice; node state moved under the pinned block',
                    key=storage_codec.encode(key),
                    block_hash=pinned
                )
            if previous is not None and key <= previous:
                raise CrawlInconsistency(
                    f'keys out of order after {storage_codec.encode(previous)}',
                    key=storage_codec.encode(key),
                    block_hash=pinned
                )
            previous = key

    async def _fetch_values(
        self,
        semaphore: asyncio.Semaphore,
        keys: list[bytes],
        at: bytes,
        bar: tqdm
    ) -> list[tuple[bytes, bytes]]:
        pinned = storage_codec.encode(at)
        values = await self._call(
            semaphore,
            lambda: self.rpc.values(keys, at),
            f'values from {storage_codec.encode(keys[0])}'
        )
        if len(values) != len(keys):
            raise CrawlInconsistency(
                f'asked for {len(keys)} values, got {len(values)}',
                key=storage_codec.encode(keys[0]),
                block_hash=pinned
            )

        pairs: list[tuple[bytes, bytes]] = []
        for key, value in zip(keys, values):
            if value is None:
                raise CrawlInconsistency(
                    'enumerated key has no value at the pinned block',
                    key=storage_codec.encode(key),
                    block_hash=pinned
                )
            pairs.append((key, value))

        VALUES_FETCHED_TOTAL.inc(len(pairs))
        bar.update(len(pairs))
        return pairs

    async def _call(
        self,
        semaphore: asyncio.Semaphore,
        operation: Callable[[], Awaitable[T]],
        label: str
    ) -> T:
        async def attempt() -> T:
            async with semaphore:
                return await operation()

        return await call_with_retry(attempt, policy=self.options.retry, label=label, sleep=self._sleep)


def _raise_first_failure(tasks: Sequence[asyncio.Task]) -> None:
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            task.result()


async def crawl_storage(
    rpc: StorageRpc,
    options: CrawlOptions | None = None,
    at: bytes | None = None
) -> StorageSnapshot:
    async with rpc:
        return await StorageCrawler(rpc, options).crawl(at)
