from __future__ import annotations

import logging
from dataclasses import dataclass

from . import storage_codec
from .chain_spec import ChainSpecification, StorageSnapshot
from .storage_keys import SYSTEM_ACCOUNT_PREFIX, pallet_prefix

LOGGER = logging.getLogger('forkoff.merger')


@dataclass(frozen=True)
class SnapshotScope:
    keep_pallets: tuple[str, ...] = ()
    exclude_pallets: tuple[str, ...] = ()

    @property
    def unrestricted(self) -> bool:
        return not self.keep_pallets and not self.exclude_pallets

    def admits(self, key: bytes) -> bool:
        # Balances live in System.Account and always follow the live chain.
        if key.startswith(SYSTEM_ACCOUNT_PREFIX):
            return True
        if self.keep_pallets:
            return any(key.startswith(pallet_prefix(name)) for name in self.keep_pallets)
        return not any(key.startswith(pallet_prefix(name)) for name in self.exclude_pallets)


@dataclass(frozen=True)
class MergeStats:
    baseline_only: int
    crawl_only: int
    overridden: int
    unchanged: int


def scope_snapshot(snapshot: StorageSnapshot, scope: SnapshotScope) -> StorageSnapshot:
    if scope.unrestricted:
        return snapshot.copy()

    kept = {key: value for key, value in snapshot.entries.items() if scope.admits(key)}
    LOGGER.info(
        'snapshot scoped kept=%s dropped=%s keep_pallets=%s exclude_pallets=%s',
        len(kept),
        len(snapshot) - len(kept),
        ','.join(scope.keep_pallets) or '-',
        ','.join(scope.exclude_pallets) or '-'
    )
    return StorageSnapshot(entries=kept, block_hash=snapshot.block_hash)


def merge_stats(baseline: ChainSpecification, snapshot: StorageSnapshot) -> MergeStats:
    base = baseline.genesis.top.entries
    overridden = unchanged = 0
    for key, value in snapshot.entries.items():
        if key not in base:
            continue
        if base[key] == value:
            unchanged += 1
        else:
            overridden += 1
    shared = overridden + unchanged
    return MergeStats(
        baseline_only=len(base) - shared,
        crawl_only=len(snapshot) - shared,
        overridden=overridden,
        unchanged=unchanged
    )


def merge_specs(baseline: ChainSpecification, snapshot: StorageSnapshot) -> ChainSpecification:
    """Layer crawled storage over the baseline genesis.

    A key present in the crawl takes the crawled value; a key only the baseline
    has keeps the baseline value. Everything outside genesis storage is the
    baseline's, untouched.
    """
    merged = baseline.copy()
    top = merged.genesis.top
    for key, value in snapshot.entries.items():
        top.entries[key] = value
    top.block_hash = snapshot.block_hash

    stats = merge_stats(baseline, snapshot)
    LOGGER.info(
        'merged genesis entries=%s baseline_only=%s crawl_only=%s overridden=%s unchanged=%s block=%s',
        len(top),
        stats.baseline_only,
        stats.crawl_only,
        stats.overridden,
        stats.unchanged,
        storage_codec.encode(snapshot.block_hash) if snapshot.block_hash is not None else '-'
    )
    return merged
