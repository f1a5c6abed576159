from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Mapping

from . import storage_codec
from .baseline import BaselineProvider, BuildSpecProvider, FileBaselineProvider
from .chain_spec import ChainSpecification, StorageSnapshot
from .config import Settings, get_settings
from .crawler import CrawlOptions, crawl_storage
from .errors import ConfigError, ForkError, MalformedEncoding
from .merger import SnapshotScope, merge_specs, scope_snapshot
from .metrics import write_metrics_textfile
from .patch_rules import (
    CLI_REMOVE,
    CLI_SET,
    IdentityOverrides,
    PatchRule,
    apply_identity,
    apply_patch_rules,
    cli_rules,
    independence_rules,
    load_patch_rules
)
from .retry import RetryPolicy
from .rpc import BLOCK_HASH_LENGTH, StorageRpc, SubstrateRpcAdapter
from .spec_writer import load_snapshot_cache, save_snapshot_cache, write_spec
from .storage_keys import CODE_KEY

LOGGER = logging.getLogger('forkoff.main')


@dataclasses.dataclass(frozen=True)
class RunInputs:
    at_block: bytes | None
    runtime_code: bytes | None
    sudo_account: bytes | None
    operator_rules: list[PatchRule]


def parse_block_hash(text: str | None) -> bytes | None:
    if text is None:
        return None
    try:
        block_hash = storage_codec.decode(text.strip())
    except MalformedEncoding as exc:
        raise ConfigError(f'block hash {text!r} is not valid hex: {exc.detail}') from exc
    if len(block_hash) != BLOCK_HASH_LENGTH:
        raise ConfigError(f'block hash must be {BLOCK_HASH_LENGTH} bytes, got {len(block_hash)}')
    return block_hash


def prepare_inputs(settings: Settings) -> RunInputs:
    """Resolve everything the operator configured before any network work starts."""
    runtime_code = None
    if settings.runtime_wasm:
        LOGGER.info('reading runtime wasm path=%s', settings.runtime_wasm)
        try:
            runtime_code = Path(settings.runtime_wasm).read_bytes()
        except OSError as exc:
            raise ConfigError(f'cannot read runtime wasm: {exc}', path=settings.runtime_wasm) from exc

    sudo_account = None
    if settings.sudo_key:
        try:
            sudo_account = storage_codec.decode(settings.sudo_key)
        except MalformedEncoding as exc:
            raise ConfigError(f'sudo key is not valid hex: {exc.detail}') from exc

    operator_rules: list[PatchRule] = []
    if settings.patch_rules_path:
        operator_rules.extend(load_patch_rules(settings.patch_rules_path))
    operator_rules.extend(cli_rules(settings.patch_edits))

    return RunInputs(
        at_block=parse_block_hash(settings.at_block),
        runtime_code=runtime_code,
        sudo_account=sudo_account,
        operator_rules=operator_rules
    )


def crawl_options(settings: Settings) -> CrawlOptions:
    return CrawlOptions(
        page_size=settings.page_size,
        value_batch_size=settings.value_batch_size,
        max_in_flight=settings.max_in_flight,
        pin_finalized=settings.pin_finalized,
        retry=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds
        ),
        progress=settings.progress
    )


def baseline_provider(settings: Settings) -> BaselineProvider:
    if settings.node_binary:
        return BuildSpecProvider(settings.node_binary)
    # Without a node binary the chain arguments name prebuilt raw spec files.
    chains = [settings.base_chain]
    if settings.original_chain:
        chains.append(settings.original_chain)
    return FileBaselineProvider({chain: chain for chain in chains})


async def load_snapshot(
    settings: Settings,
    rpc: StorageRpc | None,
    at_block: bytes | None
) -> StorageSnapshot:
    if settings.crawl_disabled:
        LOGGER.info('storage crawl disabled; forking the baseline genesis only')
        return StorageSnapshot()

    if settings.storage_cache:
        cached = await asyncio.to_thread(load_snapshot_cache, settings.storage_cache)
        if cached is not None:
            return cached

    adapter = rpc or SubstrateRpcAdapter(settings.rpc_url, settings.rpc_timeout_seconds)
    snapshot = await crawl_storage(adapter, crawl_options(settings), at=at_block)

    if settings.storage_cache:
        await asyncio.to_thread(save_snapshot_cache, snapshot, settings.storage_cache)
    return snapshot


async def gather_producers(producers: Mapping[str, Awaitable[Any]]) -> dict[str, Any]:
    """Run independent producers together; the first failure cancels the rest."""
    tasks = {name: asyncio.ensure_future(producer) for name, producer in producers.items()}
    try:
        await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        failed = [task for task in tasks.values() if task.done() and not task.cancelled() and task.exception()]
        if failed:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            failed[0].result()
        return {name: task.result() for name, task in tasks.items()}
    finally:
        for task in tasks.values():
            if not task.done():
                task.cancel()


async def run_fork(
    settings: Settings,
    *,
    rpc: StorageRpc | None = None,
    provider: BaselineProvider | None = None
) -> ChainSpecification:
    inputs = prepare_inputs(settings)
    provider = provider or baseline_provider(settings)

    producers: dict[str, Awaitable[Any]] = {
        'baseline': provider.provide_baseline(settings.base_chain),
        'snapshot': load_snapshot(settings, rpc, inputs.at_block)
    }
    if settings.original_chain:
        producers['original'] = provider.provide_baseline(settings.original_chain)
    results = await gather_producers(producers)

    snapshot: StorageSnapshot = results['snapshot']
    scope = SnapshotScope(keep_pallets=settings.keep_pallets, exclude_pallets=settings.exclude_pallets)
    merged = merge_specs(results['baseline'], scope_snapshot(snapshot, scope))

    rules = independence_rules(
        runtime_code=inputs.runtime_code,
        crawled_code=snapshot.get(CODE_KEY),
        sudo_account=inputs.sudo_account
    )
    rules.extend(inputs.operator_rules)
    patched, _report = apply_patch_rules(merged, rules, strict=settings.strict_patch_targets)

    return apply_identity(
        patched,
        results.get('original'),
        IdentityOverrides(name=settings.chain_name, chain_id=settings.chain_id)
    )


async def fork(settings: Settings) -> ChainSpecification:
    spec = await run_fork(settings)
    await asyncio.to_thread(write_spec, spec, settings.output_path)
    return spec


def _set_edit(text: str) -> tuple[str, str]:
    return (CLI_SET, text)


def _remove_edit(text: str) -> tuple[str, str]:
    return (CLI_REMOVE, text)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Fork a live chain into the genesis of a new, independent chain')
    parser.add_argument('--bin', dest='node_binary', help='node binary used to run build-spec')
    parser.add_argument('--orig', dest='original_chain', help='chain being forked (e.g. dev, test, main)')
    parser.add_argument('--base', dest='base_chain', help='chain whose spec is the base of the fork (default dev)')
    parser.add_argument('--rpc', dest='rpc_url', help='HTTP JSON-RPC url of the live node')
    parser.add_argument('--at', dest='at_block', help='block hash to take the state from (default: best block)')
    parser.add_argument('--finalized', dest='pin_finalized', action='store_const', const=True,
                        help='pin the finalized head instead of the best block')
    parser.add_argument('-o', '--out', dest='output_path', help='where to write the fork chain spec')
    parser.add_argument('--storage', dest='storage_cache',
                        help='storage cache file, read if present and written otherwise; "none" skips the crawl')
    parser.add_argument('--runtime', dest='runtime_wasm', help='runtime wasm blob to install as :code')
    parser.add_argument('--name', dest='chain_name', help='name of the fork (default <original>-fork)')
    parser.add_argument('--id', dest='chain_id', help='id of the fork (default <original>-fork)')
    parser.add_argument('--pallets', dest='keep_pallets', nargs='+', help='only keep live state of these pallets')
    parser.add_argument('--exclude-pallets', dest='exclude_pallets', nargs='*',
                        help='pallets whose live state is dropped (default System Authorship)')
    parser.add_argument('--patch-rules', dest='patch_rules_path', help='JSON file of patch rules')
    parser.add_argument('--set', dest='patch_edits', action='append', type=_set_edit, metavar='KEY=VALUE',
                        help='set a genesis key (hex key, :well-known or Pallet.Item) to a hex value')
    parser.add_argument('--remove', dest='patch_edits', action='append', type=_remove_edit, metavar='KEY',
                        help='remove a genesis key')
    parser.add_argument('--sudo-key', dest='sudo_key', help='account id (hex) installed as Sudo.Key')
    parser.add_argument('--page-size', dest='page_size', type=int, help='keys per state_getKeysPaged call')
    parser.add_argument('--max-in-flight', dest='max_in_flight', type=int, help='concurrent RPC requests')
    parser.add_argument('--lenient-patches', dest='strict_patch_targets', action='store_const', const=False,
                        help='apply rules whose exact key is missing instead of failing')
    parser.add_argument('--no-progress', dest='progress', action='store_const', const=False,
                        help='hide progress bars')
    return parser


def settings_from_args(argv: list[str] | None = None) -> Settings:
    args = _build_parser().parse_args(argv)
    overrides = {name: value for name, value in vars(args).items() if value is not None}
    for name in ('keep_pallets', 'exclude_pallets', 'patch_edits'):
        if name in overrides:
            overrides[name] = tuple(overrides[name])
    for name in ('page_size', 'max_in_flight'):
        if name in overrides and overrides[name] < 1:
            raise ConfigError(f'--{name.replace("_", "-")} must be >= 1')
    return dataclasses.replace(get_settings(), **overrides)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    metrics_path = os.getenv('FORK_METRICS_TEXTFILE', '').strip() or None
    exit_code = 0
    try:
        settings = settings_from_args(argv)
        metrics_path = settings.metrics_textfile
        asyncio.run(fork(settings))
    except ForkError as exc:
        LOGGER.error('fork failed: %s', exc)
        exit_code = exc.exit_code
    finally:
        if metrics_path:
            write_metrics_textfile(metrics_path)

    if exit_code:
        sys.exit(exit_code)
    LOGGER.info('done')


if __name__ == '__main__':
    main()
