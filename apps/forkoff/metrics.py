from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

LOGGER = logging.getLogger('forkoff.metrics')

REGISTRY = CollectorRegistry()

KEYS_CRAWLED_TOTAL = Counter(
    'forkoff_keys_crawled_total',
    'Storage keys enumerated from the live node',
    registry=REGISTRY
)
VALUES_FETCHED_TOTAL = Counter(
    'forkoff_values_fetched_total',
    'Storage values fetched from the live node',
    registry=REGISTRY
)
RPC_REQUESTS_TOTAL = Counter(
    'forkoff_rpc_requests_total',
    'JSON-RPC requests sent to the live node',
    ['method'],
    registry=REGISTRY
)
RPC_RETRIES_TOTAL = Counter(
    'forkoff_rpc_retries_total',
    'JSON-RPC requests retried after a transient failure',
    ['method'],
    registry=REGISTRY
)
PATCH_RULES_APPLIED_TOTAL = Counter(
    'forkoff_patch_rules_applied_total',
    'Patch rules applied to the merged genesis storage',
    ['action'],
    registry=REGISTRY
)
CRAWL_DURATION_SECONDS = Gauge(
    'forkoff_crawl_duration_seconds',
    'Wall time of the last storage crawl',
    registry=REGISTRY
)
GENESIS_ENTRIES = Gauge(
    'forkoff_genesis_entries',
    'Top-level storage entries in the written fork spec',
    registry=REGISTRY
)


def write_metrics_textfile(path: str) -> None:
    try:
        write_to_textfile(path, REGISTRY)
    except OSError as exc:
        LOGGER.warning('metrics textfile write failed path=%s error=%s', path, exc)
        return
    LOGGER.info('metrics written path=%s', path)
