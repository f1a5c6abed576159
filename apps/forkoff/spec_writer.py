from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .chain_spec import ChainSpecification, StorageSnapshot
from .errors import MalformedEncoding, WriteFailed
from .metrics import GENESIS_ENTRIES

LOGGER = logging.getLogger('forkoff.spec_writer')


def _sorted_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sorted_json(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sorted_json(item) for item in value]
    return value


def _dump(document: Any) -> bytes:
    return (json.dumps(document, indent=2, ensure_ascii=False) + '\n').encode('utf-8')


def serialize_spec(spec: ChainSpecification) -> bytes:
    document = spec.to_document()
    # Top-level field order is fixed by to_document; everything nested is sorted.
    for key, value in document.items():
        if key != 'genesis':
            document[key] = _sorted_json(value)
    raw = document['genesis']['raw']
    raw['childrenDefault'] = _sorted_json(raw['childrenDefault'])
    return _dump(document)


def write_atomic(path: str | Path, payload: bytes) -> None:
    target = Path(path)
    tmp_name: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='wb',
            dir=target.parent,
            prefix=f'.{target.name}.',
            suffix='.tmp',
            delete=False
        ) as handle:
            tmp_name = handle.name
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise WriteFailed(f'cannot write {target}: {exc.strerror or exc}', path=str(target)) from exc


def write_spec(spec: ChainSpecification, path: str | Path) -> None:
    payload = serialize_spec(spec)
    write_atomic(path, payload)
    GENESIS_ENTRIES.set(len(spec.genesis.top))
    LOGGER.info(
        'fork spec written path=%s name=%s id=%s genesis_entries=%s bytes=%s',
        path,
        spec.name,
        spec.id,
        len(spec.genesis.top),
        len(payload)
    )


def load_snapshot_cache(path: str | Path) -> StorageSnapshot | None:
    cache_path = Path(path)
    if not cache_path.exists():
        return None

    try:
        payload = json.loads(cache_path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as exc:
        raise MalformedEncoding(f'unreadable storage cache: {exc}', path=str(cache_path)) from exc
    if not isinstance(payload, dict):
        raise MalformedEncoding('storage cache must be a JSON object', path=str(cache_path))

    try:
        snapshot = StorageSnapshot.from_hex(payload)
    except MalformedEncoding as exc:
        raise MalformedEncoding(exc.detail, key=exc.key, path=str(cache_path)) from exc
    LOGGER.info('using existing storage path=%s entries=%s', cache_path, len(snapshot))
    return snapshot


def save_snapshot_cache(snapshot: StorageSnapshot, path: str | Path) -> None:
    write_atomic(path, _dump(snapshot.to_hex()))
    LOGGER.info('storage cached path=%s entries=%s', path, len(snapshot))
