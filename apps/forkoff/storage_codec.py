from __future__ import annotations

import re
from typing import Any, Mapping

from eth_utils import encode_hex

from .errors import MalformedEncoding

HEX_PREFIX = '0x'
_HEX_BODY = re.compile(r'(?:[0-9a-fA-F]{2})*')


def encode(raw: bytes) -> str:
    return encode_hex(bytes(raw))


def decode(text: Any) -> bytes:
    if not isinstance(text, str):
        raise MalformedEncoding(f'expected hex string, got {type(text).__name__}')
    if not text.startswith(HEX_PREFIX):
        raise MalformedEncoding('missing 0x prefix', key=_preview(text))

    body = text[len(HEX_PREFIX):]
    if len(body) % 2:
        raise MalformedEncoding('odd-length hex string', key=_preview(text))
    if not _HEX_BODY.fullmatch(body):
        raise MalformedEncoding('invalid hex characters', key=_preview(text))
    return bytes.fromhex(body)


def decode_pairs(payload: Mapping[Any, Any]) -> dict[bytes, bytes]:
    pairs: dict[bytes, bytes] = {}
    for key_text, value_text in payload.items():
        key = decode(key_text)
        try:
            value = decode(value_text)
        except MalformedEncoding as exc:
            raise MalformedEncoding(f'bad value: {exc.detail}', key=str(key_text)) from exc
        if key in pairs:
            raise MalformedEncoding('duplicate key after decoding', key=str(key_text))
        pairs[key] = value
    return pairs


def encode_pairs(pairs: Mapping[bytes, bytes]) -> dict[str, str]:
    # Sorted by raw bytes, which is also the order of the lowercase hex text.
    return {encode(key): encode(pairs[key]) for key in sorted(pairs)}


def _preview(text: str, limit: int = 80) -> str:
    if len(text) <= limit:
        return text
    return f'{text[:limit]}...'
