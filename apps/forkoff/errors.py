from __future__ import annotations

from typing import Any


class ForkError(Exception):
    kind = 'ForkError'
    exit_code = 1

    def __init__(
        self,
        detail: str,
        *,
        key: str | None = None,
        rule: str | None = None,
        path: str | None = None,
        block_hash: str | None = None
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.key = key
        self.rule = rule
        self.path = path
        self.block_hash = block_hash

    def context(self) -> dict[str, Any]:
        items = {
            'key': self.key,
            'rule': self.rule,
            'path': self.path,
            'block_hash': self.block_hash
        }
        return {name: value for name, value in items.items() if value is not None}

    def __str__(self) -> str:
        parts = [f'{self.kind}: {self.detail}']
        parts.extend(f'{name}={value}' for name, value in self.context().items())
        return ' '.join(parts)


class ConfigError(ForkError):
    kind = 'ConfigError'
    exit_code = 2


class MalformedEncoding(ForkError):
    kind = 'MalformedEncoding'
    exit_code = 3


class CrawlInconsistency(ForkError):
    kind = 'CrawlInconsistency'
    exit_code = 4


class CrawlFailed(ForkError):
    kind = 'CrawlFailed'
    exit_code = 5


class BaselineUnavailable(ForkError):
    kind = 'BaselineUnavailable'
    exit_code = 6


class UnknownPatchTarget(ForkError):
    kind = 'UnknownPatchTarget'
    exit_code = 7


class WriteFailed(ForkError):
    kind = 'WriteFailed'
    exit_code = 8


class RpcTransportError(Exception):
    """Transient RPC failure; retried by the crawler, never surfaced on its own."""

    def __init__(self, method: str, detail: str) -> None:
        super().__init__(f'{method}: {detail}')
        self.method = method
        self.detail = detail
