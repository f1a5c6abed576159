from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping

from .chain_spec import ChainSpecification, SpecFormatError
from .errors import BaselineUnavailable, MalformedEncoding

LOGGER = logging.getLogger('forkoff.baseline')

DEV_CHAIN = 'dev'


class BaselineProvider(ABC):
    @abstractmethod
    async def provide_baseline(self, network_template_id: str) -> ChainSpecification:
        ...


def chain_args(network_template_id: str) -> list[str]:
    if network_template_id.strip().lower() == DEV_CHAIN:
        return ['--dev']
    return ['--chain', network_template_id]


def parse_baseline(payload: bytes | str, source: str) -> ChainSpecification:
    try:
        document = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BaselineUnavailable(f'{source} did not produce valid JSON: {exc}') from exc

    try:
        return ChainSpecification.from_document(document)
    except SpecFormatError as exc:
        raise BaselineUnavailable(f'{source} produced an unusable chain spec: {exc}') from exc
    except MalformedEncoding as exc:
        raise BaselineUnavailable(
            f'{source} produced malformed genesis storage: {exc.detail}',
            key=exc.key
        ) from exc


class BuildSpecProvider(BaselineProvider):
    """Builds a raw chain spec with the node binary's ``build-spec`` subcommand."""

    def __init__(self, binary: str | Path) -> None:
        self.binary = Path(binary)

    async def provide_baseline(self, network_template_id: str) -> ChainSpecification:
        args = [str(self.binary), 'build-spec', *chain_args(network_template_id), '--raw']
        source = f'{self.binary.name} build-spec ({network_template_id})'
        LOGGER.info('building baseline spec chain=%s binary=%s', network_template_id, self.binary)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as exc:
            raise BaselineUnavailable(f'cannot start {source}: {exc}', path=str(self.binary)) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            tail = stderr.decode('utf-8', errors='replace').strip()[-500:]
            raise BaselineUnavailable(
                f'{source} exited with code {process.returncode}: {tail}',
                path=str(self.binary)
            )

        spec = parse_baseline(stdout, source)
        LOGGER.info(
            'baseline ready chain=%s name=%s id=%s genesis_entries=%s',
            network_template_id,
            spec.name,
            spec.id,
            len(spec.genesis.top)
        )
        return spec


class FileBaselineProvider(BaselineProvider):
    """Serves raw chain specs that were built ahead of time, one file per template id."""

    def __init__(self, paths: Mapping[str, str | Path]) -> None:
        self.paths = {template_id: Path(path) for template_id, path in paths.items()}

    async def provide_baseline(self, network_template_id: str) -> ChainSpecification:
        path = self.paths.get(network_template_id)
        if path is None:
            raise BaselineUnavailable(f'no baseline file configured for {network_template_id!r}')

        try:
            payload = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise BaselineUnavailable(f'cannot read baseline file: {exc}', path=str(path)) from exc

        spec = parse_baseline(payload, str(path))
        LOGGER.info('baseline loaded path=%s name=%s id=%s', path, spec.name, spec.id)
        return spec
