from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Iterable, Sequence

from . import storage_codec
from .chain_spec import ChainSpecification
from .errors import ConfigError, MalformedEncoding, UnknownPatchTarget
from .metrics import PATCH_RULES_APPLIED_TOTAL
from .storage_keys import (
    CODE_KEY,
    GENESIS_MARKER_KEY,
    GENESIS_MARKER_VALUE,
    LAST_RUNTIME_UPGRADE_KEY,
    SUDO_KEY,
    encode_u64,
    resolve_storage_path
)

LOGGER = logging.getLogger('forkoff.patch_rules')

FORK_SUFFIX = '-fork'
ACCOUNT_ID_LENGTH = 32
CLI_SET = 'set'
CLI_REMOVE = 'remove'

_TARGET_FIELDS = ('key', 'prefix', 'storage_key', 'storage_prefix')
_VALUE_FIELDS = ('value', 'u64', 'value_file')


class PatchAction(str, Enum):
    REPLACE = 'replace'
    REMOVE = 'remove'


class RuleSource(IntEnum):
    BUILTIN = 0
    FILE = 1
    CLI = 2


@dataclass(frozen=True)
class PatchRule:
    target: bytes
    action: PatchAction = PatchAction.REPLACE
    value: bytes | None = None
    is_prefix: bool = False
    source: RuleSource = RuleSource.FILE
    must_exist: bool = True
    label: str = ''

    def __post_init__(self) -> None:
        if self.action is PatchAction.REPLACE and self.value is None:
            raise ValueError('replace rule needs a value')
        if self.action is PatchAction.REMOVE and self.value is not None:
            raise ValueError('remove rule cannot carry a value')

    def describe(self) -> str:
        kind = 'prefix' if self.is_prefix else 'key'
        name = f' ({self.label})' if self.label else ''
        return f'{self.source.name.lower()}:{self.action.value} {kind}={storage_codec.encode(self.target)}{name}'


@dataclass
class PatchReport:
    replaced: int = 0
    inserted: int = 0
    removed: int = 0
    prefix_matches: int = 0
    missing_targets: list[str] = field(default_factory=list)


def order_rules(rules: Iterable[PatchRule]) -> list[PatchRule]:
    # Stable: rules of one source keep the order they were given in.
    return sorted(rules, key=lambda rule: rule.source)


def apply_patch_rules(
    spec: ChainSpecification,
    rules: Sequence[PatchRule],
    strict: bool = True
) -> tuple[ChainSpecification, PatchReport]:
    patched = spec.copy()
    top = patched.genesis.top.entries
    merged_keys = sorted(top)
    merged_set = frozenset(merged_keys)
    report = PatchReport()

    for rule in order_rules(rules):
        if rule.is_prefix:
            # Prefix matches are taken from the merged state, never from earlier rules' output.
            matched = [key for key in merged_keys if key.startswith(rule.target)]
            report.prefix_matches += len(matched)
            if not matched:
                LOGGER.info('prefix rule matched nothing rule=%s', rule.describe())
            for key in matched:
                _apply_to_key(top, key, rule, report)
        else:
            if rule.target not in merged_set and rule.target not in top and rule.must_exist:
                if strict:
                    raise UnknownPatchTarget(
                        f'{rule.action.value} of a key absent from the merged genesis',
                        key=storage_codec.encode(rule.target),
                        rule=rule.describe()
                    )
                LOGGER.warning('patch target missing, applying anyway rule=%s', rule.describe())
                report.missing_targets.append(storage_codec.encode(rule.target))
            _apply_to_key(top, rule.target, rule, report)
        PATCH_RULES_APPLIED_TOTAL.labels(action=rule.action.value).inc()

    LOGGER.info(
        'patch rules applied rules=%s replaced=%s inserted=%s removed=%s prefix_matches=%s',
        len(rules),
        report.replaced,
        report.inserted,
        report.removed,
        report.prefix_matches
    )
    return patched, report


def _apply_to_key(top: dict[bytes, bytes], key: bytes, rule: PatchRule, report: PatchReport) -> None:
    if rule.action is PatchAction.REMOVE:
        if top.pop(key, None) is not None:
            report.removed += 1
        return

    assert rule.value is not None
    if key in top:
        report.replaced += 1
    else:
        report.inserted += 1
    top[key] = rule.value


@dataclass(frozen=True)
class IdentityOverrides:
    name: str | None = None
    chain_id: str | None = None
    clear_boot_nodes: bool = True


def apply_identity(
    spec: ChainSpecification,
    original: ChainSpecification | None,
    overrides: IdentityOverrides
) -> ChainSpecification:
    """Give the fork its own name, id and peers.

    Defaults derive from the forked network's own spec (``<name>-fork``); its
    protocol id is carried over as is.
    """
    patched = spec.copy()
    source = original or spec
    patched.name = overrides.name or f'{source.name}{FORK_SUFFIX}'
    patched.id = overrides.chain_id or f'{source.id}{FORK_SUFFIX}'
    if original is not None:
        patched.protocol_id = original.protocol_id
    if overrides.clear_boot_nodes:
        patched.boot_nodes = []
    LOGGER.info(
        'fork identity name=%s id=%s protocol_id=%s boot_nodes=%s',
        patched.name,
        patched.id,
        patched.protocol_id,
        len(patched.boot_nodes)
    )
    return patched


def independence_rules(
    *,
    runtime_code: bytes | None = None,
    crawled_code: bytes | None = None,
    sudo_account: bytes | None = None
) -> list[PatchRule]:
    rules = [
        PatchRule(
            target=LAST_RUNTIME_UPGRADE_KEY,
            action=PatchAction.REMOVE,
            source=RuleSource.BUILTIN,
            must_exist=False,
            label='System.LastRuntimeUpgrade'
        )
    ]

    code = runtime_code if runtime_code is not None else crawled_code
    if code is None:
        LOGGER.warning('no runtime code from a wasm file or the crawl; keeping the baseline :code')
    else:
        rules.append(
            PatchRule(
                target=CODE_KEY,
                value=code,
                source=RuleSource.BUILTIN,
                must_exist=False,
                label=':code'
            )
        )

    rules.append(
        PatchRule(
            target=GENESIS_MARKER_KEY,
            value=GENESIS_MARKER_VALUE,
            source=RuleSource.BUILTIN,
            must_exist=False,
            label='genesis marker'
        )
    )

    if sudo_account is not None:
        if len(sudo_account) != ACCOUNT_ID_LENGTH:
            raise ConfigError(f'sudo account must be {ACCOUNT_ID_LENGTH} bytes, got {len(sudo_account)}')
        rules.append(
            PatchRule(
                target=SUDO_KEY,
                value=sudo_account,
                source=RuleSource.BUILTIN,
                must_exist=False,
                label='Sudo.Key'
            )
        )
    return rules


def parse_rule(
    entry: Any,
    index: int,
    source: RuleSource = RuleSource.FILE,
    base_dir: Path | None = None
) -> PatchRule:
    where = f'{source.name.lower()} rule {index}'
    if not isinstance(entry, dict):
        raise ConfigError(f'{where} must be an object', rule=str(entry))

    targets = [name for name in _TARGET_FIELDS if name in entry]
    if len(targets) != 1:
        raise ConfigError(f'{where} needs exactly one of {", ".join(_TARGET_FIELDS)}', rule=json.dumps(entry))
    target_field = targets[0]
    target = _parse_target(target_field, entry[target_field], where)

    remove = entry.get('remove', False)
    if not isinstance(remove, bool):
        raise ConfigError(f'{where}: remove must be true or false', rule=json.dumps(entry))
    values = [name for name in _VALUE_FIELDS if name in entry]
    if remove and values:
        raise ConfigError(f'{where}: a remove rule takes no value', rule=json.dumps(entry))
    if not remove and len(values) != 1:
        raise ConfigError(f'{where} needs exactly one of {", ".join(_VALUE_FIELDS)} or remove', rule=json.dumps(entry))

    must_exist = entry.get('must_exist', True)
    if not isinstance(must_exist, bool):
        raise ConfigError(f'{where}: must_exist must be true or false', rule=json.dumps(entry))

    value = None if remove else _parse_value(values[0], entry[values[0]], where, base_dir)
    return PatchRule(
        target=target,
        action=PatchAction.REMOVE if remove else PatchAction.REPLACE,
        value=value,
        is_prefix=target_field in {'prefix', 'storage_prefix'},
        source=source,
        must_exist=must_exist,
        label=str(entry.get('label') or (entry[target_field] if target_field.startswith('storage') else ''))
    )


def _parse_target(field_name: str, raw: Any, where: str) -> bytes:
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f'{where}: {field_name} must be a non-empty string')
    if field_name.startswith('storage'):
        try:
            return resolve_storage_path(raw)
        except ValueError as exc:
            raise ConfigError(f'{where}: {exc}') from exc
    return parse_key_text(raw, where)


def parse_key_text(raw: str, where: str) -> bytes:
    text = raw.strip()
    # Well-known keys such as ':code' may be given in their text form.
    if text.startswith(':'):
        return text.encode('utf-8')
    try:
        return storage_codec.decode(text)
    except MalformedEncoding as exc:
        raise ConfigError(f'{where}: bad key {raw!r}: {exc.detail}') from exc


def _parse_value(field_name: str, raw: Any, where: str, base_dir: Path | None) -> bytes:
    if field_name == 'u64':
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ConfigError(f'{where}: u64 must be an integer')
        try:
            return encode_u64(raw)
        except ValueError as exc:
            raise ConfigError(f'{where}: {exc}') from exc

    if field_name == 'value_file':
        if not isinstance(raw, str):
            raise ConfigError(f'{where}: value_file must be a path')
        path = Path(raw)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ConfigError(f'{where}: cannot read value_file: {exc}', path=str(path)) from exc

    try:
        return storage_codec.decode(raw)
    except MalformedEncoding as exc:
        raise ConfigError(f'{where}: bad value: {exc.detail}') from exc


def load_patch_rules(path: str | Path) -> list[PatchRule]:
    rule_path = Path(path)
    try:
        payload = json.loads(rule_path.read_text(encoding='utf-8'))
    except OSError as exc:
        raise ConfigError(f'cannot read patch rule file: {exc}', path=str(rule_path)) from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f'patch rule file is not valid JSON: {exc}', path=str(rule_path)) from exc

    entries = payload.get('rules') if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise ConfigError('patch rule file must hold a list of rules', path=str(rule_path))

    rules = [
        parse_rule(entry, index, RuleSource.FILE, base_dir=rule_path.parent)
        for index, entry in enumerate(entries)
    ]
    LOGGER.info('patch rules loaded path=%s count=%s', rule_path, len(rules))
    return rules


def cli_rules(edits: Sequence[tuple[str, str]]) -> list[PatchRule]:
    """Build rules from ('set', 'KEY=VALUE') and ('remove', 'KEY') edits, keeping their order."""
    rules: list[PatchRule] = []
    for index, (verb, text) in enumerate(edits):
        if verb == CLI_SET:
            target, sep, value = text.partition('=')
            if not sep:
                raise ConfigError(f'--set expects KEY=VALUE, got {text!r}')
            entry = _cli_entry(target, {'value': value.strip()})
        elif verb == CLI_REMOVE:
            entry = _cli_entry(text, {'remove': True})
        else:
            raise ConfigError(f'unknown patch edit {verb!r}')
        rules.append(parse_rule(entry, index, RuleSource.CLI))
    return rules


def _cli_entry(target: str, action: dict[str, Any]) -> dict[str, Any]:
    text = target.strip()
    if text.startswith(('0x', ':')):
        return {'key': text, **action}
    return {'storage_key': text, **action}
