import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from apps.forkoff.config import get_settings
from apps.forkoff.errors import BaselineUnavailable, CrawlFailed, UnknownPatchTarget
from apps.forkoff.main import gather_producers, main, run_fork
from apps.forkoff.spec_writer import serialize_spec
from apps.forkoff.storage_keys import (
    CODE_KEY,
    DEV_SUDO_ACCOUNT,
    GENESIS_MARKER_KEY,
    LAST_RUNTIME_UPGRADE_KEY,
    SUDO_KEY,
    SYSTEM_ACCOUNT_PREFIX,
    storage_prefix
)
from apps.forkoff.tests.fakes import (
    BLOCK,
    FakeStorageRpc,
    StaticBaselineProvider,
    make_settings,
    make_spec
)

ACCOUNT_KEY = SYSTEM_ACCOUNT_PREFIX + b'\x01' * 32
SYSTEM_NUMBER_KEY = storage_prefix('System', 'Number')
ISSUANCE_KEY = storage_prefix('Balances', 'TotalIssuance')


class BlockingRpc(FakeStorageRpc):
    def __init__(self, storage):
        super().__init__(storage)
        self.cancelled = False

    async def pin_block(self, finalized=False):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return self.block_hash


class RunForkTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.baseline = make_spec(
            {
                CODE_KEY: b'dev-code',
                SYSTEM_NUMBER_KEY: b'\x00',
                ISSUANCE_KEY: b'\x00',
                LAST_RUNTIME_UPGRADE_KEY: b'\x01'
            }
        )
        self.original = make_spec({}, name='Kusama', chain_id='ksmcc3', protocol_id='ksmcc3')
        self.live = {
            CODE_KEY: b'live-code',
            ACCOUNT_KEY: b'\x99',
            SYSTEM_NUMBER_KEY: b'\x42',
            ISSUANCE_KEY: b'\x77',
            LAST_RUNTIME_UPGRADE_KEY: b'\x02'
        }

    def tearDown(self) -> None:
        get_settings.cache_clear()

    async def test_forks_live_state_onto_the_baseline(self) -> None:
        rpc = FakeStorageRpc(self.live)
        provider = StaticBaselineProvider({'dev': self.baseline, 'kusama': self.original})
        settings = make_settings(original_chain='kusama', at_block='0x' + BLOCK.hex())

        spec = await run_fork(settings, rpc=rpc, provider=provider)
        top = spec.genesis.top

        self.assertEqual(top.get(ACCOUNT_KEY), b'\x99')
        self.assertEqual(top.get(ISSUANCE_KEY), b'\x77')
        self.assertEqual(top.get(SYSTEM_NUMBER_KEY), b'\x00')
        self.assertEqual(top.get(CODE_KEY), b'live-code')
        self.assertEqual(top.get(GENESIS_MARKER_KEY), b'\x01')
        self.assertEqual(top.get(SUDO_KEY), DEV_SUDO_ACCOUNT)
        self.assertNotIn(LAST_RUNTIME_UPGRADE_KEY, top)
        self.assertEqual(spec.name, 'Kusama-fork')
        self.assertEqual(spec.id, 'ksmcc3-fork')
        self.assertEqual(spec.protocol_id, 'ksmcc3')
        self.assertEqual(spec.boot_nodes, [])
        self.assertEqual(spec.properties, self.baseline.properties)
        self.assertEqual(rpc.calls_of('pin_block'), [])
        self.assertTrue(rpc.closed)

    async def test_operator_rules_apply_last(self) -> None:
        rpc = FakeStorageRpc(self.live)
        provider = StaticBaselineProvider({'dev': self.baseline})
        settings = make_settings(
            exclude_pallets=(),
            sudo_key=None,
            patch_edits=(
                ('set', 'Balances.TotalIssuance=0xff'),
                ('set', ':code=0xc0de'),
                ('remove', '0x' + ACCOUNT_KEY.hex())
            )
        )

        spec = await run_fork(settings, rpc=rpc, provider=provider)
        top = spec.genesis.top

        self.assertEqual(top.get(ISSUANCE_KEY), b'\xff')
        self.assertEqual(top.get(CODE_KEY), b'\xc0\xde')
        self.assertEqual(top.get(SYSTEM_NUMBER_KEY), b'\x42')
        self.assertNotIn(ACCOUNT_KEY, top)
        self.assertNotIn(SUDO_KEY, top)
        self.assertEqual(spec.name, 'Development-fork')

    async def test_unknown_operator_target_fails_the_run(self) -> None:
        provider = StaticBaselineProvider({'dev': self.baseline})
        settings = make_settings(patch_edits=(('set', '0x0b=0x01'),))

        with self.assertRaises(UnknownPatchTarget):
            await run_fork(settings, rpc=FakeStorageRpc(self.live), provider=provider)

    async def test_disabled_crawl_forks_the_baseline_only(self) -> None:
        rpc = FakeStorageRpc(self.live)
        provider = StaticBaselineProvider({'dev': self.baseline})
        settings = make_settings(storage_cache='none', sudo_key=None)

        spec = await run_fork(settings, rpc=rpc, provider=provider)

        self.assertEqual(rpc.calls, [])
        self.assertEqual(spec.genesis.top.get(ISSUANCE_KEY), b'\x00')
        self.assertEqual(spec.genesis.top.get(CODE_KEY), b'dev-code')

    async def test_storage_cache_is_written_then_reused(self) -> None:
        provider = StaticBaselineProvider({'dev': self.baseline})
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = str(Path(tmpdir, 'storage.json'))
            settings = make_settings(storage_cache=cache)

            first = await run_fork(settings, rpc=FakeStorageRpc(self.live), provider=provider)
            second_rpc = FakeStorageRpc({})
            second = await run_fork(settings, rpc=second_rpc, provider=provider)

            self.assertTrue(Path(cache).exists())

        self.assertEqual(second_rpc.calls, [])
        self.assertEqual(serialize_spec(first), serialize_spec(second))

    async def test_baseline_failure_cancels_the_crawl(self) -> None:
        rpc = BlockingRpc(self.live)
        provider = StaticBaselineProvider({}, delay=0.01)

        with self.assertRaises(BaselineUnavailable):
            await run_fork(make_settings(), rpc=rpc, provider=provider)

        self.assertTrue(rpc.cancelled)
        self.assertTrue(rpc.closed)

    async def test_crawl_failure_surfaces(self) -> None:
        rpc = FakeStorageRpc(self.live, failures={'values': 100})
        provider = StaticBaselineProvider({'dev': self.baseline})

        with self.assertRaises(CrawlFailed):
            await run_fork(make_settings(retry_max_attempts=2), rpc=rpc, provider=provider)


class GatherProducersTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_results_by_name(self) -> None:
        async def produce(value):
            await asyncio.sleep(0)
            return value

        results = await gather_producers({'a': produce(1), 'b': produce(2)})

        self.assertEqual(results, {'a': 1, 'b': 2})


class MainTests(unittest.TestCase):
    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_writes_fork_spec_from_prebuilt_baseline(self) -> None:
        baseline = make_spec({CODE_KEY: b'dev-code', ISSUANCE_KEY: b'\x05'})
        with tempfile.TemporaryDirectory() as tmpdir:
            base_path = Path(tmpdir, 'dev.json')
            base_path.write_bytes(serialize_spec(baseline))
            out_path = Path(tmpdir, 'fork.json')
            metrics_path = Path(tmpdir, 'fork.prom')
            env = {'FORK_METRICS_TEXTFILE': str(metrics_path), 'FORK_PROGRESS': 'false'}

            with patch.dict('os.environ', env, clear=True):
                get_settings.cache_clear()
                main(['--base', str(base_path), '--storage', 'none', '-o', str(out_path)])

            document = json.loads(out_path.read_text(encoding='utf-8'))
            self.assertTrue(metrics_path.exists())

        top = document['genesis']['raw']['top']
        self.assertEqual(document['name'], 'Development-fork')
        self.assertEqual(top['0x' + ISSUANCE_KEY.hex()], '0x05')
        self.assertEqual(top['0xdeadbeef'], '0x01')

    def test_exits_with_the_error_code(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            out_path = Path(tmpdir, 'fork.json')
            with patch.dict('os.environ', {'FORK_PROGRESS': 'false'}, clear=True):
                get_settings.cache_clear()
                with self.assertRaises(SystemExit) as ctx:
                    main(['--base', str(Path(tmpdir, 'absent.json')), '--storage', 'none', '-o', str(out_path)])

            self.assertFalse(out_path.exists())
        self.assertEqual(ctx.exception.code, BaselineUnavailable.exit_code)

    def test_bad_block_hash_is_a_config_error(self) -> None:
        with patch.dict('os.environ', {}, clear=True):
            get_settings.cache_clear()
            with self.assertRaises(SystemExit) as ctx:
                main(['--at', '0x1234', '--storage', 'none'])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == '__main__':
    unittest.main()
