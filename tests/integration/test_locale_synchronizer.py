"""
End-to-end tests for the synchronization pipeline over a real locales tree on
disk, with the translation service replaced by a deterministic stub.
"""
import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

from locale_sync import translate_locales
from locale_sync.catalog import load_catalog
from locale_sync.catalog_sync import compute_diff
from locale_sync.translate_locales import LocaleSynchronizer, ReferenceLocaleError
from tests.stubs import (
    StubTranslatorClient,
    fake_translation,
    make_config,
    read_json,
    read_text,
    write_json
)

REFERENCE = {
    "zeta.title": "Título",
    "alpha.greeting": "Olá",
    "mid.farewell": "Tchau",
    "beta.thanks": "Obrigado",
}


class TestLocaleSynchronizer(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = os.path.join(self.temp_dir, 'locales')
        write_json(self.path('pt-BR', 'common.json'), REFERENCE)
        os.makedirs(os.path.join(self.root, 'en'))
        os.makedirs(os.path.join(self.root, 'es'))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def path(self, locale, file_name='common.json'):
        return os.path.join(self.root, locale, file_name)

    async def sync(self, client, **overrides):
        synchronizer = LocaleSynchronizer(make_config(self.root, client, **overrides))
        return await synchronizer.run()

    async def test_new_file_is_created_with_every_translated_key(self):
        client = StubTranslatorClient()

        summary = await self.sync(client)

        for locale in ('en', 'es'):
            written = read_json(self.path(locale))
            self.assertEqual(written, {key: fake_translation(value, locale) for key, value in REFERENCE.items()})
            messages = summary.messages_for(locale)
            self.assertTrue(any(m.startswith("New file needed: 4 key(s)") for m in messages))
            self.assertIn(f"({locale}/common.json) -> Values added: 4", messages)

    async def test_output_follows_reference_key_order(self):
        write_json(self.path('en'), {"obsolete.key": "gone", "mid.farewell": "Bye", "alpha.greeting": "Hello"})
        client = StubTranslatorClient()

        await self.sync(client)

        written = load_catalog(self.path('en'))
        self.assertEqual(list(written.keys()), list(REFERENCE.keys()))
        self.assertEqual(written["mid.farewell"], "Bye")
        self.assertEqual(written["alpha.greeting"], "Hello")
        self.assertEqual(sorted(client.keys_sent('en')), ["beta.thanks", "zeta.title"])

    async def test_no_difference_means_no_write(self):
        existing = {key: f"done {key}" for key in REFERENCE}
        write_json(self.path('en'), existing)
        os.utime(self.path('en'), (1_000_000, 1_000_000))
        client = StubTranslatorClient()

        summary = await self.sync(client)

        self.assertEqual(client.keys_sent('en'), [])
        self.assertEqual(os.path.getmtime(self.path('en')), 1_000_000)
        self.assertIn(
            "No difference between (en/common.json) and (pt-BR/common.json).",
            summary.messages_for('en')
        )

    async def test_second_run_is_idempotent(self):
        await self.sync(StubTranslatorClient())
        first_content = read_text(self.path('es'))

        client = StubTranslatorClient()
        summary = await self.sync(client)

        self.assertEqual(read_text(self.path('es')), first_content)
        self.assertEqual(client.calls, [])
        self.assertTrue(all(m.startswith("No difference") for m in summary.messages_for('es')))

    async def test_retry_exhaustion_leaves_keys_out_and_completes(self):
        client = StubTranslatorClient(fail_keys=["alpha.greeting"])

        summary = await self.sync(client, chunk_size=2)

        # Chunk ["zeta.title", "alpha.greeting"] always fails; the other chunk succeeds.
        for locale in ('en', 'es'):
            written = read_json(self.path(locale))
            self.assertEqual(list(written.keys()), ["mid.farewell", "beta.thanks"])
            failing_calls = [chunk for call_locale, chunk in client.calls
                             if call_locale == locale and "alpha.greeting" in chunk]
            self.assertEqual(len(failing_calls), 3)
            messages = summary.messages_for(locale)
            self.assertEqual(sum("failed for" in m for m in messages), 3)
            self.assertTrue(any(m.startswith("Giving up on 2 key(s)") for m in messages))

    async def test_partial_success_converges_on_next_run(self):
        reference = {f"key_{i:02d}": f"valor {i}" for i in range(40)}
        write_json(self.path('pt-BR'), reference)
        shutil.rmtree(os.path.join(self.root, 'es'))
        chunk_b = [f"key_{i:02d}" for i in range(20, 40)]

        await self.sync(StubTranslatorClient(fail_keys=["key_25"]))

        written = load_catalog(self.path('en'))
        self.assertEqual(list(written.keys()), [f"key_{i:02d}" for i in range(20)])
        self.assertEqual(list(compute_diff(written, reference).keys()), chunk_b)

        client = StubTranslatorClient()
        await self.sync(client)

        self.assertEqual(client.keys_sent('en'), chunk_b)
        self.assertEqual(list(load_catalog(self.path('en')).keys()), list(reference.keys()))

    async def test_chunks_are_sent_in_bounded_batches(self):
        reference = {f"key_{i:02d}": f"valor {i}" for i in range(45)}
        write_json(self.path('pt-BR'), reference)
        client = StubTranslatorClient()

        await self.sync(client, chunk_size=20)

        sizes = sorted((len(chunk) for locale, chunk in client.calls if locale == 'en'), reverse=True)
        self.assertEqual(sizes, [20, 20, 5])
        self.assertEqual(sorted(client.keys_sent('en')), sorted(reference.keys()))

    async def test_full_translation_resends_reference_and_counts_changes(self):
        existing = dict((key, fake_translation(value, 'en')) for key, value in REFERENCE.items())
        existing["alpha.greeting"] = "Hi there"
        write_json(self.path('en'), existing)
        client = StubTranslatorClient()

        summary = await self.sync(client, full_translation=True)

        self.assertEqual(sorted(client.keys_sent('en')), sorted(REFERENCE.keys()))
        self.assertEqual(read_json(self.path('en'))["alpha.greeting"], fake_translation("Olá", 'en'))
        self.assertIn("(en/common.json) -> Values added: 1", summary.messages_for('en'))
        self.assertIn("already be translated", client.prompts[0])

    async def test_unreadable_target_file_is_isolated(self):
        with open(self.path('es'), 'w', encoding='utf-8') as f:
            f.write('{"alpha.greeting": ')
        client = StubTranslatorClient()

        summary = await self.sync(client)

        self.assertEqual(read_text(self.path('es')), '{"alpha.greeting": ')
        self.assertTrue(any(m.startswith("Error reading file (es/common.json)") for m in summary.messages_for('es')))
        self.assertEqual(len(read_json(self.path('en'))), len(REFERENCE))

    async def test_write_error_is_isolated(self):
        real_write = translate_locales.write_catalog

        def failing_write(file_path, catalog):
            if os.sep + 'es' + os.sep in file_path:
                raise PermissionError(f"Permission denied: '{file_path}'")
            real_write(file_path, catalog)

        with patch('locale_sync.translate_locales.write_catalog', side_effect=failing_write):
            summary = await self.sync(StubTranslatorClient())

        self.assertFalse(os.path.exists(self.path('es')))
        self.assertTrue(any(m.startswith("Error saving file (es/common.json)") for m in summary.messages_for('es')))
        self.assertIn("(en/common.json) -> Values added: 4", summary.messages_for('en'))

    async def test_unexpected_pipeline_error_is_isolated(self):
        synchronizer = LocaleSynchronizer(make_config(self.root, StubTranslatorClient()))
        real_sync = synchronizer.sync_file_for_locale

        async def exploding_sync(locale, file_name, reference_catalog):
            if locale == 'es':
                raise RuntimeError("boom")
            return await real_sync(locale, file_name, reference_catalog)

        synchronizer.sync_file_for_locale = exploding_sync
        summary = await synchronizer.run()

        self.assertIn("Unexpected error while synchronizing (es/common.json): boom", summary.messages_for('es'))
        self.assertTrue(os.path.exists(self.path('en')))

    async def test_invalid_reference_file_is_skipped(self):
        with open(self.path('pt-BR', 'broken.json'), 'w', encoding='utf-8') as f:
            f.write('not json')
        client = StubTranslatorClient()

        summary = await self.sync(client)

        self.assertTrue(any(m.startswith("Error reading reference file (pt-BR/broken.json)")
                            for m in summary.messages_for('pt-BR')))
        self.assertTrue(os.path.exists(self.path('en')))
        self.assertFalse(os.path.exists(self.path('en', 'broken.json')))

    async def test_only_json_files_and_directories_are_considered(self):
        with open(self.path('pt-BR', 'README.md'), 'w', encoding='utf-8') as f:
            f.write('notes')
        with open(os.path.join(self.root, 'stray.txt'), 'w', encoding='utf-8') as f:
            f.write('not a locale')
        client = StubTranslatorClient()

        await self.sync(client)

        self.assertEqual({locale for locale, _ in client.calls}, {'en', 'es'})
        self.assertFalse(os.path.exists(self.path('en', 'README.md')))

    async def test_multiple_files_fan_out_under_concurrency_ceiling(self):
        for name in ('auth', 'billing', 'settings'):
            write_json(self.path('pt-BR', f'{name}.json'), {f"{name}.{i}": f"texto {i}" for i in range(5)})
        client = StubTranslatorClient(delay=0.01)

        await self.sync(client, chunk_size=2, max_concurrent_api_calls=2)

        self.assertLessEqual(client.max_in_flight, 2)
        self.assertEqual(len(read_json(self.path('es', 'billing.json'))), 5)
        self.assertEqual(len(read_json(self.path('en', 'common.json'))), len(REFERENCE))

    async def test_same_reference_path_is_processed_once(self):
        config = make_config(self.root, StubTranslatorClient())
        synchronizer = LocaleSynchronizer(config)
        synchronizer.processed_files.add(os.path.abspath(self.path('pt-BR')))

        summary = await synchronizer.run()

        self.assertEqual(len(summary), 0)
        self.assertFalse(os.path.exists(self.path('en')))

    async def test_dry_run_reports_without_calling_or_writing(self):
        summary = await self.sync(None, dry_run=True)

        self.assertFalse(os.path.exists(self.path('en')))
        self.assertIn("[Dry Run] Would translate 4 key(s) for (en/common.json).", summary.messages_for('en'))

    async def test_missing_client_outside_dry_run_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.sync(None)

    async def test_missing_reference_locale_is_fatal(self):
        shutil.rmtree(os.path.join(self.root, 'pt-BR'))

        with self.assertRaises(ReferenceLocaleError):
            await self.sync(StubTranslatorClient())

    async def test_missing_locales_root_is_fatal(self):
        config = make_config(os.path.join(self.temp_dir, 'nowhere'), StubTranslatorClient())

        with self.assertRaises(ReferenceLocaleError):
            await LocaleSynchronizer(config).run()


class TestMain(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = os.path.join(self.temp_dir, 'locales')
        write_json(os.path.join(self.root, 'pt-BR', 'common.json'), {"greeting": "Olá"})
        os.makedirs(os.path.join(self.root, 'en'))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_main_prints_grouped_summary_and_returns_zero(self):
        config = make_config(self.root, StubTranslatorClient(fail_keys=["greeting"]))

        out = io.StringIO()
        with patch('locale_sync.translate_locales.load_app_config', return_value=config), redirect_stdout(out):
            exit_code = await translate_locales.main()

        self.assertEqual(exit_code, 0)
        printed = out.getvalue()
        self.assertIn("Summary for en:", printed)
        self.assertIn("Giving up on 1 key(s) for (en/common.json)", printed)

    async def test_main_returns_one_when_reference_is_missing(self):
        config = make_config(self.root, StubTranslatorClient(), reference_locale='fr')

        with patch('locale_sync.translate_locales.load_app_config', return_value=config):
            exit_code = await translate_locales.main()

        self.assertEqual(exit_code, 1)


if __name__ == '__main__':
    unittest.main()
