import asyncio
import logging
import unittest
from correlate.diff_engine import reconstruct
from ingest.errors import RevisionStreamError
from ingest.revisions import RevisionPageFetcher, format_since, revision_from_entry
from normalize.fields import DEFAULT_PROJECTION
from normalize.models import Identity
from storage.revisions import RevisionStore
from fakes import ALICE, STATE, FakeSource, entry

alice = Identity('Alice Smith', 'alice@corp.com')


def five_pages():
    return [[entry(i, 1, f"2025-03-0{i}T00:00:00Z", ALICE, **{STATE: 'New'})] for i in range(1, 6)]


def stream(source, store=None, **kwargs):
    store = store or RevisionStore()
    fetcher = RevisionPageFetcher(source, store, DEFAULT_PROJECTION, **kwargs)
    result = asyncio.run(fetcher.stream('2025-01-01T00:00:00Z'))
    return fetcher, result, store


class TestPagination(unittest.TestCase):
    def test_follows_tokens_until_exhausted(self):
        source = FakeSource(pages=five_pages())
        _, result, store = stream(source)
        self.assertEqual(source.page_tokens, [None, '1', '2', '3', '4'])
        self.assertEqual(result.pages, 5)
        self.assertFalse(result.stopped_early)
        store.finalize()
        self.assertEqual(store.entity_ids(), [1, 2, 3, 4, 5])

    def test_last_batch_flag_stops(self):
        source = FakeSource(pages=five_pages()[:3], last_batch_flag=True)
        _, result, _ = stream(source)
        self.assertEqual(len(source.page_tokens), 3)
        self.assertEqual(result.pages, 3)

    def test_empty_page_with_token_stops(self):
        pages = [[entry(1, 1, '2025-03-01T00:00:00Z', ALICE)], [], [entry(2, 1, '2025-03-01T00:00:00Z', ALICE)]]
        source = FakeSource(pages=pages)
        _, result, store = stream(source)
        self.assertEqual(source.page_tokens, [None, '1'])
        self.assertEqual(store.finalize().entity_ids(), [1])

    def test_entries_without_id_are_skipped(self):
        pages = [[entry(1, 1, '2025-03-01T00:00:00Z', ALICE), {'fields': {'System.Title': 'orphan'}}]]
        _, result, _ = stream(FakeSource(pages=pages))
        self.assertEqual(result.revisions, 1)
        self.assertEqual(result.skipped_entries, 1)

    def test_entry_with_non_mapping_fields_is_skipped(self):
        pages = [[
            entry(1, 1, '2025-03-01T00:00:00Z', ALICE),
            {'id': 2, 'rev': 1, 'fields': 'junk'},
            {'id': 3, 'rev': 1, 'fields': ['System.State']},
        ], [entry(4, 1, '2025-03-02T00:00:00Z', ALICE)]]
        _, result, store = stream(FakeSource(pages=pages))
        self.assertEqual(result.revisions, 2)
        self.assertEqual(result.skipped_entries, 2)
        self.assertFalse(result.stopped_early)
        self.assertEqual(store.finalize().entity_ids(), [1, 4])

    def test_page_timeout_is_passed_to_the_request(self):
        source = FakeSource(pages=five_pages()[:2])
        stream(source, page_timeout=7.5)
        self.assertEqual(source.page_timeouts, [7.5, 7.5])

    def test_pages_generator_yields_batches(self):
        fetcher = RevisionPageFetcher(FakeSource(pages=five_pages()[:2]), RevisionStore(), DEFAULT_PROJECTION)

        async def collect():
            return [b async for b in fetcher.pages('2025-01-01T00:00:00Z')]

        batches = asyncio.run(collect())
        self.assertEqual([len(b.revisions) for b in batches], [1, 1])
        self.assertEqual(batches[0].continuation_token, '1')
        self.assertIsNone(batches[1].continuation_token)


class TestPageFailures(unittest.TestCase):
    def test_timeout_on_page_three_keeps_earlier_pages(self):
        source = FakeSource(pages=five_pages(), block_page=2, block_seconds=0.3)
        with self.assertLogs('ingest.revisions', level=logging.WARNING) as logs:
            _, result, store = stream(source, page_timeout=0.05)
        self.assertTrue(result.stopped_early)
        self.assertIn('timed out', result.stop_reason)
        self.assertEqual(result.pages, 2)
        self.assertTrue(any('stopped early' in line for line in logs.output))

        store.finalize()
        self.assertEqual(store.entity_ids(), [1, 2])
        activities, relevant = reconstruct(store, [alice], '2025-01-01T00:00:00Z')
        self.assertEqual(relevant, {1, 2})
        self.assertEqual(len(activities), 2)

    def test_transport_error_after_first_page_degrades(self):
        source = FakeSource(pages=five_pages(), fail_pages={1})
        _, result, store = stream(source)
        self.assertTrue(result.stopped_early)
        self.assertIn('page 2 failed', result.stop_reason)
        self.assertEqual(store.finalize().entity_ids(), [1])

    def test_first_page_failure_raises(self):
        with self.assertRaises(RevisionStreamError):
            stream(FakeSource(pages=five_pages(), fail_pages={0}))

    def test_first_page_timeout_raises(self):
        with self.assertRaises(RevisionStreamError):
            stream(FakeSource(pages=five_pages(), block_page=0, block_seconds=0.3), page_timeout=0.05)


class TestProjection(unittest.TestCase):
    def test_large_text_field_rejected(self):
        with self.assertRaises(ValueError):
            RevisionPageFetcher(FakeSource(), RevisionStore(), DEFAULT_PROJECTION + ['System.Description'])

    def test_required_fields_always_requested(self):
        fetcher = RevisionPageFetcher(FakeSource(), RevisionStore(), ['System.State'])
        self.assertEqual(fetcher.fields[:4], ['System.Id', 'System.Rev', 'System.ChangedDate', 'System.ChangedBy'])
        self.assertIn('System.State', fetcher.fields)


def test_revision_from_entry_flattens_identity_objects():
    e = entry(3, 2, '2025-03-01T00:00:00Z', ALICE)
    e['fields']['System.ChangedBy'] = {'displayName': 'Alice Smith', 'uniqueName': 'alice@corp.com'}
    rev = revision_from_entry(e)
    assert rev.entity_id == 3
    assert rev.sequence == 2
    assert rev.changed_by == 'Alice Smith <alice@corp.com>'


def test_revision_from_entry_rejects_missing_rev():
    assert revision_from_entry({'id': 1, 'fields': {}}) is None
    assert revision_from_entry('junk') is None


def test_format_since_datetime():
    from datetime import datetime
    assert format_since(datetime(2025, 3, 1)) == '2025-03-01T00:00:00.000000Z'
    assert format_since('2025-03-01') == '2025-03-01'


if __name__ == '__main__':
    unittest.main()
