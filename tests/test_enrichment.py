import asyncio
import unittest
from ingest.enrichment import CommentEnricher
from normalize.models import ActivityKind, Identity, MentionCategory
from fakes import ALICE, STATE, TITLE, FakeSource, revision, store_of

alice = Identity('Alice Smith', 'alice@corp.com')
bob = Identity('Bob Jones', 'bob@corp.com')

CUTOFF = '2025-03-01T00:00:00Z'


def comment(author, email, text, when='2025-03-02T09:00:00Z'):
    return {'author': author, 'author_email': email, 'text': text, 'created_at': when}


def make_store(*ids):
    return store_of(*[revision(i, 1, '2025-03-01T00:00:00Z', ALICE, {TITLE: f"Item {i}", STATE: 'Active'}) for i in ids])


class TestCommentEvents(unittest.TestCase):
    def test_author_comment_and_mention(self):
        source = FakeSource(comments={
            10: [
                comment('Alice Smith', 'alice@corp.com', '<p>Looks <b>good</b> to me</p>'),
                comment('Carol White', 'carol@corp.com', 'Bob Jones can you review the migration?'),
            ],
        })
        enricher = CommentEnricher(source, make_store(10))
        events = asyncio.run(enricher.enrich({10}, [alice, bob], CUTOFF))

        comments = [e for e in events if e.kind == ActivityKind.COMMENT]
        mentions = [e for e in events if e.kind == ActivityKind.MENTION]
        self.assertEqual(len(comments), 1)
        self.assertEqual(comments[0].identity, alice)
        self.assertEqual(comments[0].detail, 'Comment: Looks good to me')
        self.assertEqual(comments[0].entity_snapshot.title, 'Item 10')
        self.assertIsNone(comments[0].sequence)

        self.assertEqual(len(mentions), 1)
        self.assertEqual(mentions[0].identity, bob)
        self.assertEqual(mentions[0].actor, 'Carol White')
        self.assertEqual(mentions[0].category, MentionCategory.ACTIONABLE)
        self.assertTrue(mentions[0].detail.startswith('Mentioned in comment: Bob Jones'))

    def test_comments_before_cutoff_or_undated_are_ignored(self):
        source = FakeSource(comments={
            10: [
                comment('Alice Smith', 'alice@corp.com', 'old', when='2025-02-01T00:00:00Z'),
                comment('Alice Smith', 'alice@corp.com', 'undated', when='sometime'),
            ],
        })
        events = asyncio.run(CommentEnricher(source, make_store(10)).enrich({10}, [alice], CUTOFF))
        self.assertEqual(events, [])

    def test_long_comment_is_truncated(self):
        text = 'x' * 500
        source = FakeSource(comments={10: [comment('Alice Smith', 'alice@corp.com', text)]})
        events = asyncio.run(CommentEnricher(source, make_store(10)).enrich({10}, [alice], CUTOFF))
        self.assertEqual(len(events[0].detail), len('Comment: ') + 300)


class TestBatching(unittest.TestCase):
    def test_only_relevant_entities_are_fetched(self):
        source = FakeSource()
        asyncio.run(CommentEnricher(source, make_store(1, 2, 3)).enrich({2}, [alice], CUTOFF))
        self.assertEqual(source.comment_calls, [2])

    def test_in_flight_requests_bounded_by_batch_size(self):
        ids = list(range(1, 13))
        source = FakeSource()
        enricher = CommentEnricher(source, make_store(*ids), batch_size=5)
        asyncio.run(enricher.enrich(set(ids), [alice], CUTOFF))
        self.assertEqual(sorted(source.comment_calls), ids)
        self.assertLessEqual(source.max_in_flight, 5)
        self.assertEqual(enricher.fetched, 12)

    def test_failure_is_counted_and_batch_continues(self):
        source = FakeSource(comments={3: [comment('Alice Smith', 'alice@corp.com', 'done')]}, fail_comments={2})
        enricher = CommentEnricher(source, make_store(1, 2, 3))
        events = asyncio.run(enricher.enrich({1, 2, 3}, [alice], CUTOFF))
        self.assertEqual(enricher.errors, 1)
        self.assertEqual([e.entity_id for e in events], [3])

    def test_empty_relevant_set_makes_no_calls(self):
        source = FakeSource()
        events = asyncio.run(CommentEnricher(source, make_store(1)).enrich(set(), [alice], CUTOFF))
        self.assertEqual(events, [])
        self.assertEqual(source.comment_calls, [])

    def test_batch_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            CommentEnricher(FakeSource(), make_store(1), batch_size=0)


if __name__ == '__main__':
    unittest.main()
