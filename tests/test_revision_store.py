import unittest
from storage.revisions import RevisionStore, StoreFrozenError, StoreNotFinalizedError
from fakes import ALICE, revision


class TestRevisionStore(unittest.TestCase):
    def test_finalize_sorts_and_dedupes_sequences(self):
        store = RevisionStore()
        store.append(revision(1, 3, '2025-01-03T00:00:00Z', ALICE, {'v': 'c'}))
        store.append(revision(1, 1, '2025-01-01T00:00:00Z', ALICE, {'v': 'a'}))
        store.append(revision(1, 2, '2025-01-02T00:00:00Z', ALICE, {'v': 'old'}))
        store.append(revision(1, 2, '2025-01-02T00:00:00Z', ALICE, {'v': 'b'}))
        store.append(revision(2, 1, '2025-01-01T00:00:00Z', ALICE))
        store.finalize()

        seqs = [r.sequence for r in store.revisions(1)]
        self.assertEqual(seqs, [1, 2, 3])
        # last delivered copy wins
        self.assertEqual(store.revisions(1)[1].fields['v'], 'b')
        self.assertEqual(store.duplicates_dropped, 1)
        self.assertIsInstance(store.revisions(1), tuple)
        self.assertEqual(store.revision_count, 4)
        self.assertEqual(len(store), 2)

    def test_sequences_strictly_increasing_for_every_entity(self):
        store = RevisionStore()
        for seq in (5, 2, 9, 2, 1, 5):
            store.append(revision(7, seq, '2025-01-01T00:00:00Z', ALICE))
        store.finalize()
        for _, revs in store.items():
            for a, b in zip(revs, revs[1:]):
                self.assertLess(a.sequence, b.sequence)

    def test_latest_is_terminal_revision(self):
        store = RevisionStore()
        store.extend([revision(1, 2, 'x', ALICE, {'System.State': 'Closed'}), revision(1, 1, 'x', ALICE, {'System.State': 'New'})])
        store.finalize()
        self.assertEqual(store.latest(1).sequence, 2)
        self.assertIsNone(store.latest(999))
        self.assertEqual(store.revisions(999), ())

    def test_read_before_finalize_raises(self):
        store = RevisionStore()
        store.append(revision(1, 1, 'x', ALICE))
        with self.assertRaises(StoreNotFinalizedError):
            store.latest(1)
        with self.assertRaises(StoreNotFinalizedError):
            list(store.items())

    def test_append_after_finalize_raises(self):
        store = RevisionStore().finalize()
        with self.assertRaises(StoreFrozenError):
            store.append(revision(1, 1, 'x', ALICE))

    def test_finalize_twice_is_noop(self):
        store = RevisionStore()
        store.append(revision(1, 1, 'x', ALICE))
        store.finalize()
        store.finalize()
        self.assertTrue(store.is_finalized)
        self.assertEqual(store.entity_ids(), [1])
        self.assertIn(1, store)


if __name__ == '__main__':
    unittest.main()
